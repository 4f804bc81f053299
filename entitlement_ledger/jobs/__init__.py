"""
Background jobs module.
"""

from entitlement_ledger.jobs.hold_expiry import HoldExpiryJob
from entitlement_ledger.jobs.ledger_archive import LedgerArchiveJob
from entitlement_ledger.jobs.event_outbox import EventOutboxJob

__all__ = [
    "HoldExpiryJob",
    "LedgerArchiveJob",
    "EventOutboxJob",
]

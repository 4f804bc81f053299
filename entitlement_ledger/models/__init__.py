"""
Database models for entitlements, holds, the service ledger and archival.

Importing this package registers every table on Base.metadata.
"""

from entitlement_ledger.models.base import Base, TimestampMixin, generate_uuid, utcnow
from entitlement_ledger.models.entitlement import (
    EntitlementGrant,
    EntitlementBalance,
    GrantSource,
    DEDUCTION_PRIORITY,
)
from entitlement_ledger.models.hold import (
    ServiceHold,
    HoldAllocation,
    HoldStatus,
    HoldReleaseReason,
)
from entitlement_ledger.models.ledger import (
    ServiceLedger,
    ServiceLedgerArchive,
    LedgerEntryMixin,
    LedgerType,
    LedgerSource,
)
from entitlement_ledger.models.archive_policy import (
    ArchivePolicy,
    ArchivePolicyScope,
    SCOPE_PRECEDENCE,
)
from entitlement_ledger.models.amendment import ContractAmendment, AmendmentType
from entitlement_ledger.models.domain_event import (
    DomainEvent,
    DomainEventStatus,
    DomainEventType,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "generate_uuid",
    "utcnow",
    "EntitlementGrant",
    "EntitlementBalance",
    "GrantSource",
    "DEDUCTION_PRIORITY",
    "ServiceHold",
    "HoldAllocation",
    "HoldStatus",
    "HoldReleaseReason",
    "ServiceLedger",
    "ServiceLedgerArchive",
    "LedgerEntryMixin",
    "LedgerType",
    "LedgerSource",
    "ArchivePolicy",
    "ArchivePolicyScope",
    "SCOPE_PRECEDENCE",
    "ContractAmendment",
    "AmendmentType",
    "DomainEvent",
    "DomainEventStatus",
    "DomainEventType",
]

"""
Service entitlement ledger.

Balance accounting for consumable service credits: entitlement grants,
holds, an append-only ledger and time-scoped ledger archival.
"""

__version__ = "0.1.0"

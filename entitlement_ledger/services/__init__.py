"""Service layer for the service entitlement ledger."""

"""
Structured error classes for the service entitlement ledger.

Every error carries a machine-readable code and an HTTP-analogous status so
callers (API layer, admin tooling) can map failures without string parsing.
"""

from typing import Optional
from fastapi import status


class ServiceLedgerError(Exception):
    """Base exception for ledger errors."""

    http_status: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, code: str, message: Optional[str] = None, **context):
        """
        Initialize ledger error.

        Args:
            code: Machine-readable error code (e.g. INSUFFICIENT_BALANCE)
            message: Human-readable message (defaults to the code)
            **context: Identifiers relevant to the failure (hold_id, student_id...)
        """
        self.code = code
        self.message = message or code
        self.context = context
        super().__init__(f"{code}: {self.message}" if message else code)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": self.code.lower(),
            "message": self.message,
            "machine_readable": {
                "code": self.code,
                **self.context,
            },
        }


class NotFoundError(ServiceLedgerError):
    """Referenced entitlement, hold or policy does not exist."""
    http_status = status.HTTP_404_NOT_FOUND


class BusinessRuleError(ServiceLedgerError):
    """Input violates a balance or lifecycle rule; caller must correct it."""
    http_status = status.HTTP_400_BAD_REQUEST


class ConflictError(ServiceLedgerError):
    """Request conflicts with existing state."""
    http_status = status.HTTP_409_CONFLICT


class RangeViolationError(ServiceLedgerError):
    """Query parameters out of the supported range; raised before any query runs."""
    http_status = status.HTTP_400_BAD_REQUEST


# Not found
class EntitlementNotFoundError(NotFoundError):
    def __init__(self, student_id: str, service_type: str):
        super().__init__(
            "ENTITLEMENT_NOT_FOUND",
            f"No entitlement for student {student_id} and service type {service_type}",
            student_id=student_id,
            service_type=service_type,
        )


class HoldNotFoundError(NotFoundError):
    def __init__(self, hold_id: str):
        super().__init__("HOLD_NOT_FOUND", f"Hold not found: {hold_id}", hold_id=hold_id)


class ArchivePolicyNotFoundError(NotFoundError):
    def __init__(self, policy_id: str):
        super().__init__(
            "ARCHIVE_POLICY_NOT_FOUND",
            f"Archive policy not found: {policy_id}",
            policy_id=policy_id,
        )


# Business rules
class InsufficientBalanceError(BusinessRuleError):
    def __init__(self, student_id: str, service_type: str, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(
            "INSUFFICIENT_BALANCE",
            f"Requested {requested} but only {available} available",
            student_id=student_id,
            service_type=service_type,
            requested=requested,
            available=available,
        )


class HoldNotActiveError(BusinessRuleError):
    def __init__(self, hold_id: str, current_status: str):
        super().__init__(
            "HOLD_NOT_ACTIVE",
            f"Hold {hold_id} is {current_status}",
            hold_id=hold_id,
            status=current_status,
        )


class ArchiveAfterDaysTooSmallError(BusinessRuleError):
    def __init__(self, archive_after_days: int):
        super().__init__(
            "ARCHIVE_AFTER_DAYS_TOO_SMALL",
            f"archive_after_days must be at least 1, got {archive_after_days}",
            archive_after_days=archive_after_days,
        )


class ReasonRequiredError(BusinessRuleError):
    def __init__(self):
        super().__init__("REASON_REQUIRED", "A non-empty reason is required")


class InvalidQuantityError(BusinessRuleError):
    def __init__(self, quantity):
        super().__init__("INVALID_QUANTITY", f"Invalid quantity: {quantity}", quantity=quantity)


class InvalidExpiryError(BusinessRuleError):
    def __init__(self, message: str):
        super().__init__("INVALID_EXPIRY", message)


class InvalidPolicyScopeError(BusinessRuleError):
    def __init__(self, message: str):
        super().__init__("INVALID_POLICY_SCOPE", message)


class HoldMismatchError(BusinessRuleError):
    def __init__(self, hold_id: str):
        super().__init__(
            "HOLD_MISMATCH",
            f"Hold {hold_id} belongs to a different student or service type",
            hold_id=hold_id,
        )


class InvalidAmendmentTypeError(BusinessRuleError):
    def __init__(self, ledger_type):
        super().__init__(
            "INVALID_AMENDMENT_TYPE",
            f"Unknown amendment type: {ledger_type}",
            ledger_type=ledger_type,
        )


# Conflicts
class ArchivePolicyAlreadyExistsError(ConflictError):
    def __init__(self, scope: str, contract_id: Optional[str], service_type: Optional[str]):
        super().__init__(
            "ARCHIVE_POLICY_ALREADY_EXISTS",
            "An enabled archive policy already exists for this scope",
            scope=scope,
            contract_id=contract_id,
            service_type=service_type,
        )


# Range violations
class ArchiveDateRangeTooLargeError(RangeViolationError):
    def __init__(self, start_date, end_date):
        super().__init__(
            "ARCHIVE_DATE_RANGE_TOO_LARGE",
            "Archive queries are limited to a one year date range",
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
        )


class InvalidQueryError(RangeViolationError):
    def __init__(self, message: str):
        super().__init__("INVALID_QUERY", message)

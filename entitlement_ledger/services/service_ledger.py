"""
Service ledger - append-only audit trail of balance-changing events.

Writers (entitlement store, holds, consumption) call append() inside their
own transaction; this service never commits on their behalf. Readers get
hot-table queries and a reconciliation check that spans hot and archive
storage.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from entitlement_ledger.errors import InvalidQueryError, ReasonRequiredError
from entitlement_ledger.models.entitlement import EntitlementGrant, EntitlementBalance
from entitlement_ledger.models.ledger import (
    ServiceLedger,
    ServiceLedgerArchive,
    LedgerType,
)

logger = logging.getLogger(__name__)

MAX_QUERY_LIMIT = 500


def allocation_details(allocations, **extra) -> dict:
    """
    Build the JSON details payload for a ledger entry.

    Args:
        allocations: Iterable of (grant, quantity) pairs
        **extra: Additional context merged into the payload
    """
    details = {
        "allocations": [
            {
                "grant_id": grant.id,
                "contract_id": grant.contract_id,
                "source": grant.source,
                "quantity": quantity,
            }
            for grant, quantity in allocations
        ],
    }
    details.update({k: v for k, v in extra.items() if v is not None})
    return details


class ServiceLedgerService:
    """Appends and reads service ledger entries."""

    def __init__(self, db_session: Session):
        self.db = db_session

    # =========================================================================
    # Write
    # =========================================================================

    def _next_sequence(self, student_id: str, service_type: str) -> int:
        latest = 0
        for model in (ServiceLedger, ServiceLedgerArchive):
            value = (
                self.db.query(func.max(model.sequence))
                .filter(
                    model.student_id == student_id,
                    model.service_type == service_type,
                )
                .scalar()
            )
            latest = max(latest, value or 0)
        return latest + 1

    def append(
        self,
        student_id: str,
        service_type: str,
        quantity: int,
        ledger_type: LedgerType,
        source: str,
        balance_after: int,
        contract_id: Optional[str] = None,
        related_booking_id: Optional[str] = None,
        related_hold_id: Optional[str] = None,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
        created_by: Optional[str] = None,
    ) -> ServiceLedger:
        """
        Add one ledger entry to the current transaction.

        Adjustments must carry a reason. The entry gets the next sequence
        number for its pair and is flushed so its id is available to the
        caller, but not committed. Callers hold the grant row locks for the
        pair, which serializes sequence assignment.
        """
        ledger_type = LedgerType(ledger_type)
        if ledger_type == LedgerType.ADJUSTMENT and not (reason or "").strip():
            raise ReasonRequiredError()

        entry = ServiceLedger(
            student_id=student_id,
            contract_id=contract_id,
            service_type=service_type,
            quantity=quantity,
            type=ledger_type.value,
            source=source,
            balance_after=balance_after,
            related_booking_id=related_booking_id,
            related_hold_id=related_hold_id,
            reason=reason,
            details=details,
            sequence=self._next_sequence(student_id, service_type),
            created_by=created_by,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    # =========================================================================
    # Read
    # =========================================================================

    def query_ledgers(
        self,
        student_id: Optional[str] = None,
        service_type: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ServiceLedger]:
        """
        Query hot ledger entries, newest first.

        Raises:
            InvalidQueryError: If neither student_id nor service_type is given,
                or the date range is inverted
        """
        if not student_id and not service_type:
            raise InvalidQueryError("student_id or service_type is required")
        if start_date and end_date and end_date < start_date:
            raise InvalidQueryError("end_date must not be before start_date")

        query = self.db.query(ServiceLedger)
        if student_id:
            query = query.filter(ServiceLedger.student_id == student_id)
        if service_type:
            query = query.filter(ServiceLedger.service_type == service_type)
        if start_date:
            query = query.filter(ServiceLedger.created_at >= start_date)
        if end_date:
            query = query.filter(ServiceLedger.created_at <= end_date)

        limit = max(1, min(limit, MAX_QUERY_LIMIT))
        return (
            query.order_by(
                ServiceLedger.created_at.desc(),
                ServiceLedger.sequence.desc(),
                ServiceLedger.id.desc(),
            )
            .offset(max(0, offset))
            .limit(limit)
            .all()
        )

    def get_latest_entry(self, student_id: str, service_type: str):
        """Most recent entry for the pair across hot and archive tables."""
        candidates = []
        for model in (ServiceLedger, ServiceLedgerArchive):
            row = (
                self.db.query(model)
                .filter(
                    model.student_id == student_id,
                    model.service_type == service_type,
                )
                .order_by(model.sequence.desc(), model.created_at.desc())
                .first()
            )
            if row is not None:
                candidates.append(row)

        if not candidates:
            return None
        # Hot copy wins when a row was archived without deletion
        return max(candidates, key=lambda row: (row.sequence, row.created_at))

    def _consumed_total(self, student_id: str, service_type: str) -> int:
        hot = (
            self.db.query(func.coalesce(func.sum(ServiceLedger.quantity), 0))
            .filter(
                ServiceLedger.student_id == student_id,
                ServiceLedger.service_type == service_type,
                ServiceLedger.type == LedgerType.CONSUMPTION.value,
            )
            .scalar()
        )
        archived_only = (
            self.db.query(func.coalesce(func.sum(ServiceLedgerArchive.quantity), 0))
            .filter(
                ServiceLedgerArchive.student_id == student_id,
                ServiceLedgerArchive.service_type == service_type,
                ServiceLedgerArchive.type == LedgerType.CONSUMPTION.value,
                ServiceLedgerArchive.id.notin_(select(ServiceLedger.id)),
            )
            .scalar()
        )
        return -(int(hot) + int(archived_only))

    def reconcile_balance(self, student_id: str, service_type: str) -> bool:
        """
        Check the ledger against the entitlement grants.

        True when the latest entry's balance_after equals the current
        available quantity and consumption entries sum to consumed_quantity.
        A pair with no grants and no entries reconciles trivially.
        """
        grants = (
            self.db.query(EntitlementGrant)
            .filter(
                EntitlementGrant.student_id == student_id,
                EntitlementGrant.service_type == service_type,
            )
            .all()
        )
        balance = EntitlementBalance.from_grants(student_id, service_type, grants)
        latest = self.get_latest_entry(student_id, service_type)

        consumed = None
        if latest is None:
            matches = not grants
        else:
            consumed = self._consumed_total(student_id, service_type)
            matches = (
                latest.balance_after == balance.available_quantity
                and consumed == balance.consumed_quantity
            )

        if not matches:
            logger.warning(
                "Service ledger out of balance",
                extra={
                    **balance.to_dict(),
                    "latest_balance_after": latest.balance_after if latest else None,
                    "ledger_consumed_quantity": consumed,
                },
            )
        return matches

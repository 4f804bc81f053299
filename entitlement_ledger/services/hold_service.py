"""
Service hold manager.

Holds reserve entitlement quantity ahead of a booking. Creating a hold moves
available credit into held_quantity on the grants it is drawn from;
releasing or expiring it moves exactly the same per-grant amounts back.

Key edge cases handled:
- Concurrent holds on the same pair (grant rows locked with SELECT FOR UPDATE)
- Double release / release after expiry (hold row locked, status re-checked)
- Hold updates are cancel-then-recreate in one transaction, so a failed
  increase leaves the original hold active
- Expiry sweep isolates each hold in its own transaction
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from entitlement_ledger.config.ledger_settings import get_ledger_settings
from entitlement_ledger.errors import (
    HoldNotActiveError,
    HoldNotFoundError,
    InvalidExpiryError,
)
from entitlement_ledger.models.base import utcnow
from entitlement_ledger.models.domain_event import DomainEventType
from entitlement_ledger.models.hold import (
    ServiceHold,
    HoldAllocation,
    HoldStatus,
    HoldReleaseReason,
)
from entitlement_ledger.models.ledger import LedgerType, LedgerSource
from entitlement_ledger.services.entitlement_store import EntitlementStore, validate_quantity
from entitlement_ledger.services.event_publisher import EventSink
from entitlement_ledger.services.service_ledger import allocation_details

logger = logging.getLogger(__name__)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class HoldSweepResult:
    """
    Outcome of one expiry sweep.

    skipped_count is 1 (with every other count 0) when no expired holds were
    found, and 0 otherwise.
    """
    released_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    failed_hold_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "released_count": self.released_count,
            "failed_count": self.failed_count,
            "skipped_count": self.skipped_count,
            "failed_hold_ids": list(self.failed_hold_ids),
        }


class ServiceHoldService:
    """Creates, releases, updates and expires service holds."""

    def __init__(
        self,
        db_session: Session,
        event_sink: Optional[EventSink] = None,
        store: Optional[EntitlementStore] = None,
    ):
        self.db = db_session
        self.store = store or EntitlementStore(db_session, event_sink)
        self.events = self.store.events
        self.ledger = self.store.ledger

    # =========================================================================
    # Helpers
    # =========================================================================

    def lock_hold(self, hold_id: str) -> ServiceHold:
        """
        Load and lock a hold row.

        Raises:
            HoldNotFoundError: If the hold does not exist
        """
        hold = (
            self.db.query(ServiceHold)
            .filter(ServiceHold.id == hold_id)
            .populate_existing()
            .with_for_update()
            .first()
        )
        if hold is None:
            raise HoldNotFoundError(hold_id)
        return hold

    def lock_active_hold(self, hold_id: str) -> ServiceHold:
        hold = self.lock_hold(hold_id)
        if not hold.is_active:
            raise HoldNotActiveError(hold_id, hold.status)
        return hold

    @staticmethod
    def _event_payload(hold: ServiceHold, **extra) -> dict:
        payload = {
            "hold_id": hold.id,
            "student_id": hold.student_id,
            "service_type": hold.service_type,
            "quantity": hold.quantity,
            "related_booking_id": hold.related_booking_id,
        }
        payload.update(extra)
        return payload

    # =========================================================================
    # Create
    # =========================================================================

    def create_hold(
        self,
        student_id: str,
        service_type: str,
        quantity: int,
        created_by: str,
        expiry_at: Optional[datetime] = None,
        related_booking_id: Optional[str] = None,
    ) -> ServiceHold:
        """
        Reserve quantity for a student and service type.

        Either the full quantity is held or nothing changes.

        Raises:
            InvalidQuantityError: If quantity is not a positive integer
            InvalidExpiryError: If expiry_at is in the past
            EntitlementNotFoundError: If the student has no grant for the type
            InsufficientBalanceError: If available quantity is short
        """
        validate_quantity(quantity)
        if expiry_at is not None and as_utc(expiry_at) <= utcnow():
            raise InvalidExpiryError("expiry_at must be in the future")

        try:
            hold = self.create_in_transaction(
                student_id, service_type, quantity, created_by, expiry_at, related_booking_id
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Service hold created",
            extra={
                "hold_id": hold.id,
                "student_id": student_id,
                "service_type": service_type,
                "quantity": quantity,
                "expiry_at": expiry_at.isoformat() if expiry_at else None,
            },
        )
        return hold

    def create_in_transaction(
        self,
        student_id: str,
        service_type: str,
        quantity: int,
        created_by: str,
        expiry_at: Optional[datetime] = None,
        related_booking_id: Optional[str] = None,
        replaces_hold_id: Optional[str] = None,
    ) -> ServiceHold:
        """Create a hold without committing. See create_hold."""
        grants = self.store.lock_for_spend(student_id, service_type, quantity)

        hold = ServiceHold(
            student_id=student_id,
            service_type=service_type,
            quantity=quantity,
            status=HoldStatus.ACTIVE.value,
            expiry_at=as_utc(expiry_at) if expiry_at else None,
            related_booking_id=related_booking_id,
            created_by=created_by,
            created_at=utcnow(),
        )
        self.db.add(hold)
        self.db.flush()

        allocations = self.store.draw(grants, quantity, "held_quantity")
        for grant, amount in allocations:
            hold.allocations.append(HoldAllocation(grant_id=grant.id, quantity=amount))
        self.db.flush()

        self.ledger.append(
            student_id=student_id,
            service_type=service_type,
            quantity=-quantity,
            ledger_type=LedgerType.HOLD,
            source=LedgerSource.HOLD_CREATED,
            balance_after=self.store.available_after(student_id, service_type, grants),
            contract_id=allocations[0][0].contract_id,
            related_booking_id=related_booking_id,
            related_hold_id=hold.id,
            details=allocation_details(allocations, replaces_hold_id=replaces_hold_id),
            created_by=created_by,
        )
        self.store.emit(DomainEventType.HOLD_CREATED, student_id, self._event_payload(
            hold, expiry_at=hold.expiry_at.isoformat() if hold.expiry_at else None,
        ))
        return hold

    # =========================================================================
    # Release
    # =========================================================================

    def release_in_transaction(
        self,
        hold: ServiceHold,
        status: HoldStatus,
        reason: str,
        ledger_source: str,
        actor: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ServiceHold:
        """
        Return a locked, active hold's allocations to available, without committing.

        Args:
            hold: Hold locked via lock_active_hold
            status: Terminal status (released or expired)
            reason: Stored as release_reason
            ledger_source: Source recorded on the release ledger entry
            actor: created_by of the ledger entry (defaults to the hold creator)
        """
        grants = self.store.lock_grants(hold.student_id, hold.service_type)
        by_id = {grant.id: grant for grant in grants}

        returned = []
        for allocation in hold.allocations:
            grant = by_id[allocation.grant_id]
            grant.held_quantity -= allocation.quantity
            returned.append((grant, allocation.quantity))

        hold.status = HoldStatus(status).value
        hold.release_reason = reason
        hold.released_at = now or utcnow()

        self.ledger.append(
            student_id=hold.student_id,
            service_type=hold.service_type,
            quantity=hold.quantity,
            ledger_type=LedgerType.RELEASE,
            source=ledger_source,
            balance_after=self.store.available_after(hold.student_id, hold.service_type, grants),
            contract_id=returned[0][0].contract_id if returned else None,
            related_booking_id=hold.related_booking_id,
            related_hold_id=hold.id,
            reason=reason,
            details=allocation_details(returned),
            created_by=actor or hold.created_by,
        )

        event_type = (
            DomainEventType.HOLD_EXPIRED
            if hold.status == HoldStatus.EXPIRED.value
            else DomainEventType.HOLD_RELEASED
        )
        self.store.emit(event_type, hold.student_id, self._event_payload(hold, reason=reason))
        return hold

    def _release(self, hold_id: str, reason: str, ledger_source: str) -> ServiceHold:
        try:
            hold = self.lock_active_hold(hold_id)
            self.release_in_transaction(hold, HoldStatus.RELEASED, reason, ledger_source)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Service hold released",
            extra={
                "hold_id": hold_id,
                "student_id": hold.student_id,
                "service_type": hold.service_type,
                "quantity": hold.quantity,
                "reason": reason,
            },
        )
        return hold

    def release_hold(self, hold_id: str, reason: str) -> ServiceHold:
        """
        Release an active hold, returning its quantity to available.

        Raises:
            HoldNotFoundError: If the hold does not exist
            HoldNotActiveError: If the hold is already released or expired
        """
        return self._release(hold_id, reason or "released", LedgerSource.HOLD_RELEASED)

    def cancel_hold(self, hold_id: str, reason: Optional[str] = None) -> ServiceHold:
        """Cancel an active hold. Same semantics as release_hold."""
        return self._release(hold_id, reason or HoldReleaseReason.CANCELLED, LedgerSource.HOLD_CANCELLED)

    # =========================================================================
    # Update
    # =========================================================================

    def update_hold(
        self,
        hold_id: str,
        reason: str,
        updated_by: str,
        new_quantity: Optional[int] = None,
        new_expiry_at: Optional[datetime] = None,
    ) -> ServiceHold:
        """
        Replace a hold with a new one carrying the updated quantity/expiry.

        The cancel and the create share one transaction: if the new hold
        cannot be created (e.g. insufficient balance for an increase) the
        original hold stays active.

        Returns:
            The new active hold
        """
        if new_quantity is not None:
            validate_quantity(new_quantity)
        if new_expiry_at is not None and as_utc(new_expiry_at) <= utcnow():
            raise InvalidExpiryError("new_expiry_at must be in the future")

        try:
            original = self.lock_active_hold(hold_id)
            quantity = new_quantity if new_quantity is not None else original.quantity
            expiry_at = new_expiry_at if new_expiry_at is not None else original.expiry_at

            self.release_in_transaction(
                original,
                HoldStatus.RELEASED,
                f"{HoldReleaseReason.UPDATED}: {reason}" if reason else HoldReleaseReason.UPDATED,
                LedgerSource.HOLD_CANCELLED,
                actor=updated_by,
            )
            replacement = self.create_in_transaction(
                original.student_id,
                original.service_type,
                quantity,
                updated_by,
                expiry_at=expiry_at,
                related_booking_id=original.related_booking_id,
                replaces_hold_id=original.id,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Service hold updated",
            extra={
                "old_hold_id": hold_id,
                "new_hold_id": replacement.id,
                "quantity": quantity,
                "reason": reason,
            },
        )
        return replacement

    def attach_booking(self, hold_id: str, related_booking_id: str) -> ServiceHold:
        """
        Link an active hold to the booking it backs.

        Raises:
            HoldNotFoundError: If the hold does not exist
            HoldNotActiveError: If the hold is no longer active
        """
        try:
            hold = self.lock_active_hold(hold_id)
            hold.related_booking_id = related_booking_id
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Booking attached to service hold",
            extra={"hold_id": hold_id, "related_booking_id": related_booking_id},
        )
        return hold

    # =========================================================================
    # Expiry sweep
    # =========================================================================

    def _expired_hold_ids(self, now: datetime, batch_size: int) -> List[str]:
        rows = (
            self.db.query(ServiceHold.id)
            .filter(
                ServiceHold.status == HoldStatus.ACTIVE.value,
                ServiceHold.expiry_at.isnot(None),
                ServiceHold.expiry_at <= now,
            )
            .order_by(ServiceHold.expiry_at.asc())
            .limit(batch_size)
            .all()
        )
        return [row.id for row in rows]

    def _expire_hold(self, hold_id: str, now: datetime) -> bool:
        """
        Expire one hold in its own transaction.

        Returns:
            False if another worker settled the hold first
        """
        hold = self.lock_hold(hold_id)
        if not hold.is_active:
            self.db.rollback()
            return False

        self.release_in_transaction(
            hold,
            HoldStatus.EXPIRED,
            HoldReleaseReason.EXPIRED,
            LedgerSource.HOLD_EXPIRED,
            now=now,
        )
        self.db.commit()
        return True

    def release_expired_holds(
        self,
        batch_size: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> HoldSweepResult:
        """
        Expire up to batch_size active holds whose expiry_at has passed.

        Oldest expiry first. A failure on one hold is rolled back, counted and
        logged; the remaining holds are still processed.
        """
        if batch_size is None:
            batch_size = get_ledger_settings().hold_sweep_batch_size
        now = now or utcnow()

        hold_ids = self._expired_hold_ids(now, batch_size)
        if not hold_ids:
            logger.info("No expired holds to release")
            return HoldSweepResult(skipped_count=1)

        result = HoldSweepResult()
        for hold_id in hold_ids:
            try:
                if self._expire_hold(hold_id, now):
                    result.released_count += 1
            except Exception as e:
                self.db.rollback()
                result.failed_count += 1
                result.failed_hold_ids.append(hold_id)
                logger.error(
                    "Failed to expire service hold",
                    extra={"hold_id": hold_id, "error": str(e)},
                    exc_info=True,
                )

        logger.info("Expired hold sweep completed", extra=result.to_dict())
        return result

    # =========================================================================
    # Monitoring
    # =========================================================================

    def get_active_holds(self, student_id: str, service_type: Optional[str] = None) -> List[ServiceHold]:
        query = self.db.query(ServiceHold).filter(
            ServiceHold.student_id == student_id,
            ServiceHold.status == HoldStatus.ACTIVE.value,
        )
        if service_type:
            query = query.filter(ServiceHold.service_type == service_type)
        return query.order_by(ServiceHold.created_at.asc()).all()

    def get_long_unreleased_holds(
        self,
        hours_old: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[ServiceHold]:
        """Active holds created more than hours_old hours ago, oldest first."""
        if hours_old is None:
            hours_old = get_ledger_settings().long_unreleased_hours
        cutoff = (now or utcnow()) - timedelta(hours=hours_old)
        return (
            self.db.query(ServiceHold)
            .filter(
                ServiceHold.status == HoldStatus.ACTIVE.value,
                ServiceHold.created_at < cutoff,
            )
            .order_by(ServiceHold.created_at.asc())
            .all()
        )

"""
Consumption and amendment accounting.

consume_service() is the only path that increments consumed_quantity. When a
booking completes against a hold, passing related_hold_id releases the hold
and records the consumption in a single transaction, so the reserved units
convert into the deduction without ever being double counted.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from entitlement_ledger.errors import (
    HoldMismatchError,
    InvalidAmendmentTypeError,
    ReasonRequiredError,
)
from entitlement_ledger.models.amendment import AmendmentType, ContractAmendment
from entitlement_ledger.models.domain_event import DomainEventType
from entitlement_ledger.models.entitlement import EntitlementBalance, GrantSource
from entitlement_ledger.models.hold import HoldStatus, HoldReleaseReason
from entitlement_ledger.models.ledger import ServiceLedger, LedgerType, LedgerSource
from entitlement_ledger.services.entitlement_store import EntitlementStore, validate_quantity
from entitlement_ledger.services.event_publisher import EventSink
from entitlement_ledger.services.hold_service import ServiceHoldService
from entitlement_ledger.services.service_ledger import allocation_details

logger = logging.getLogger(__name__)

# Positive amendments credit the contract's grant of the matching source
AMENDMENT_GRANT_SOURCE = {
    AmendmentType.ADDON.value: GrantSource.ADDON,
    AmendmentType.PROMOTION.value: GrantSource.PROMOTION,
    AmendmentType.COMPENSATION.value: GrantSource.COMPENSATION,
    AmendmentType.CORRECTION.value: GrantSource.ADJUSTMENT,
}


class ConsumptionService:
    """Records service consumption and contract amendments."""

    def __init__(self, db_session: Session, event_sink: Optional[EventSink] = None):
        self.db = db_session
        self.store = EntitlementStore(db_session, event_sink)
        self.holds = ServiceHoldService(db_session, store=self.store)
        self.ledger = self.store.ledger

    def consume_service(
        self,
        student_id: str,
        service_type: str,
        quantity: int,
        created_by: str,
        related_booking_id: Optional[str] = None,
        related_hold_id: Optional[str] = None,
    ) -> ServiceLedger:
        """
        Deduct delivered units from a student's entitlement.

        Args:
            student_id: Student receiving the service
            service_type: Service type delivered
            quantity: Units consumed (>= 1)
            created_by: Actor recorded on the ledger entry
            related_booking_id: Booking the consumption settles
            related_hold_id: Active hold to convert; released with reason
                "completed" in the same transaction

        Returns:
            The consumption ledger entry

        Raises:
            InvalidQuantityError: If quantity is not a positive integer
            EntitlementNotFoundError: If the student has no grant for the type
            InsufficientBalanceError: If available quantity is short
            HoldNotFoundError / HoldNotActiveError: For a bad related_hold_id
        """
        validate_quantity(quantity)

        try:
            if related_hold_id:
                hold = self.holds.lock_active_hold(related_hold_id)
                if hold.student_id != student_id or hold.service_type != service_type:
                    raise HoldMismatchError(related_hold_id)
                related_booking_id = related_booking_id or hold.related_booking_id
                self.holds.release_in_transaction(
                    hold,
                    HoldStatus.RELEASED,
                    HoldReleaseReason.COMPLETED,
                    LedgerSource.HOLD_CONVERTED,
                    actor=created_by,
                )

            grants = self.store.lock_for_spend(student_id, service_type, quantity)
            allocations = self.store.draw(grants, quantity, "consumed_quantity")

            entry = self.ledger.append(
                student_id=student_id,
                service_type=service_type,
                quantity=-quantity,
                ledger_type=LedgerType.CONSUMPTION,
                source=LedgerSource.BOOKING,
                balance_after=self.store.available_after(student_id, service_type, grants),
                contract_id=allocations[0][0].contract_id,
                related_booking_id=related_booking_id,
                related_hold_id=related_hold_id,
                details=allocation_details(allocations),
                created_by=created_by,
            )
            self.store.emit(DomainEventType.SERVICE_CONSUMED, student_id, {
                "student_id": student_id,
                "service_type": service_type,
                "quantity": quantity,
                "related_booking_id": related_booking_id,
                "related_hold_id": related_hold_id,
                "ledger_entry_id": entry.id,
            })
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Service consumed",
            extra={
                "student_id": student_id,
                "service_type": service_type,
                "quantity": quantity,
                "related_booking_id": related_booking_id,
                "related_hold_id": related_hold_id,
                "balance_after": entry.balance_after,
            },
        )
        return entry

    def add_amendment_ledger(
        self,
        student_id: str,
        contract_id: str,
        service_type: str,
        ledger_type: str,
        signed_quantity: int,
        reason: str,
        description: Optional[str],
        created_by: str,
    ) -> EntitlementBalance:
        """
        Record a manual amendment against a contract.

        Positive quantities credit the contract's grant for the amendment's
        source (created on first use); negative quantities claw back
        starting from that grant.

        Raises:
            ReasonRequiredError: If reason is empty
            InvalidQuantityError: If signed_quantity is zero
            InvalidAmendmentTypeError: If ledger_type is not an AmendmentType
            EntitlementNotFoundError / InsufficientBalanceError: For claw-backs
        """
        if not (reason or "").strip():
            raise ReasonRequiredError()
        try:
            amendment_type = AmendmentType(ledger_type)
        except ValueError:
            raise InvalidAmendmentTypeError(ledger_type)

        try:
            entry, balance = self.store.adjust_in_transaction(
                student_id=student_id,
                service_type=service_type,
                signed_quantity=signed_quantity,
                reason=reason,
                created_by=created_by,
                contract_id=contract_id,
                source=AMENDMENT_GRANT_SOURCE[amendment_type.value],
                ledger_source=LedgerSource.AMENDMENT,
            )
            self.db.add(ContractAmendment(
                student_id=student_id,
                contract_id=contract_id,
                service_type=service_type,
                ledger_type=amendment_type.value,
                quantity_changed=signed_quantity,
                reason=reason,
                description=description,
                ledger_entry_id=entry.id,
                created_by=created_by,
            ))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Contract amendment recorded",
            extra={
                "student_id": student_id,
                "contract_id": contract_id,
                "service_type": service_type,
                "ledger_type": amendment_type.value,
                "quantity": signed_quantity,
                "available_quantity": balance.available_quantity,
            },
        )
        return balance

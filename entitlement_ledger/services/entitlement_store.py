"""
Entitlement store - per-student, per-service-type balances.

The aggregate for a (student_id, service_type) pair is the sum of its grant
rows. Every mutation locks all grant rows for the pair (SELECT FOR UPDATE)
for the whole check-and-mutate, and writes exactly one ledger entry whose
balance_after is the aggregate available quantity after the change.

Transaction handling:
- Public methods (materialize, apply_adjustment) commit on success and roll
  back before re-raising on failure.
- *_in_transaction helpers and draw() never commit; hold and consumption
  services compose them into their own transactions.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from entitlement_ledger.errors import (
    EntitlementNotFoundError,
    InsufficientBalanceError,
    InvalidQuantityError,
    ReasonRequiredError,
)
from entitlement_ledger.models.base import utcnow
from entitlement_ledger.models.domain_event import DomainEventType
from entitlement_ledger.models.entitlement import (
    EntitlementGrant,
    EntitlementBalance,
    GrantSource,
)
from entitlement_ledger.models.ledger import ServiceLedger, LedgerType, LedgerSource
from entitlement_ledger.services.event_publisher import EventSink, LedgerEvent, OutboxEventSink
from entitlement_ledger.services.service_ledger import ServiceLedgerService, allocation_details

logger = logging.getLogger(__name__)

# (grant, quantity) pairs describing where a draw landed
Allocation = Tuple[EntitlementGrant, int]


@dataclass(frozen=True)
class SnapshotItem:
    """One service line of a contract's product snapshot."""
    service_type: str
    quantity: int

    @classmethod
    def coerce(cls, value) -> "SnapshotItem":
        if isinstance(value, cls):
            return value
        if isinstance(value, dict):
            return cls(service_type=value["service_type"], quantity=value["quantity"])
        service_type, quantity = value
        return cls(service_type=service_type, quantity=quantity)


def validate_quantity(quantity) -> int:
    """Positive integer check shared by every quantity-taking operation."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise InvalidQuantityError(quantity)
    return quantity


class EntitlementStore:
    """Reads and mutates entitlement grants."""

    def __init__(self, db_session: Session, event_sink: Optional[EventSink] = None):
        self.db = db_session
        self.events = event_sink or OutboxEventSink(db_session)
        self.ledger = ServiceLedgerService(db_session)

    # =========================================================================
    # Read
    # =========================================================================

    def get_balance(
        self,
        student_id: str,
        service_type: Optional[str] = None,
    ) -> List[EntitlementBalance]:
        """
        Aggregated balances for a student.

        Args:
            student_id: Student identifier
            service_type: Restrict to one service type; all when omitted

        Returns:
            One EntitlementBalance per service type, sorted by service type.
            Empty when the student has no grants.
        """
        query = self.db.query(EntitlementGrant).filter(EntitlementGrant.student_id == student_id)
        if service_type:
            query = query.filter(EntitlementGrant.service_type == service_type)

        by_type = {}
        for grant in query.all():
            by_type.setdefault(grant.service_type, []).append(grant)

        return [
            EntitlementBalance.from_grants(student_id, st, grants)
            for st, grants in sorted(by_type.items())
        ]

    def lock_grants(self, student_id: str, service_type: str) -> List[EntitlementGrant]:
        """
        Lock every grant row for the pair, in deduction order.

        Pending changes are flushed first so grants created earlier in the
        same transaction are included.
        """
        self.db.flush()
        return (
            self.db.query(EntitlementGrant)
            .filter(
                EntitlementGrant.student_id == student_id,
                EntitlementGrant.service_type == service_type,
            )
            .order_by(*EntitlementGrant.deduction_order())
            .populate_existing()
            .with_for_update()
            .all()
        )

    def lock_for_spend(
        self,
        student_id: str,
        service_type: str,
        quantity: int,
    ) -> List[EntitlementGrant]:
        """
        Lock grants and verify the pair can cover `quantity`.

        Raises:
            EntitlementNotFoundError: If no grant exists for the pair
            InsufficientBalanceError: If aggregate available is short
        """
        grants = self.lock_grants(student_id, service_type)
        if not grants:
            raise EntitlementNotFoundError(student_id, service_type)

        available = sum(g.available_quantity for g in grants)
        if available < quantity:
            raise InsufficientBalanceError(student_id, service_type, quantity, available)
        return grants

    @staticmethod
    def draw(grants: Iterable[EntitlementGrant], quantity: int, column: str) -> List[Allocation]:
        """
        Move `quantity` of available credit into `column` across grants.

        Grants must already be locked and in deduction order, and must cover
        the quantity (see lock_for_spend).

        Args:
            grants: Locked grants in deduction order
            quantity: Units to draw
            column: "held_quantity" or "consumed_quantity"
        """
        allocations = []
        remaining = quantity
        for grant in grants:
            if remaining == 0:
                break
            take = min(remaining, grant.available_quantity)
            if take <= 0:
                continue
            setattr(grant, column, getattr(grant, column) + take)
            allocations.append((grant, take))
            remaining -= take

        if remaining:
            # lock_for_spend guarantees coverage; reaching here is a bug
            raise RuntimeError(f"draw() left {remaining} units unallocated")
        return allocations

    @staticmethod
    def available_after(student_id: str, service_type: str, grants) -> int:
        return EntitlementBalance.from_grants(student_id, service_type, grants).available_quantity

    def emit(self, event_type: str, student_id: str, payload: dict) -> None:
        self.events.emit(LedgerEvent(event_type=event_type, aggregate_id=student_id, payload=payload))

    # =========================================================================
    # Contract activation
    # =========================================================================

    def _has_product_grants(self, contract_id: str) -> bool:
        return (
            self.db.query(EntitlementGrant.id)
            .filter(
                EntitlementGrant.contract_id == contract_id,
                EntitlementGrant.source == GrantSource.PRODUCT.value,
            )
            .first()
            is not None
        )

    def materialize(
        self,
        contract_id: str,
        student_id: str,
        items,
        created_by: Optional[str] = None,
    ) -> List[EntitlementBalance]:
        """
        Create product grants from a contract's snapshot on activation.

        Idempotent per contract: if product grants already exist for the
        contract, nothing is written and current balances are returned.

        Args:
            contract_id: Activated contract
            student_id: Contract owner
            items: SnapshotItem list (dicts or (service_type, quantity)
                pairs are accepted); repeated service types are summed
            created_by: Actor recorded on grants and ledger entries

        Returns:
            Balances for the service types in the snapshot

        Raises:
            InvalidQuantityError: If any item quantity is not a positive int
        """
        totals = {}
        for raw in items:
            item = SnapshotItem.coerce(raw)
            validate_quantity(item.quantity)
            totals[item.service_type] = totals.get(item.service_type, 0) + item.quantity

        if self._has_product_grants(contract_id):
            logger.info(
                "Contract already materialized, skipping",
                extra={"contract_id": contract_id, "student_id": student_id},
            )
            return self._balances_for(student_id, totals)

        try:
            for service_type, quantity in sorted(totals.items()):
                grants = self.lock_grants(student_id, service_type)
                grant = EntitlementGrant(
                    student_id=student_id,
                    service_type=service_type,
                    contract_id=contract_id,
                    source=GrantSource.PRODUCT.value,
                    total_quantity=quantity,
                    consumed_quantity=0,
                    held_quantity=0,
                    granted_at=utcnow(),
                    created_by=created_by,
                )
                self.db.add(grant)
                self.db.flush()

                balance_after = self.available_after(student_id, service_type, grants + [grant])
                self.ledger.append(
                    student_id=student_id,
                    service_type=service_type,
                    quantity=quantity,
                    ledger_type=LedgerType.ADJUSTMENT,
                    source=LedgerSource.CONTRACT_ACTIVATION,
                    balance_after=balance_after,
                    contract_id=contract_id,
                    reason="contract activation",
                    details=allocation_details([(grant, quantity)]),
                    created_by=created_by,
                )
                self.emit(DomainEventType.ENTITLEMENT_ADDED, student_id, {
                    "student_id": student_id,
                    "service_type": service_type,
                    "contract_id": contract_id,
                    "quantity": quantity,
                    "source": GrantSource.PRODUCT.value,
                })
            self.db.commit()
        except IntegrityError:
            # Concurrent activation of the same contract won the insert
            self.db.rollback()
            logger.info(
                "Contract materialized concurrently, skipping",
                extra={"contract_id": contract_id, "student_id": student_id},
            )
            return self._balances_for(student_id, totals)
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Contract entitlements materialized",
            extra={
                "contract_id": contract_id,
                "student_id": student_id,
                "service_types": sorted(totals),
            },
        )
        return self._balances_for(student_id, totals)

    def _balances_for(self, student_id: str, service_types) -> List[EntitlementBalance]:
        wanted = set(service_types)
        return [b for b in self.get_balance(student_id) if b.service_type in wanted]

    # =========================================================================
    # Adjustments
    # =========================================================================

    def apply_adjustment(
        self,
        student_id: str,
        service_type: str,
        signed_quantity: int,
        reason: str,
        created_by: Optional[str] = None,
        contract_id: Optional[str] = None,
        source: GrantSource = GrantSource.ADJUSTMENT,
    ) -> EntitlementBalance:
        """
        Manually grant (positive) or claw back (negative) credit.

        Raises:
            ReasonRequiredError: If reason is empty
            InvalidQuantityError: If signed_quantity is zero or not an int
            EntitlementNotFoundError: Negative adjustment with no grants
            InsufficientBalanceError: Claw-back larger than available
        """
        try:
            _, balance = self.adjust_in_transaction(
                student_id=student_id,
                service_type=service_type,
                signed_quantity=signed_quantity,
                reason=reason,
                created_by=created_by,
                contract_id=contract_id,
                source=source,
                ledger_source=LedgerSource.MANUAL_ADJUSTMENT,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Entitlement adjusted",
            extra={
                "student_id": student_id,
                "service_type": service_type,
                "quantity": signed_quantity,
                "available_quantity": balance.available_quantity,
            },
        )
        return balance

    def adjust_in_transaction(
        self,
        student_id: str,
        service_type: str,
        signed_quantity: int,
        reason: str,
        created_by: Optional[str],
        contract_id: Optional[str],
        source: GrantSource,
        ledger_source: str,
    ) -> Tuple[ServiceLedger, EntitlementBalance]:
        """Apply a signed adjustment without committing. See apply_adjustment."""
        if not (reason or "").strip():
            raise ReasonRequiredError()
        if isinstance(signed_quantity, bool) or not isinstance(signed_quantity, int) or signed_quantity == 0:
            raise InvalidQuantityError(signed_quantity)

        source = GrantSource(source)
        grants = self.lock_grants(student_id, service_type)

        if signed_quantity > 0:
            credited = self._credit(grants, student_id, service_type, contract_id, source,
                                    signed_quantity, created_by)
            if credited[0] not in grants:
                grants = grants + [credited[0]]
            allocations = [credited]
            event_type = DomainEventType.ENTITLEMENT_ADDED
        else:
            if not grants:
                raise EntitlementNotFoundError(student_id, service_type)
            amount = -signed_quantity
            available = sum(g.available_quantity for g in grants)
            if available < amount:
                raise InsufficientBalanceError(student_id, service_type, amount, available)
            allocations = self._claw_back(grants, contract_id, source, amount)
            event_type = DomainEventType.ENTITLEMENT_DEDUCTED

        balance = EntitlementBalance.from_grants(student_id, service_type, grants)
        entry = self.ledger.append(
            student_id=student_id,
            service_type=service_type,
            quantity=signed_quantity,
            ledger_type=LedgerType.ADJUSTMENT,
            source=ledger_source,
            balance_after=balance.available_quantity,
            contract_id=contract_id or allocations[0][0].contract_id,
            reason=reason,
            details=allocation_details(allocations),
            created_by=created_by,
        )
        self.emit(event_type, student_id, {
            "student_id": student_id,
            "service_type": service_type,
            "contract_id": entry.contract_id,
            "quantity": abs(signed_quantity),
            "reason": reason,
            "ledger_entry_id": entry.id,
        })
        return entry, balance

    def _credit(
        self,
        grants: List[EntitlementGrant],
        student_id: str,
        service_type: str,
        contract_id: Optional[str],
        source: GrantSource,
        quantity: int,
        created_by: Optional[str],
    ) -> Allocation:
        for grant in grants:
            if grant.contract_id == contract_id and grant.source == source.value:
                grant.total_quantity += quantity
                return grant, quantity

        grant = EntitlementGrant(
            student_id=student_id,
            service_type=service_type,
            contract_id=contract_id,
            source=source.value,
            total_quantity=quantity,
            consumed_quantity=0,
            held_quantity=0,
            granted_at=utcnow(),
            created_by=created_by,
        )
        self.db.add(grant)
        self.db.flush()
        return grant, quantity

    @staticmethod
    def _claw_back(
        grants: List[EntitlementGrant],
        contract_id: Optional[str],
        source: GrantSource,
        amount: int,
    ) -> List[Allocation]:
        """Reduce totals, starting with the grant matching the adjustment key."""
        preferred = [g for g in grants if g.contract_id == contract_id and g.source == source.value]
        ordered = preferred + [g for g in grants if g not in preferred]

        allocations = []
        remaining = amount
        for grant in ordered:
            if remaining == 0:
                break
            take = min(remaining, grant.available_quantity)
            if take <= 0:
                continue
            grant.total_quantity -= take
            allocations.append((grant, take))
            remaining -= take
        return allocations

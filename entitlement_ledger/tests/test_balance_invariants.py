"""
Property-based tests for the balance invariants.

Random sequences of holds, releases, consumptions and adjustments must never
drive any grant out of bounds, and the latest ledger entry must always
report the current available quantity.
"""

import pytest
from hypothesis import given, settings, strategies as st
from sqlalchemy.orm import sessionmaker

from entitlement_ledger.errors import ServiceLedgerError
from entitlement_ledger.models.base import Base
from entitlement_ledger.models.entitlement import EntitlementGrant
from entitlement_ledger.services.consumption_service import ConsumptionService
from entitlement_ledger.services.entitlement_store import SnapshotItem
from entitlement_ledger.services.event_publisher import InMemoryEventSink
from entitlement_ledger.tests.conftest import create_test_engine

STUDENT = "student-1"
MOCK = "mock_interview"

operations = st.lists(
    st.one_of(
        st.tuples(st.just("hold"), st.integers(min_value=1, max_value=6)),
        st.tuples(st.just("release"), st.integers(min_value=0, max_value=5)),
        st.tuples(st.just("consume"), st.integers(min_value=1, max_value=6)),
        st.tuples(st.just("convert"), st.integers(min_value=0, max_value=5)),
        st.tuples(st.just("adjust"), st.integers(min_value=-6, max_value=6).filter(bool)),
    ),
    min_size=1,
    max_size=15,
)


def _apply(service, active_hold_ids, op, value):
    if op == "hold":
        hold = service.holds.create_hold(STUDENT, MOCK, value, created_by="prop")
        active_hold_ids.append(hold.id)
    elif op == "release" and active_hold_ids:
        hold_id = active_hold_ids.pop(value % len(active_hold_ids))
        service.holds.release_hold(hold_id, "prop")
    elif op == "convert" and active_hold_ids:
        hold_id = active_hold_ids.pop(value % len(active_hold_ids))
        service.consume_service(STUDENT, MOCK, 1, created_by="prop", related_hold_id=hold_id)
    elif op == "consume":
        service.consume_service(STUDENT, MOCK, value, created_by="prop")
    elif op == "adjust":
        service.store.apply_adjustment(STUDENT, MOCK, value, "prop")


@pytest.mark.property
@settings(max_examples=30, deadline=None)
@given(initial=st.integers(min_value=1, max_value=12), ops=operations)
def test_balance_invariants_hold(initial, ops):
    """No sequence of operations breaks grant bounds or the ledger snapshot."""
    engine = create_test_engine()
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        service = ConsumptionService(session, InMemoryEventSink())
        service.store.materialize("contract-1", STUDENT, [SnapshotItem(MOCK, initial)])
        active_hold_ids = []

        for op, value in ops:
            try:
                _apply(service, active_hold_ids, op, value)
            except ServiceLedgerError as e:
                # A rejected conversion leaves the hold active
                if op == "convert" and e.code == "INSUFFICIENT_BALANCE":
                    continue
                assert e.code in ("INSUFFICIENT_BALANCE", "ENTITLEMENT_NOT_FOUND")

            for grant in session.query(EntitlementGrant).all():
                assert grant.consumed_quantity >= 0
                assert grant.held_quantity >= 0
                assert grant.consumed_quantity + grant.held_quantity <= grant.total_quantity

            [balance] = service.store.get_balance(STUDENT, MOCK)
            assert balance.available_quantity >= 0
            assert service.ledger.reconcile_balance(STUDENT, MOCK)
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()

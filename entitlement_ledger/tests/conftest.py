"""
Root test configuration and fixtures.

Provides database fixtures used by all ledger tests. Services commit and
roll back their own transactions, so each test gets a freshly created
schema instead of an outer transaction that is rolled back afterwards.

Shared fixtures:
- db_session: Session bound to a per-test schema (SQLite in-memory by default)
- event_sink: InMemoryEventSink for asserting emitted events
- ledger_settings: LedgerSettings with test defaults
- make_ledger_row: Factory for hot ledger rows with an explicit created_at
- compiled_selects: ORM SELECTs issued by an action, compiled for PostgreSQL
- temp_config_dir / make_yaml_config: YAML config files for loader tests
"""

import os
import tempfile
from datetime import timedelta
from pathlib import Path
from typing import Generator

import pytest
import yaml
from sqlalchemy import create_engine, event, text
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from entitlement_ledger.config.ledger_settings import LedgerConfigLoader, LedgerSettings
from entitlement_ledger.models.base import Base, utcnow
from entitlement_ledger.models.ledger import ServiceLedger, LedgerType, LedgerSource
from entitlement_ledger.services.event_publisher import InMemoryEventSink

# Set test environment
os.environ.setdefault("ENV", "test")


def _get_test_database_url() -> str:
    """Get database URL for tests."""
    database_url = os.getenv("DATABASE_URL")

    if database_url:
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)
        return database_url

    # Default to SQLite for unit tests if no PostgreSQL available
    return "sqlite:///:memory:"


def _is_postgres() -> bool:
    """Check if using PostgreSQL."""
    return _get_test_database_url().startswith("postgresql")


def create_test_engine():
    """
    Create an engine with every ledger table.

    Uses PostgreSQL if DATABASE_URL is set, otherwise SQLite in-memory.
    """
    database_url = _get_test_database_url()

    if _is_postgres():
        try:
            engine = create_engine(database_url, pool_pre_ping=True)
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            pytest.skip(
                f"PostgreSQL not available. Set DATABASE_URL or use SQLite. Error: {e}"
            )
    else:
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    # Import and create all tables
    import entitlement_ledger.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture(scope="function")
def db_engine():
    engine = create_test_engine()
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Session with the same settings as the production session factory."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def event_sink():
    return InMemoryEventSink()


@pytest.fixture
def ledger_settings():
    return LedgerSettings(
        default_archive_after_days=90,
        default_delete_after_archive=False,
        hold_sweep_batch_size=100,
        long_unreleased_hours=24,
        outbox_batch_size=100,
        event_max_retries=3,
    )


@pytest.fixture
def make_ledger_row(db_session):
    """
    Factory fixture that inserts a committed hot ledger row.

    Usage:
        row = make_ledger_row(days_old=100, contract_id="c-1")
    """
    def _make(
        days_old: int = 0,
        student_id: str = "student-1",
        service_type: str = "mock_interview",
        contract_id: str = "contract-1",
        quantity: int = -1,
        balance_after: int = 0,
        ledger_type: LedgerType = LedgerType.CONSUMPTION,
    ) -> ServiceLedger:
        row = ServiceLedger(
            student_id=student_id,
            contract_id=contract_id,
            service_type=service_type,
            quantity=quantity,
            type=ledger_type.value,
            source=LedgerSource.BOOKING,
            balance_after=balance_after,
            details={"allocations": []},
            created_by="test",
            created_at=utcnow() - timedelta(days=days_old),
        )
        db_session.add(row)
        db_session.commit()
        return row
    return _make


@pytest.fixture
def compiled_selects(db_session):
    """
    Factory fixture returning the ORM SELECTs an action issues, compiled for
    PostgreSQL so row-locking clauses are visible on SQLite runs.

    Usage:
        statements = compiled_selects(lambda: store.lock_grants("s-1", "mock"))
    """
    def _capture(action):
        statements = []

        def on_execute(orm_execute_state):
            if orm_execute_state.is_select and not orm_execute_state.is_relationship_load:
                compiled = orm_execute_state.statement.compile(dialect=postgresql.dialect())
                statements.append(str(compiled))

        event.listen(db_session, "do_orm_execute", on_execute)
        try:
            action()
        finally:
            event.remove(db_session, "do_orm_execute", on_execute)
        return statements
    return _capture


@pytest.fixture(autouse=True)
def _reset_config_loader():
    """Each test starts with a fresh config singleton."""
    LedgerConfigLoader.reset_instance()
    yield
    LedgerConfigLoader.reset_instance()


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: mark test as slow-running")
    config.addinivalue_line("markers", "property: mark test as property-based")


# =============================================================================
# Shared Config Fixtures
# =============================================================================


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("service_ledger.yml", {"holds": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make

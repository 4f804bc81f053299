"""
Engine and session management for the ledger jobs and embedding services.

Ledger services take a Session and own its transaction boundaries (commit
per operation, rollback before re-raising). Sessions are never shared
across threads; each job run or request gets its own.

Pool sizing comes from the `database` section of config/service_ledger.yml
(DB_POOL_SIZE, DB_MAX_OVERFLOW, DB_POOL_RECYCLE_SECONDS override it).

Usage:
    from entitlement_ledger.database.session import get_db_session_sync

    for session in get_db_session_sync():
        HoldExpiryJob(session).run()
"""

import os
import logging
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool

from entitlement_ledger.config.ledger_settings import LedgerSettings, get_ledger_settings

logger = logging.getLogger(__name__)

# Module-level engine singleton
_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def _get_database_url() -> str:
    """
    Read DATABASE_URL, normalizing postgres:// to postgresql://.

    Raises:
        ValueError: If DATABASE_URL is not set
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is not set")

    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


def build_engine(database_url: str, settings: Optional[LedgerSettings] = None) -> Engine:
    """
    Create an engine for the ledger tables.

    SQLite URLs (local runs, tests) get a single shared connection because
    an in-memory database only exists on the connection that created it.
    Everything else gets a pre-pinged QueuePool sized from settings.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    settings = settings or get_ledger_settings()
    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
        pool_recycle=settings.db_pool_recycle_seconds,
    )


def get_engine() -> Engine:
    """Get or create the engine singleton for DATABASE_URL."""
    global _engine
    if _engine is None:
        try:
            _engine = build_engine(_get_database_url())
            logger.info("Ledger database engine created", extra={"dialect": _engine.dialect.name})
        except ValueError as e:
            logger.error("Failed to create database engine", extra={"error": str(e)})
            raise
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create the session factory singleton."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=get_engine(),
        )
    return _SessionLocal


def reset_engine() -> None:
    """Dispose the engine singleton so the next access re-reads DATABASE_URL."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def get_db_session_sync() -> Generator[Session, None, None]:
    """
    Session generator for jobs and scripts.

    Usage:
        for session in get_db_session_sync():
            # use session

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    try:
        SessionLocal = get_session_factory()
    except ValueError as e:
        raise RuntimeError(f"Database not configured: {e}")

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()

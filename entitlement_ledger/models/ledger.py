"""
Service ledger models for the immutable balance audit trail.

CRITICAL: service_ledgers is APPEND-ONLY. Entries are never updated; the
only removal path is relocation into service_ledgers_archive by the
archive job.

balance_after is the aggregate available quantity for the
(student_id, service_type) pair immediately after the event, computed in
the same transaction as the mutation it describes.

sequence numbers entries per pair in write order, so two entries written in
the same transaction are ordered even when their created_at values tie.
"""

import enum

from sqlalchemy import (
    Column, String, Integer, DateTime, Text, JSON, Index,
)

from entitlement_ledger.models.base import Base, generate_uuid, utcnow


class LedgerType(str, enum.Enum):
    """Kind of balance-changing event."""
    CONSUMPTION = "consumption"
    HOLD = "hold"
    RELEASE = "release"
    ADJUSTMENT = "adjustment"


class LedgerSource:
    """What triggered a ledger entry."""
    BOOKING = "booking"
    HOLD_CREATED = "hold_created"
    HOLD_RELEASED = "hold_released"
    HOLD_CANCELLED = "hold_cancelled"
    HOLD_EXPIRED = "hold_expired"
    HOLD_CONVERTED = "hold_converted"
    CONTRACT_ACTIVATION = "contract_activation"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    AMENDMENT = "amendment"


class LedgerEntryMixin:
    """Columns shared by the hot ledger table and its archive."""

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    student_id = Column(String(64), nullable=False)
    contract_id = Column(
        String(36),
        nullable=True,
        comment="Contract of the first grant touched; null when no contract applies"
    )
    service_type = Column(String(50), nullable=False)

    quantity = Column(
        Integer,
        nullable=False,
        comment="Signed: negative for consumption/hold, positive for grants/releases"
    )
    type = Column(
        String(20),
        nullable=False,
        comment="consumption, hold, release, adjustment"
    )
    source = Column(String(50), nullable=False)
    balance_after = Column(
        Integer,
        nullable=False,
        comment="Available quantity snapshot after this event"
    )

    related_booking_id = Column(String(36), nullable=True)
    related_hold_id = Column(String(36), nullable=True)
    reason = Column(Text, nullable=True)
    details = Column(
        JSON,
        nullable=True,
        comment="Per-grant allocation breakdown and event context"
    )

    sequence = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Position within the (student_id, service_type) history"
    )

    created_by = Column(String(64), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow
    )

    # Columns copied verbatim when a row moves between tables
    COPY_COLUMNS = (
        "id", "student_id", "contract_id", "service_type", "quantity", "type",
        "source", "balance_after", "related_booking_id", "related_hold_id",
        "reason", "details", "sequence", "created_by", "created_at",
    )

    def to_dict(self) -> dict:
        return {name: getattr(self, name) for name in self.COPY_COLUMNS}


class ServiceLedger(Base, LedgerEntryMixin):
    """Hot ledger table."""

    __tablename__ = "service_ledgers"

    __table_args__ = (
        Index("ix_service_ledgers_student_service_time", "student_id", "service_type", "created_at"),
        Index("ix_service_ledgers_student_service_seq", "student_id", "service_type", "sequence"),
        Index("ix_service_ledgers_contract", "contract_id"),
        Index("ix_service_ledgers_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ServiceLedger(student_id={self.student_id}, service_type={self.service_type}, "
            f"type={self.type}, quantity={self.quantity}, balance_after={self.balance_after})>"
        )


class ServiceLedgerArchive(Base, LedgerEntryMixin):
    """Cold storage for relocated ledger rows. Same schema plus archived_at."""

    __tablename__ = "service_ledgers_archive"

    archived_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow
    )

    __table_args__ = (
        Index("ix_service_ledgers_archive_student_service_time", "student_id", "service_type", "created_at"),
        Index("ix_service_ledgers_archive_contract", "contract_id"),
    )

    @classmethod
    def from_ledger(cls, ledger: ServiceLedger, archived_at=None) -> "ServiceLedgerArchive":
        values = ledger.to_dict()
        if archived_at is not None:
            values["archived_at"] = archived_at
        return cls(**values)

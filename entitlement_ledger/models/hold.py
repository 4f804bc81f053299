"""
Service hold models.

A hold reserves entitlement quantity ahead of consumption. While a hold is
active its quantity is included in the held_quantity of the grants it was
drawn from; HoldAllocation records exactly how much came from each grant.

State transitions:
- active -> released (manual release, cancel, or conversion into consumption)
- active -> expired (automatic sweep of holds past expiry_at)
Released and expired are terminal.
"""

import enum

from sqlalchemy import (
    Column, String, Integer, DateTime,
    ForeignKey, Index, CheckConstraint,
)
from sqlalchemy.orm import relationship

from entitlement_ledger.models.base import Base, generate_uuid, utcnow


class HoldStatus(str, enum.Enum):
    """Hold lifecycle status."""
    ACTIVE = "active"
    RELEASED = "released"
    EXPIRED = "expired"


class HoldReleaseReason:
    """Standard release reasons."""
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    EXPIRED = "expired"
    UPDATED = "updated"


class ServiceHold(Base):
    """
    Temporary reservation of entitlement quantity.

    Never mutated in place for quantity or expiry: updates cancel the hold
    and create a new one so every change leaves an audit trail.
    """

    __tablename__ = "service_holds"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    student_id = Column(String(64), nullable=False)
    service_type = Column(String(50), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)

    status = Column(
        String(20),
        nullable=False,
        default=HoldStatus.ACTIVE.value,
        index=True,
        comment="active, released, expired"
    )
    expiry_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Automatic expiry time; null means manual release only"
    )

    related_booking_id = Column(
        String(36),
        nullable=True,
        comment="Booking this hold backs; may be attached after creation"
    )

    release_reason = Column(String(100), nullable=True)
    released_at = Column(DateTime(timezone=True), nullable=True)

    created_by = Column(String(64), nullable=False)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        index=True
    )

    allocations = relationship(
        "HoldAllocation",
        back_populates="hold",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_hold_quantity_positive"),
        Index("ix_service_holds_student_service", "student_id", "service_type"),
        Index("ix_service_holds_status_expiry", "status", "expiry_at"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == HoldStatus.ACTIVE.value

    def __repr__(self) -> str:
        return (
            f"<ServiceHold(id={self.id}, student_id={self.student_id}, "
            f"service_type={self.service_type}, quantity={self.quantity}, status={self.status})>"
        )


class HoldAllocation(Base):
    """Portion of a hold drawn from one entitlement grant."""

    __tablename__ = "service_hold_allocations"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    hold_id = Column(
        String(36),
        ForeignKey("service_holds.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    grant_id = Column(
        String(36),
        ForeignKey("service_entitlement_grants.id"),
        nullable=False
    )
    quantity = Column(Integer, nullable=False)

    hold = relationship("ServiceHold", back_populates="allocations")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_hold_allocation_positive"),
    )

"""
Domain event outbox.

Events are inserted in the same transaction as the balance mutation they
describe, then relayed to subscribers (billing, notifications) by the
outbox job. Subscribers are outside this package.
"""

import enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, String, Integer, DateTime, Text, JSON, Index

from entitlement_ledger.models.base import Base, generate_uuid, utcnow


class DomainEventType:
    """Event types emitted by the ledger."""
    SERVICE_CONSUMED = "service.consumed"
    ENTITLEMENT_ADDED = "entitlement.added"
    ENTITLEMENT_DEDUCTED = "entitlement.deducted"
    HOLD_CREATED = "hold.created"
    HOLD_RELEASED = "hold.released"
    HOLD_EXPIRED = "hold.expired"


class DomainEventStatus(str, enum.Enum):
    """Outbox delivery status."""
    PENDING = "pending"
    PUBLISHED = "published"
    FAILED = "failed"


class DomainEvent(Base):
    """Outbox row for one emitted event."""

    __tablename__ = "domain_events"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    event_type = Column(String(100), nullable=False, index=True)
    aggregate_type = Column(String(50), nullable=False)
    aggregate_id = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)

    status = Column(
        String(20),
        nullable=False,
        default=DomainEventStatus.PENDING.value,
    )
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=5)
    last_error = Column(Text, nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow
    )
    published_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_domain_events_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<DomainEvent(id={self.id}, event_type={self.event_type}, status={self.status})>"

    @property
    def is_pending(self) -> bool:
        return self.status == DomainEventStatus.PENDING.value

    def mark_published(self) -> None:
        """Mark event as delivered to the message broker."""
        self.status = DomainEventStatus.PUBLISHED.value
        self.published_at = datetime.now(timezone.utc)
        self.last_error = None

    def mark_attempt_failed(self, error: str) -> None:
        """Record a failed delivery; gives up once max_retries is reached."""
        self.retry_count = (self.retry_count or 0) + 1
        self.last_error = error[:1000] if error else None
        if self.retry_count >= self.max_retries:
            self.status = DomainEventStatus.FAILED.value

    @classmethod
    def create(
        cls,
        event_type: str,
        aggregate_type: str,
        aggregate_id: str,
        payload: Optional[dict] = None,
        max_retries: int = 5,
    ) -> "DomainEvent":
        """Factory method for a pending outbox event."""
        return cls(
            event_type=event_type,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            payload=payload or {},
            status=DomainEventStatus.PENDING.value,
            retry_count=0,
            max_retries=max_retries,
        )

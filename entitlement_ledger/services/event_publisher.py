"""
Outbound domain events for ledger subscribers.

Services emit events through an EventSink passed in at construction time:
- OutboxEventSink: writes DomainEvent rows in the caller's transaction, so an
  event exists if and only if the mutation it describes committed.
- InMemoryEventSink: records events in a list; used by tests and scripts.

OutboxDispatcher drains pending outbox rows to a MessagePublisher (broker
adapter). Delivery is at-least-once; subscribers de-duplicate on event id.
Published rows are deleted after the retention period; failed rows are kept
for troubleshooting until an operator resets them with retry_failed().
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from entitlement_ledger.config.ledger_settings import get_ledger_settings
from entitlement_ledger.models.domain_event import DomainEvent, DomainEventStatus
from entitlement_ledger.models.base import utcnow

logger = logging.getLogger(__name__)

FAILED_RETRY_WINDOW = timedelta(hours=24)


@dataclass(frozen=True)
class LedgerEvent:
    """Event emitted by a ledger operation."""
    event_type: str
    aggregate_id: str
    payload: dict
    aggregate_type: str = "Student"


class EventSink(ABC):
    """Outbound event channel used by the ledger services."""

    @abstractmethod
    def emit(self, event: LedgerEvent) -> None:
        """Hand off an event. Must not commit the caller's transaction."""


class OutboxEventSink(EventSink):
    """
    Persists events to the domain_events outbox table.

    max_retries defaults to events.max_retries (EVENT_OUTBOX_MAX_RETRIES).
    """

    def __init__(self, db_session: Session, max_retries: Optional[int] = None):
        self.db = db_session
        if max_retries is None:
            max_retries = get_ledger_settings().event_max_retries
        self.max_retries = max_retries

    def emit(self, event: LedgerEvent) -> None:
        row = DomainEvent.create(
            event_type=event.event_type,
            aggregate_type=event.aggregate_type,
            aggregate_id=event.aggregate_id,
            payload=event.payload,
            max_retries=self.max_retries,
        )
        self.db.add(row)


class InMemoryEventSink(EventSink):
    """Collects events in memory."""

    def __init__(self):
        self.events: List[LedgerEvent] = []

    def emit(self, event: LedgerEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> List[LedgerEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def clear(self) -> None:
        self.events.clear()


class MessagePublisher(ABC):
    """Broker adapter used by the outbox dispatcher."""

    @abstractmethod
    def publish(self, event: DomainEvent) -> None:
        """Deliver one event. Raise on failure."""


class LoggingMessagePublisher(MessagePublisher):
    """Publisher that only logs; default when no broker is configured."""

    def publish(self, event: DomainEvent) -> None:
        logger.info(
            "Domain event published",
            extra={
                "event_id": event.id,
                "event_type": event.event_type,
                "aggregate_id": event.aggregate_id,
                "payload": event.payload,
            },
        )


@dataclass
class OutboxDispatchResult:
    """Counts from one dispatcher pass."""
    published_count: int = 0
    retry_count: int = 0
    failed_count: int = 0
    failed_event_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "published_count": self.published_count,
            "retry_count": self.retry_count,
            "failed_count": self.failed_count,
            "failed_event_ids": list(self.failed_event_ids),
        }


class OutboxDispatcher:
    """
    Relays pending outbox events to a MessagePublisher.

    Each event is committed on its own so one broker failure never blocks
    the rest of the batch.
    """

    def __init__(
        self,
        db_session: Session,
        publisher: Optional[MessagePublisher] = None,
        batch_size: int = 100,
    ):
        self.db = db_session
        self.publisher = publisher or LoggingMessagePublisher()
        self.batch_size = batch_size

    def _pending_ids(self) -> List[str]:
        rows = (
            self.db.query(DomainEvent.id)
            .filter(
                DomainEvent.status == DomainEventStatus.PENDING.value,
                DomainEvent.retry_count < DomainEvent.max_retries,
            )
            .order_by(DomainEvent.created_at.asc())
            .limit(self.batch_size)
            .all()
        )
        return [row.id for row in rows]

    def dispatch_pending(self) -> OutboxDispatchResult:
        """
        Publish up to batch_size pending events, oldest first.

        Returns:
            OutboxDispatchResult with published/retry/failed counts
        """
        result = OutboxDispatchResult()

        for event_id in self._pending_ids():
            event = self.db.get(DomainEvent, event_id)
            if event is None or not event.is_pending:
                continue

            try:
                self.publisher.publish(event)
                event.mark_published()
                result.published_count += 1
            except Exception as e:
                event.mark_attempt_failed(str(e))
                if event.status == DomainEventStatus.FAILED.value:
                    result.failed_count += 1
                    result.failed_event_ids.append(event.id)
                    logger.error(
                        "Domain event delivery failed permanently",
                        extra={
                            "event_id": event.id,
                            "event_type": event.event_type,
                            "retry_count": event.retry_count,
                            "error": str(e),
                        },
                    )
                else:
                    result.retry_count += 1
                    logger.warning(
                        "Domain event delivery failed, will retry",
                        extra={
                            "event_id": event.id,
                            "event_type": event.event_type,
                            "retry_count": event.retry_count,
                            "error": str(e),
                        },
                    )
            self.db.commit()

        logger.info("Outbox dispatch completed", extra=result.to_dict())
        return result

    # =========================================================================
    # Maintenance
    # =========================================================================

    def cleanup_published(self, retention_days: int, now: Optional[datetime] = None) -> int:
        """
        Delete published events older than the retention period.

        Pending and failed events are never removed here.

        Returns:
            Number of events deleted
        """
        cutoff = (now or utcnow()) - timedelta(days=retention_days)
        try:
            deleted = (
                self.db.query(DomainEvent)
                .filter(
                    DomainEvent.status == DomainEventStatus.PUBLISHED.value,
                    DomainEvent.published_at < cutoff,
                )
                .delete(synchronize_session=False)
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Published domain events cleaned up",
            extra={"deleted": deleted, "retention_days": retention_days},
        )
        return deleted

    def retry_failed(self, since: Optional[datetime] = None, now: Optional[datetime] = None) -> int:
        """
        Reset failed events created after `since` back to pending.

        Retry counters and errors are cleared so each event gets a full
        set of attempts. `since` defaults to 24 hours ago.

        Returns:
            Number of events reset
        """
        if since is None:
            since = (now or utcnow()) - FAILED_RETRY_WINDOW
        try:
            reset = (
                self.db.query(DomainEvent)
                .filter(
                    DomainEvent.status == DomainEventStatus.FAILED.value,
                    DomainEvent.created_at > since,
                )
                .update(
                    {
                        DomainEvent.status: DomainEventStatus.PENDING.value,
                        DomainEvent.retry_count: 0,
                        DomainEvent.last_error: None,
                    },
                    synchronize_session=False,
                )
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("Failed domain events reset for retry", extra={"reset": reset})
        return reset

    def stats(self) -> Dict[str, int]:
        """Outbox row counts by status."""
        counts = {status.value: 0 for status in DomainEventStatus}
        rows = (
            self.db.query(DomainEvent.status, func.count(DomainEvent.id))
            .group_by(DomainEvent.status)
            .all()
        )
        for status, count in rows:
            counts[status] = count
        return counts

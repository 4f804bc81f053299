"""
Event Outbox Job.

Relays pending domain events (service.consumed, hold.created, ...) written by
the ledger services to the message broker, then deletes published events
older than the retention period.

Run every minute from cron:
    python -m entitlement_ledger.jobs.event_outbox

Configuration (config/service_ledger.yml or environment):
- EVENT_OUTBOX_BATCH_SIZE: Events relayed per run (default: 100)
- EVENT_RETENTION_DAYS: Days to keep published events (default: 7)
"""

import logging
import sys
from datetime import datetime
from typing import Dict, Optional

from entitlement_ledger.config.ledger_settings import LedgerSettings, get_ledger_settings
from entitlement_ledger.database.session import get_db_session_sync
from entitlement_ledger.services.event_publisher import MessagePublisher, OutboxDispatcher

logger = logging.getLogger(__name__)


class EventOutboxJob:
    """Drains the domain event outbox once and prunes delivered events."""

    def __init__(
        self,
        db_session,
        publisher: Optional[MessagePublisher] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        settings = settings or get_ledger_settings()
        self.retention_days = settings.event_retention_days
        self.dispatcher = OutboxDispatcher(
            db_session,
            publisher=publisher,
            batch_size=settings.outbox_batch_size,
        )

    def run(self, now: Optional[datetime] = None) -> Dict:
        stats = self.dispatcher.dispatch_pending().to_dict()
        stats["cleaned_up_count"] = self.dispatcher.cleanup_published(self.retention_days, now=now)
        stats["outbox"] = self.dispatcher.stats()
        return stats


def main():
    """Main entry point for the event outbox job."""
    logger.info("Event Outbox starting")

    try:
        for session in get_db_session_sync():
            stats = EventOutboxJob(session).run()
            logger.info("Event Outbox stats", extra=stats)
    except Exception as e:
        logger.error("Event Outbox failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)

    logger.info("Event Outbox finished")


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    main()

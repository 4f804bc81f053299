"""
Hold Expiry Job.

Background worker that expires service holds whose expiry_at has passed and
reports holds that have stayed active unusually long (stuck bookings).

Run every few minutes from cron:
    python -m entitlement_ledger.jobs.hold_expiry

Configuration (config/service_ledger.yml or environment):
- HOLD_SWEEP_BATCH_SIZE: Holds expired per run (default: 100)
- LONG_UNRELEASED_HOLD_HOURS: Age after which an active hold is reported (default: 24)
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Dict, Optional

from entitlement_ledger.config.ledger_settings import LedgerSettings, get_ledger_settings
from entitlement_ledger.database.session import get_db_session_sync
from entitlement_ledger.services.hold_service import ServiceHoldService

logger = logging.getLogger(__name__)


class HoldExpiryJob:
    """Sweeps expired holds and flags long-unreleased ones."""

    def __init__(self, db_session, settings: Optional[LedgerSettings] = None):
        self.db = db_session
        self.settings = settings or get_ledger_settings()
        self.holds = ServiceHoldService(db_session)

    def run(self) -> Dict:
        """
        Run one sweep.

        Returns:
            Statistics dictionary
        """
        start_time = datetime.now(timezone.utc)

        sweep = self.holds.release_expired_holds(batch_size=self.settings.hold_sweep_batch_size)
        stale = self.holds.get_long_unreleased_holds(hours_old=self.settings.long_unreleased_hours)

        for hold in stale:
            logger.warning(
                "Service hold unreleased for too long",
                extra={
                    "hold_id": hold.id,
                    "student_id": hold.student_id,
                    "service_type": hold.service_type,
                    "quantity": hold.quantity,
                    "related_booking_id": hold.related_booking_id,
                },
            )

        stats = sweep.to_dict()
        stats["long_unreleased_count"] = len(stale)
        stats["duration_seconds"] = (datetime.now(timezone.utc) - start_time).total_seconds()

        logger.info("Hold expiry job completed", extra=stats)
        return stats


def main():
    """Main entry point for the hold expiry job."""
    logger.info("Hold Expiry starting")

    try:
        for session in get_db_session_sync():
            stats = HoldExpiryJob(session).run()
            logger.info("Hold Expiry stats", extra=stats)
    except Exception as e:
        logger.error("Hold Expiry failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)

    logger.info("Hold Expiry finished")


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    main()

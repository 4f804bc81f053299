"""
Ledger Archive Job.

Daily worker that relocates service ledger rows older than their archive
policy allows into service_ledgers_archive.

Run as a daily cron job:
    python -m entitlement_ledger.jobs.ledger_archive

Configuration (config/service_ledger.yml or environment), used only when no
enabled archive policy exists:
- ARCHIVE_AFTER_DAYS: Default age in days before archival (default: 90)
- DELETE_AFTER_ARCHIVE: Remove rows from the hot table once archived (default: false)
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Dict, Optional

from entitlement_ledger.config.ledger_settings import LedgerSettings
from entitlement_ledger.database.session import get_db_session_sync
from entitlement_ledger.services.ledger_archive_service import LedgerArchiveService

logger = logging.getLogger(__name__)


class LedgerArchiveJob:
    """Runs one archive pass over all enabled policies."""

    def __init__(self, db_session, settings: Optional[LedgerSettings] = None):
        self.service = LedgerArchiveService(db_session, settings=settings)

    def run(self, now: Optional[datetime] = None) -> Dict:
        start_time = datetime.now(timezone.utc)

        stats = self.service.archive_old_ledgers(now=now).to_dict()
        stats["duration_seconds"] = (datetime.now(timezone.utc) - start_time).total_seconds()

        if stats["failed_policy_ids"]:
            logger.warning(
                "Ledger archive completed with failed policies",
                extra={"failed_policy_ids": stats["failed_policy_ids"]},
            )
        return stats


def main():
    """Main entry point for the ledger archive job."""
    logger.info("Ledger Archive starting")

    try:
        for session in get_db_session_sync():
            stats = LedgerArchiveJob(session).run()
            logger.info("Ledger Archive stats", extra=stats)
    except Exception as e:
        logger.error("Ledger Archive failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)

    logger.info("Ledger Archive finished")


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    main()

"""
Tests for the hold expiry and ledger archive cron jobs.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from entitlement_ledger.jobs import hold_expiry, ledger_archive
from entitlement_ledger.jobs.hold_expiry import HoldExpiryJob
from entitlement_ledger.jobs.ledger_archive import LedgerArchiveJob
from entitlement_ledger.models.base import utcnow
from entitlement_ledger.models.hold import ServiceHold
from entitlement_ledger.models.ledger import ServiceLedgerArchive
from entitlement_ledger.services.entitlement_store import SnapshotItem
from entitlement_ledger.services.hold_service import ServiceHoldService


class TestHoldExpiryJob:
    """Tests for HoldExpiryJob.run."""

    def test_empty_run(self, db_session, ledger_settings):
        stats = HoldExpiryJob(db_session, settings=ledger_settings).run()

        assert stats["released_count"] == 0
        assert stats["skipped_count"] == 1
        assert stats["long_unreleased_count"] == 0
        assert "duration_seconds" in stats

    def test_expires_and_reports(self, db_session, ledger_settings):
        holds = ServiceHoldService(db_session)
        holds.store.materialize("contract-1", "student-1", [SnapshotItem("mock_interview", 3)])
        expiring = holds.create_hold("student-1", "mock_interview", 1, created_by="api",
                                     expiry_at=utcnow() + timedelta(minutes=5))
        stuck = holds.create_hold("student-1", "mock_interview", 1, created_by="api")
        expiring_id, stuck_id = expiring.id, stuck.id
        for hold in db_session.query(ServiceHold).all():
            hold.created_at = utcnow() - timedelta(hours=48)
            if hold.id == expiring_id:
                hold.expiry_at = utcnow() - timedelta(minutes=1)
        db_session.commit()

        stats = HoldExpiryJob(db_session, settings=ledger_settings).run()

        assert stats["released_count"] == 1
        assert stats["long_unreleased_count"] == 1
        assert db_session.get(ServiceHold, stuck_id).is_active


class TestLedgerArchiveJob:
    """Tests for LedgerArchiveJob.run."""

    def test_run_applies_default_policy(self, db_session, ledger_settings, make_ledger_row):
        make_ledger_row(days_old=120)

        stats = LedgerArchiveJob(db_session, settings=ledger_settings).run()

        assert stats["archived_count"] == 1
        assert stats["failed_policy_ids"] == []
        assert db_session.query(ServiceLedgerArchive).count() == 1


class TestMain:
    """Tests for the cron entry points."""

    @pytest.mark.parametrize("module", [hold_expiry, ledger_archive])
    def test_exits_non_zero_without_database(self, module, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)

        with patch.object(module, "get_db_session_sync", side_effect=RuntimeError("Database not configured")):
            with pytest.raises(SystemExit) as exc_info:
                module.main()

        assert exc_info.value.code == 1

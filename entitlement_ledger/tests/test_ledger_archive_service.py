"""
Tests for ledger archival and the unified hot + archive query.

Tests cover:
- Archive-and-delete, then query returns the identical row
- Implicit global default when no policy exists
- Scope exclusion between contract, service_type and global policies
- No double archival of rows kept hot, and their later deletion
- Per-policy failure isolation
- Query validation (missing filters, inverted and over-long ranges)
- De-duplication and ordering of merged results
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from entitlement_ledger.errors import ArchiveDateRangeTooLargeError, InvalidQueryError
from entitlement_ledger.models.base import utcnow
from entitlement_ledger.models.ledger import ServiceLedger, ServiceLedgerArchive, LedgerEntryMixin
from entitlement_ledger.services.archive_policy import ArchivePolicyService
from entitlement_ledger.services.ledger_archive_service import LedgerArchiveService


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture
def policies(db_session):
    return ArchivePolicyService(db_session)


@pytest.fixture
def service(db_session, ledger_settings):
    return LedgerArchiveService(db_session, settings=ledger_settings)


def query_window(now=None):
    now = now or utcnow()
    return now - timedelta(days=300), now + timedelta(days=1)


# =============================================================================
# Archival
# =============================================================================

class TestArchiveOldLedgers:
    """Tests for archive_old_ledgers."""

    def test_archive_and_delete_then_query(self, service, policies, db_session, make_ledger_row):
        """Test a 100-day-old row moves to the archive and is still queryable."""
        policies.create_policy("global", 90, delete_after_archive=True)
        row = make_ledger_row(days_old=100, student_id="s-1")
        expected = row.to_dict()

        result = service.archive_old_ledgers()

        assert result.archived_count == 1
        assert result.deleted_count == 1
        assert result.policies_processed == 1
        assert db_session.query(ServiceLedger).count() == 0

        start, end = query_window()
        [record] = service.query_with_archive(start, end, student_id="s-1")
        assert record.source_table == "archive"
        assert record.archived_at is not None
        for name in LedgerEntryMixin.COPY_COLUMNS:
            assert getattr(record, name) == expected[name], name

    def test_recent_rows_stay_hot(self, service, policies, db_session, make_ledger_row):
        policies.create_policy("global", 90, delete_after_archive=True)
        make_ledger_row(days_old=10)

        result = service.archive_old_ledgers()

        assert result.archived_count == 0
        assert db_session.query(ServiceLedger).count() == 1

    def test_implicit_default_policy(self, service, db_session, make_ledger_row):
        """Test configured defaults apply when no policy exists."""
        make_ledger_row(days_old=100)
        make_ledger_row(days_old=30)

        result = service.archive_old_ledgers()

        assert result.archived_count == 1
        assert result.deleted_count == 0
        assert result.policies_processed == 1
        assert db_session.query(ServiceLedger).count() == 2
        assert db_session.query(ServiceLedgerArchive).count() == 1

    def test_kept_rows_are_not_archived_twice(self, service, policies, db_session, make_ledger_row):
        policies.create_policy("global", 90, delete_after_archive=False)
        make_ledger_row(days_old=100)

        first = service.archive_old_ledgers()
        second = service.archive_old_ledgers()

        assert (first.archived_count, second.archived_count) == (1, 0)
        assert db_session.query(ServiceLedgerArchive).count() == 1

    def test_enabling_delete_removes_rows_kept_hot(self, service, policies, db_session, make_ledger_row):
        """Test rows archived while kept hot are deleted once the policy starts deleting."""
        policy = policies.create_policy("global", 30, delete_after_archive=False)
        make_ledger_row(days_old=100)
        make_ledger_row(days_old=10)
        service.archive_old_ledgers()

        policies.update_policy(policy.id, delete_after_archive=True)
        result = service.archive_old_ledgers()

        assert result.archived_count == 0
        assert result.deleted_count == 1
        assert db_session.query(ServiceLedger).count() == 1
        assert db_session.query(ServiceLedgerArchive).count() == 1

    def test_purge_of_kept_rows_respects_scope(self, db_session, ledger_settings, policies, make_ledger_row):
        policies.create_policy("global", 30, delete_after_archive=False)
        make_ledger_row(days_old=100, contract_id="c-keep")
        make_ledger_row(days_old=100, contract_id="c-purge")
        make_ledger_row(days_old=100, contract_id="c-purge")
        LedgerArchiveService(db_session, settings=ledger_settings).archive_old_ledgers()

        policies.create_policy("contract", 30, contract_id="c-keep")
        policies.create_policy("contract", 30, contract_id="c-purge", delete_after_archive=True)
        result = LedgerArchiveService(db_session, settings=ledger_settings, batch_size=1).archive_old_ledgers()

        assert result.deleted_count == 2
        [kept] = db_session.query(ServiceLedger).all()
        assert kept.contract_id == "c-keep"

    def test_contract_policy_shields_rows_from_broader_policies(
        self, service, policies, db_session, make_ledger_row
    ):
        """Test a row governed by a 365-day contract policy is not taken by a 30-day global one."""
        policies.create_policy("contract", 365, contract_id="c-keep")
        policies.create_policy("service_type", 30, service_type="resume_review")
        policies.create_policy("global", 30)
        shielded = make_ledger_row(days_old=100, contract_id="c-keep", service_type="resume_review")
        by_type = make_ledger_row(days_old=100, contract_id="c-other", service_type="resume_review")
        by_global = make_ledger_row(days_old=100, contract_id=None, service_type="mock_interview")
        shielded_id, by_type_id, by_global_id = shielded.id, by_type.id, by_global.id

        result = service.archive_old_ledgers()

        archived = {row.id for row in db_session.query(ServiceLedgerArchive).all()}
        assert archived == {by_type_id, by_global_id}
        assert shielded_id not in archived
        assert result.archived_count == 2
        assert result.policies_processed == 3

    def test_service_type_policy_shields_rows_from_global(
        self, service, policies, db_session, make_ledger_row
    ):
        policies.create_policy("service_type", 365, service_type="mock_interview")
        policies.create_policy("global", 30)
        make_ledger_row(days_old=100, service_type="mock_interview")

        result = service.archive_old_ledgers()

        assert result.archived_count == 0

    def test_disabled_policies_are_skipped(self, service, policies, db_session, make_ledger_row):
        policy = policies.create_policy("global", 30)
        policies.update_policy(policy.id, enabled=False)
        policies.create_policy("service_type", 365, service_type="mock_interview")
        make_ledger_row(days_old=100, service_type="resume_review")

        result = service.archive_old_ledgers()

        assert result.archived_count == 0
        assert result.policies_processed == 1

    def test_batches_within_a_policy(self, db_session, ledger_settings, policies, make_ledger_row):
        policies.create_policy("global", 90, delete_after_archive=True)
        for _ in range(5):
            make_ledger_row(days_old=100)

        result = LedgerArchiveService(db_session, settings=ledger_settings, batch_size=2).archive_old_ledgers()

        assert result.archived_count == 5
        assert result.deleted_count == 5
        assert db_session.query(ServiceLedger).count() == 0

    def test_failing_policy_is_isolated(self, service, policies, db_session, make_ledger_row):
        """Test one failing policy is counted while the others still run."""
        failing = policies.create_policy("contract", 30, contract_id="c-bad")
        policies.create_policy("global", 30)
        failing_id = failing.id
        make_ledger_row(days_old=100, contract_id="c-bad")
        make_ledger_row(days_old=100, contract_id="c-good")

        original = service._archive_policy

        def flaky(policy, all_policies, now):
            if policy.id == failing_id:
                raise RuntimeError("disk full")
            return original(policy, all_policies, now)

        with patch.object(service, "_archive_policy", side_effect=flaky):
            result = service.archive_old_ledgers()

        assert result.failed_policy_ids == [failing_id]
        assert result.policies_processed == 1
        assert result.archived_count == 1


# =============================================================================
# Unified query
# =============================================================================

class TestQueryWithArchive:
    """Tests for query_with_archive."""

    def test_requires_contract_or_student(self, service):
        start, end = query_window()

        with pytest.raises(InvalidQueryError) as exc_info:
            service.query_with_archive(start, end, service_type="mock_interview")

        assert exc_info.value.code == "INVALID_QUERY"

    def test_inverted_range(self, service):
        start, end = query_window()

        with pytest.raises(InvalidQueryError):
            service.query_with_archive(end, start, student_id="s-1")

    def test_range_over_one_year(self, service):
        """Test 2023-01-01 to 2024-06-01 is rejected before querying."""
        with pytest.raises(ArchiveDateRangeTooLargeError) as exc_info:
            service.query_with_archive(
                datetime(2023, 1, 1, tzinfo=timezone.utc),
                datetime(2024, 6, 1, tzinfo=timezone.utc),
                student_id="s-1",
            )

        assert exc_info.value.code == "ARCHIVE_DATE_RANGE_TOO_LARGE"
        assert exc_info.value.http_status == 400

    def test_exactly_one_year_is_allowed(self, service):
        records = service.query_with_archive(
            datetime(2023, 1, 1, tzinfo=timezone.utc),
            datetime(2024, 1, 1, tzinfo=timezone.utc),
            student_id="s-1",
        )

        assert records == []

    def test_deduplicates_rows_kept_hot(self, service, policies, make_ledger_row):
        policies.create_policy("global", 90, delete_after_archive=False)
        row = make_ledger_row(days_old=100, student_id="s-1")
        row_id = row.id
        service.archive_old_ledgers()

        start, end = query_window()
        records = service.query_with_archive(start, end, student_id="s-1")

        assert [r.id for r in records] == [row_id]
        assert records[0].source_table == "hot"

    def test_merges_newest_first_with_limit(self, service, policies, make_ledger_row):
        policies.create_policy("global", 90, delete_after_archive=True)
        old = make_ledger_row(days_old=120, contract_id="c-1")
        older = make_ledger_row(days_old=150, contract_id="c-1")
        recent = make_ledger_row(days_old=5, contract_id="c-1")
        ids = [recent.id, old.id, older.id]
        service.archive_old_ledgers()

        start, end = query_window()
        records = service.query_with_archive(start, end, contract_id="c-1")
        limited = service.query_with_archive(start, end, contract_id="c-1", limit=2)

        assert [r.id for r in records] == ids
        assert [r.source_table for r in records] == ["hot", "archive", "archive"]
        assert [r.id for r in limited] == ids[:2]

    def test_filters_by_service_type(self, service, make_ledger_row):
        make_ledger_row(student_id="s-1", service_type="mock_interview")
        make_ledger_row(student_id="s-1", service_type="resume_review")

        start, end = query_window()
        records = service.query_with_archive(start, end, student_id="s-1", service_type="resume_review")

        assert [r.service_type for r in records] == ["resume_review"]

"""
Ledger archival and unified hot + archive queries.

Archival walks enabled policies in precedence order. Each policy only
claims rows it actually governs: rows whose contract has a contract-scoped
policy are never picked up by a service-type or global policy, and rows
whose service type has a service-type policy are never picked up by the
global policy. Rows already present in the archive are skipped, so a row
kept hot after archival is never copied twice. When a policy deletes after
archiving, hot rows it governs that an earlier run archived but kept are
deleted as well.

Each policy runs in its own transaction(s); a failing policy is rolled
back, counted and logged, and the run moves on.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session

from entitlement_ledger.config.ledger_settings import LedgerSettings, get_ledger_settings
from entitlement_ledger.errors import ArchiveDateRangeTooLargeError, InvalidQueryError
from entitlement_ledger.models.archive_policy import ArchivePolicy, ArchivePolicyScope
from entitlement_ledger.models.base import utcnow
from entitlement_ledger.models.ledger import ServiceLedger, ServiceLedgerArchive
from entitlement_ledger.services.archive_policy import precedence_key

logger = logging.getLogger(__name__)

ARCHIVE_BATCH_SIZE = 1000
MAX_QUERY_LIMIT = 1000
MAX_QUERY_RANGE = relativedelta(years=1)


@dataclass(frozen=True)
class EffectivePolicy:
    """Detached snapshot of a policy for one archive run."""
    id: str
    scope: str
    contract_id: Optional[str]
    service_type: Optional[str]
    archive_after_days: int
    delete_after_archive: bool
    enabled: bool = True

    @classmethod
    def from_model(cls, policy: ArchivePolicy) -> "EffectivePolicy":
        return cls(
            id=policy.id,
            scope=policy.scope,
            contract_id=policy.contract_id,
            service_type=policy.service_type,
            archive_after_days=policy.archive_after_days,
            delete_after_archive=bool(policy.delete_after_archive),
            enabled=bool(policy.enabled),
        )

    @classmethod
    def default(cls, settings: LedgerSettings) -> "EffectivePolicy":
        return cls(
            id="default",
            scope=ArchivePolicyScope.GLOBAL.value,
            contract_id=None,
            service_type=None,
            archive_after_days=settings.default_archive_after_days,
            delete_after_archive=settings.default_delete_after_archive,
        )


@dataclass
class ArchiveRunResult:
    """Outcome of one archive run."""
    archived_count: int = 0
    deleted_count: int = 0
    policies_processed: int = 0
    failed_policy_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "archived_count": self.archived_count,
            "deleted_count": self.deleted_count,
            "policies_processed": self.policies_processed,
            "failed_policy_ids": list(self.failed_policy_ids),
        }


@dataclass
class LedgerRecord:
    """A ledger row from either storage tier."""
    id: str
    student_id: str
    contract_id: Optional[str]
    service_type: str
    quantity: int
    type: str
    source: str
    balance_after: int
    related_booking_id: Optional[str]
    related_hold_id: Optional[str]
    reason: Optional[str]
    details: Optional[dict]
    sequence: int
    created_by: Optional[str]
    created_at: datetime
    source_table: str = "hot"
    archived_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row, source_table: str) -> "LedgerRecord":
        return cls(
            source_table=source_table,
            archived_at=getattr(row, "archived_at", None),
            **row.to_dict(),
        )


class LedgerArchiveService:
    """Moves old ledger rows to the archive and reads across both tables."""

    def __init__(
        self,
        db_session: Session,
        settings: Optional[LedgerSettings] = None,
        batch_size: int = ARCHIVE_BATCH_SIZE,
    ):
        self.db = db_session
        self.settings = settings or get_ledger_settings()
        self.batch_size = batch_size

    # =========================================================================
    # Archival
    # =========================================================================

    def _effective_policies(self) -> List[EffectivePolicy]:
        rows = (
            self.db.query(ArchivePolicy)
            .filter(ArchivePolicy.enabled.is_(True))
            .order_by(ArchivePolicy.created_at.asc(), ArchivePolicy.id.asc())
            .all()
        )
        if not rows:
            return [EffectivePolicy.default(self.settings)]
        return sorted((EffectivePolicy.from_model(p) for p in rows), key=precedence_key)

    @staticmethod
    def _scope_filters(policy: EffectivePolicy, policies: List[EffectivePolicy]) -> list:
        """WHERE clauses restricting hot rows to those this policy governs."""
        contract_ids = [
            p.contract_id for p in policies
            if p.scope == ArchivePolicyScope.CONTRACT.value
        ]
        service_types = [
            p.service_type for p in policies
            if p.scope == ArchivePolicyScope.SERVICE_TYPE.value
        ]
        not_contract_scoped = or_(
            ServiceLedger.contract_id.is_(None),
            ServiceLedger.contract_id.notin_(contract_ids),
        )

        if policy.scope == ArchivePolicyScope.CONTRACT.value:
            return [ServiceLedger.contract_id == policy.contract_id]
        if policy.scope == ArchivePolicyScope.SERVICE_TYPE.value:
            return [ServiceLedger.service_type == policy.service_type, not_contract_scoped]
        return [not_contract_scoped, ServiceLedger.service_type.notin_(service_types)]

    def _archive_batch(self, policy: EffectivePolicy, filters: list, cutoff: datetime, now: datetime):
        rows = (
            self.db.query(ServiceLedger)
            .filter(
                ServiceLedger.created_at < cutoff,
                ServiceLedger.id.notin_(select(ServiceLedgerArchive.id)),
                *filters,
            )
            .order_by(ServiceLedger.created_at.asc(), ServiceLedger.id.asc())
            .limit(self.batch_size)
            .all()
        )
        if not rows:
            return 0, 0

        ids = [row.id for row in rows]
        for row in rows:
            self.db.add(ServiceLedgerArchive.from_ledger(row, archived_at=now))
        self.db.flush()

        deleted = 0
        if policy.delete_after_archive:
            deleted = self.db.execute(
                delete(ServiceLedger)
                .where(ServiceLedger.id.in_(ids))
                .execution_options(synchronize_session="fetch")
            ).rowcount
        return len(rows), deleted

    def _purge_archived_batch(self, filters: list, cutoff: datetime) -> int:
        """Delete hot rows past cutoff whose archive copy already exists."""
        ids = [
            row.id
            for row in self.db.query(ServiceLedger.id)
            .filter(
                ServiceLedger.created_at < cutoff,
                ServiceLedger.id.in_(select(ServiceLedgerArchive.id)),
                *filters,
            )
            .limit(self.batch_size)
            .all()
        ]
        if not ids:
            return 0
        return self.db.execute(
            delete(ServiceLedger)
            .where(ServiceLedger.id.in_(ids))
            .execution_options(synchronize_session="fetch")
        ).rowcount

    def _archive_policy(self, policy: EffectivePolicy, policies: List[EffectivePolicy], now: datetime):
        cutoff = now - timedelta(days=policy.archive_after_days)
        filters = self._scope_filters(policy, policies)

        archived = deleted = 0
        while True:
            batch_archived, batch_deleted = self._archive_batch(policy, filters, cutoff, now)
            self.db.commit()
            archived += batch_archived
            deleted += batch_deleted
            if batch_archived < self.batch_size:
                break

        if policy.delete_after_archive:
            while True:
                purged = self._purge_archived_batch(filters, cutoff)
                self.db.commit()
                deleted += purged
                if purged < self.batch_size:
                    break
        return archived, deleted

    def archive_old_ledgers(self, now: Optional[datetime] = None) -> ArchiveRunResult:
        """
        Archive hot ledger rows older than their governing policy allows.

        When no enabled policy exists, a global policy built from
        configuration (archive.default_archive_after_days,
        archive.default_delete_after_archive) is applied.

        Returns:
            ArchiveRunResult with counts across all policies
        """
        now = now or utcnow()
        policies = self._effective_policies()
        result = ArchiveRunResult()

        for policy in policies:
            try:
                archived, deleted = self._archive_policy(policy, policies, now)
                result.archived_count += archived
                result.deleted_count += deleted
                result.policies_processed += 1
                logger.info(
                    "Archive policy applied",
                    extra={
                        "policy_id": policy.id,
                        "scope": policy.scope,
                        "archived": archived,
                        "deleted": deleted,
                    },
                )
            except Exception as e:
                self.db.rollback()
                result.failed_policy_ids.append(policy.id)
                logger.error(
                    "Archive policy failed",
                    extra={"policy_id": policy.id, "scope": policy.scope, "error": str(e)},
                    exc_info=True,
                )

        logger.info("Ledger archive run completed", extra=result.to_dict())
        return result

    # =========================================================================
    # Unified query
    # =========================================================================

    def query_with_archive(
        self,
        start_date: datetime,
        end_date: datetime,
        contract_id: Optional[str] = None,
        student_id: Optional[str] = None,
        service_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[LedgerRecord]:
        """
        Read ledger rows from hot and archive storage as one list.

        Rows present in both tables (archived without deletion) appear once,
        as the hot copy. Results are newest first and capped at limit.

        Raises:
            InvalidQueryError: No contract_id/student_id, inverted range, or bad limit
            ArchiveDateRangeTooLargeError: Range longer than one year
        """
        if not contract_id and not student_id:
            raise InvalidQueryError("contract_id or student_id is required")
        if start_date is None or end_date is None:
            raise InvalidQueryError("start_date and end_date are required")
        if end_date < start_date:
            raise InvalidQueryError("end_date must not be before start_date")
        if end_date > start_date + MAX_QUERY_RANGE:
            raise ArchiveDateRangeTooLargeError(start_date, end_date)
        if limit < 1:
            raise InvalidQueryError("limit must be at least 1")
        limit = min(limit, MAX_QUERY_LIMIT)

        merged = {}
        for model, source_table in ((ServiceLedger, "hot"), (ServiceLedgerArchive, "archive")):
            query = self.db.query(model).filter(
                model.created_at >= start_date,
                model.created_at <= end_date,
            )
            if contract_id:
                query = query.filter(model.contract_id == contract_id)
            if student_id:
                query = query.filter(model.student_id == student_id)
            if service_type:
                query = query.filter(model.service_type == service_type)

            rows = query.order_by(model.created_at.desc(), model.id.desc()).limit(limit).all()
            for row in rows:
                if row.id not in merged:
                    merged[row.id] = LedgerRecord.from_row(row, source_table)

        records = sorted(merged.values(), key=lambda r: (r.created_at, r.id), reverse=True)
        return records[:limit]

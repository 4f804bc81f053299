"""
Archive policy resolution and administration.

resolve_policy() is a pure function over already-loaded policies so the
precedence rule (contract -> service_type -> global) can be tested without a
database. ArchivePolicyService wraps it with storage and enforces the
one-enabled-policy-per-scope rule.
"""

import logging
from typing import Iterable, List, Optional

from sqlalchemy import or_, and_
from sqlalchemy.orm import Session

from entitlement_ledger.errors import (
    ArchiveAfterDaysTooSmallError,
    ArchivePolicyAlreadyExistsError,
    ArchivePolicyNotFoundError,
    InvalidPolicyScopeError,
)
from entitlement_ledger.models.archive_policy import (
    ArchivePolicy,
    ArchivePolicyScope,
    SCOPE_PRECEDENCE,
)

logger = logging.getLogger(__name__)


def policy_covers(policy, contract_id: Optional[str], service_type: Optional[str]) -> bool:
    """Whether a policy's scope covers the (contract_id, service_type) pair."""
    if policy.scope == ArchivePolicyScope.CONTRACT.value:
        return contract_id is not None and policy.contract_id == contract_id
    if policy.scope == ArchivePolicyScope.SERVICE_TYPE.value:
        return service_type is not None and policy.service_type == service_type
    return policy.scope == ArchivePolicyScope.GLOBAL.value


def precedence_key(policy):
    return SCOPE_PRECEDENCE.get(policy.scope, len(SCOPE_PRECEDENCE))


def resolve_policy(policies: Iterable, contract_id: Optional[str], service_type: Optional[str]):
    """
    Pick the policy governing a ledger row.

    Only enabled policies are considered. Contract scope beats service-type
    scope, which beats global.

    Args:
        policies: Policy objects (ORM rows or anything with the same attributes)
        contract_id: Row's contract, may be None
        service_type: Row's service type

    Returns:
        The winning policy, or None if nothing applies
    """
    candidates = [
        p for p in policies
        if p.enabled and policy_covers(p, contract_id, service_type)
    ]
    if not candidates:
        return None
    return min(candidates, key=precedence_key)


def _normalize_scope(scope) -> str:
    try:
        return ArchivePolicyScope(scope).value
    except ValueError:
        raise InvalidPolicyScopeError(f"Unknown archive policy scope: {scope}")


def _validate_scope_fields(scope: str, contract_id: Optional[str], service_type: Optional[str]) -> None:
    if scope == ArchivePolicyScope.CONTRACT.value:
        if not contract_id or service_type:
            raise InvalidPolicyScopeError("contract scope requires contract_id and no service_type")
    elif scope == ArchivePolicyScope.SERVICE_TYPE.value:
        if not service_type or contract_id:
            raise InvalidPolicyScopeError("service_type scope requires service_type and no contract_id")
    elif contract_id or service_type:
        raise InvalidPolicyScopeError("global scope takes neither contract_id nor service_type")


def _validate_days(archive_after_days) -> None:
    if isinstance(archive_after_days, bool) or not isinstance(archive_after_days, int) or archive_after_days < 1:
        raise ArchiveAfterDaysTooSmallError(archive_after_days)


class ArchivePolicyService:
    """CRUD and resolution for archive policies."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def _enabled_for_key(self, scope: str, contract_id: Optional[str], service_type: Optional[str]):
        query = self.db.query(ArchivePolicy).filter(
            ArchivePolicy.enabled.is_(True),
            ArchivePolicy.scope == scope,
        )
        query = query.filter(
            ArchivePolicy.contract_id == contract_id if contract_id else ArchivePolicy.contract_id.is_(None),
            ArchivePolicy.service_type == service_type if service_type else ArchivePolicy.service_type.is_(None),
        )
        return query.first()

    def resolve_policy(self, contract_id: Optional[str], service_type: Optional[str]) -> Optional[ArchivePolicy]:
        """Load the candidate policies for a pair and resolve precedence."""
        clauses = [ArchivePolicy.scope == ArchivePolicyScope.GLOBAL.value]
        if contract_id:
            clauses.append(and_(
                ArchivePolicy.scope == ArchivePolicyScope.CONTRACT.value,
                ArchivePolicy.contract_id == contract_id,
            ))
        if service_type:
            clauses.append(and_(
                ArchivePolicy.scope == ArchivePolicyScope.SERVICE_TYPE.value,
                ArchivePolicy.service_type == service_type,
            ))

        candidates = (
            self.db.query(ArchivePolicy)
            .filter(ArchivePolicy.enabled.is_(True), or_(*clauses))
            .all()
        )
        return resolve_policy(candidates, contract_id, service_type)

    def create_policy(
        self,
        scope,
        archive_after_days: int,
        delete_after_archive: bool = False,
        contract_id: Optional[str] = None,
        service_type: Optional[str] = None,
        notes: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> ArchivePolicy:
        """
        Create an enabled archive policy.

        Raises:
            InvalidPolicyScopeError: Unknown scope or scope fields inconsistent with it
            ArchiveAfterDaysTooSmallError: If archive_after_days < 1
            ArchivePolicyAlreadyExistsError: If an enabled policy has the same scope key
        """
        scope = _normalize_scope(scope)
        _validate_scope_fields(scope, contract_id, service_type)
        _validate_days(archive_after_days)

        if self._enabled_for_key(scope, contract_id, service_type) is not None:
            raise ArchivePolicyAlreadyExistsError(scope, contract_id, service_type)

        policy = ArchivePolicy(
            scope=scope,
            contract_id=contract_id,
            service_type=service_type,
            archive_after_days=archive_after_days,
            delete_after_archive=bool(delete_after_archive),
            enabled=True,
            notes=notes,
            created_by=created_by,
        )
        try:
            self.db.add(policy)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Archive policy created",
            extra={
                "policy_id": policy.id,
                "scope": scope,
                "contract_id": contract_id,
                "service_type": service_type,
                "archive_after_days": archive_after_days,
                "delete_after_archive": bool(delete_after_archive),
            },
        )
        return policy

    def get_policy(self, policy_id: str) -> ArchivePolicy:
        policy = self.db.get(ArchivePolicy, policy_id)
        if policy is None:
            raise ArchivePolicyNotFoundError(policy_id)
        return policy

    def update_policy(
        self,
        policy_id: str,
        archive_after_days: Optional[int] = None,
        delete_after_archive: Optional[bool] = None,
        enabled: Optional[bool] = None,
        notes: Optional[str] = None,
    ) -> ArchivePolicy:
        """
        Change a policy's settings. Scope fields are immutable.

        Raises:
            ArchivePolicyNotFoundError: If the policy does not exist
            ArchiveAfterDaysTooSmallError: If archive_after_days < 1
            ArchivePolicyAlreadyExistsError: Re-enabling while another enabled
                policy holds the same scope key
        """
        policy = self.get_policy(policy_id)

        if archive_after_days is not None:
            _validate_days(archive_after_days)
        if enabled and not policy.enabled:
            existing = self._enabled_for_key(*policy.scope_key)
            if existing is not None and existing.id != policy.id:
                raise ArchivePolicyAlreadyExistsError(*policy.scope_key)

        if archive_after_days is not None:
            policy.archive_after_days = archive_after_days
        if delete_after_archive is not None:
            policy.delete_after_archive = bool(delete_after_archive)
        if enabled is not None:
            policy.enabled = bool(enabled)
        if notes is not None:
            policy.notes = notes

        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Archive policy updated",
            extra={
                "policy_id": policy_id,
                "archive_after_days": policy.archive_after_days,
                "delete_after_archive": policy.delete_after_archive,
                "enabled": policy.enabled,
            },
        )
        return policy

    def list_policies(self, enabled_only: bool = False) -> List[ArchivePolicy]:
        """Policies in precedence order (contract, service_type, global), oldest first within a scope."""
        query = self.db.query(ArchivePolicy)
        if enabled_only:
            query = query.filter(ArchivePolicy.enabled.is_(True))
        policies = query.order_by(ArchivePolicy.created_at.asc(), ArchivePolicy.id.asc()).all()
        return sorted(policies, key=precedence_key)

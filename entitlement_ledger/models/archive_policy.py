"""
Ledger archive policy model.

Policies control how long ledger rows stay in the hot table before they are
copied into service_ledgers_archive (and optionally deleted from the hot
table).

Scopes and precedence when a (contract_id, service_type) pair is resolved:
1. contract      - contract_id set, service_type null
2. service_type  - service_type set, contract_id null
3. global        - both null
"""

import enum

from sqlalchemy import (
    Column, String, Integer, Boolean, Text, CheckConstraint, Index,
)

from entitlement_ledger.models.base import Base, TimestampMixin, generate_uuid


class ArchivePolicyScope(str, enum.Enum):
    """Policy scope, in resolution precedence order."""
    CONTRACT = "contract"
    SERVICE_TYPE = "service_type"
    GLOBAL = "global"


SCOPE_PRECEDENCE = {
    ArchivePolicyScope.CONTRACT.value: 0,
    ArchivePolicyScope.SERVICE_TYPE.value: 1,
    ArchivePolicyScope.GLOBAL.value: 2,
}


class ArchivePolicy(Base, TimestampMixin):
    """
    Scoped retention rule for ledger rows.

    At most one enabled policy may exist per exact scope key; this is
    enforced by ArchivePolicyService at creation and re-enable time.
    """

    __tablename__ = "service_ledger_archive_policies"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    scope = Column(
        String(20),
        nullable=False,
        index=True,
        comment="global, service_type, contract"
    )
    contract_id = Column(
        String(36),
        nullable=True,
        comment="Required when scope='contract'"
    )
    service_type = Column(
        String(50),
        nullable=True,
        comment="Required when scope='service_type'"
    )

    archive_after_days = Column(Integer, nullable=False, default=90)
    delete_after_archive = Column(Boolean, nullable=False, default=False)
    enabled = Column(Boolean, nullable=False, default=True)

    notes = Column(Text, nullable=True)
    created_by = Column(String(64), nullable=True)

    __table_args__ = (
        CheckConstraint("archive_after_days > 0", name="ck_archive_after_days_positive"),
        Index("ix_archive_policies_enabled_scope", "enabled", "scope"),
    )

    @property
    def scope_key(self) -> tuple:
        """Exact key used for the one-enabled-policy-per-scope rule."""
        return (self.scope, self.contract_id, self.service_type)

    def __repr__(self) -> str:
        return (
            f"<ArchivePolicy(id={self.id}, scope={self.scope}, contract_id={self.contract_id}, "
            f"service_type={self.service_type}, days={self.archive_after_days}, enabled={self.enabled})>"
        )

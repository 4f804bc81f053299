"""
Entitlement grant model.

A student's entitlement for a service type is the aggregate of one or more
grant rows. Each grant is backed by a contract (product snapshot or
amendment) or by a manual adjustment with no contract.

Quantities are maintained explicitly by the service layer inside the same
transaction that writes the corresponding ledger entry.
available_quantity is derived and never stored.
"""

import enum
from dataclasses import dataclass

from sqlalchemy import (
    Column, String, Integer, DateTime,
    CheckConstraint, Index, UniqueConstraint, case,
)

from entitlement_ledger.models.base import Base, TimestampMixin, generate_uuid, utcnow


class GrantSource(str, enum.Enum):
    """Where a grant's quantity came from."""
    PRODUCT = "product"
    ADDON = "addon"
    PROMOTION = "promotion"
    COMPENSATION = "compensation"
    ADJUSTMENT = "adjustment"


# Higher value is drawn first when holding, consuming or clawing back.
DEDUCTION_PRIORITY = {
    GrantSource.PRODUCT.value: 4,
    GrantSource.ADDON.value: 3,
    GrantSource.PROMOTION.value: 2,
    GrantSource.COMPENSATION.value: 1,
    GrantSource.ADJUSTMENT.value: 0,
}


class EntitlementGrant(Base, TimestampMixin):
    """
    One underlying grant of service credit.

    Keyed by (student_id, service_type, contract_id, source). Rows are never
    deleted; quantities can reach zero while the row persists as the
    running account.
    """

    __tablename__ = "service_entitlement_grants"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    student_id = Column(
        String(64),
        nullable=False,
        comment="Student owning the credit"
    )
    service_type = Column(
        String(50),
        nullable=False,
        comment="Service type code (e.g. mock_interview, resume_review)"
    )
    contract_id = Column(
        String(36),
        nullable=True,
        index=True,
        comment="Backing contract; null for manual adjustments"
    )
    source = Column(
        String(20),
        nullable=False,
        default=GrantSource.PRODUCT.value,
        comment="product, addon, promotion, compensation, adjustment"
    )

    total_quantity = Column(Integer, nullable=False, default=0)
    consumed_quantity = Column(Integer, nullable=False, default=0)
    held_quantity = Column(Integer, nullable=False, default=0)

    granted_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        comment="When the grant was first created; tie-break for deduction order"
    )
    created_by = Column(String(64), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "student_id", "service_type", "contract_id", "source",
            name="uq_entitlement_grant_key"
        ),
        CheckConstraint("consumed_quantity >= 0", name="ck_grant_consumed_non_negative"),
        CheckConstraint("held_quantity >= 0", name="ck_grant_held_non_negative"),
        CheckConstraint(
            "consumed_quantity + held_quantity <= total_quantity",
            name="ck_grant_within_total"
        ),
        Index("ix_entitlement_grants_student_service", "student_id", "service_type"),
    )

    @property
    def available_quantity(self) -> int:
        return (self.total_quantity or 0) - (self.consumed_quantity or 0) - (self.held_quantity or 0)

    @classmethod
    def deduction_order(cls):
        """ORDER BY clauses for drawing down grants: priority, then oldest grant."""
        priority = case(DEDUCTION_PRIORITY, value=cls.source, else_=0)
        return (priority.desc(), cls.granted_at.asc(), cls.id.asc())

    def __repr__(self) -> str:
        return (
            f"<EntitlementGrant(student_id={self.student_id}, service_type={self.service_type}, "
            f"source={self.source}, total={self.total_quantity}, consumed={self.consumed_quantity}, "
            f"held={self.held_quantity})>"
        )


@dataclass
class EntitlementBalance:
    """Aggregated balance for one (student, service type) pair."""
    student_id: str
    service_type: str
    total_quantity: int = 0
    consumed_quantity: int = 0
    held_quantity: int = 0

    @property
    def available_quantity(self) -> int:
        return self.total_quantity - self.consumed_quantity - self.held_quantity

    @classmethod
    def from_grants(cls, student_id: str, service_type: str, grants) -> "EntitlementBalance":
        balance = cls(student_id=student_id, service_type=service_type)
        for grant in grants:
            balance.total_quantity += grant.total_quantity or 0
            balance.consumed_quantity += grant.consumed_quantity or 0
            balance.held_quantity += grant.held_quantity or 0
        return balance

    def to_dict(self) -> dict:
        return {
            "student_id": self.student_id,
            "service_type": self.service_type,
            "total_quantity": self.total_quantity,
            "consumed_quantity": self.consumed_quantity,
            "held_quantity": self.held_quantity,
            "available_quantity": self.available_quantity,
        }

"""
Contract amendment record.

One row per manual amendment (grant or claw-back) recorded against a
contract. The balance effect itself lives in the entitlement grants and the
service ledger; this table keeps the amendment's business context.
"""

import enum

from sqlalchemy import Column, String, Integer, DateTime, Text, Index

from entitlement_ledger.models.base import Base, generate_uuid, utcnow


class AmendmentType(str, enum.Enum):
    """Kind of amendment. Positive amendments credit a grant of the same source."""
    ADDON = "addon"
    PROMOTION = "promotion"
    COMPENSATION = "compensation"
    CORRECTION = "correction"


class ContractAmendment(Base):
    """Append-only amendment history per contract."""

    __tablename__ = "contract_amendment_ledgers"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    student_id = Column(String(64), nullable=False)
    contract_id = Column(String(36), nullable=False)
    service_type = Column(String(50), nullable=False)
    ledger_type = Column(String(20), nullable=False)
    quantity_changed = Column(Integer, nullable=False)

    reason = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    ledger_entry_id = Column(
        String(36),
        nullable=True,
        comment="service_ledgers row written for this amendment"
    )

    created_by = Column(String(64), nullable=False)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow
    )

    __table_args__ = (
        Index("ix_contract_amendments_contract", "contract_id", "created_at"),
        Index("ix_contract_amendments_student_service", "student_id", "service_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<ContractAmendment(contract_id={self.contract_id}, service_type={self.service_type}, "
            f"ledger_type={self.ledger_type}, quantity_changed={self.quantity_changed})>"
        )

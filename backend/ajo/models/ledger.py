"""
Ledger Models: Contribution cycles and the per-activation transaction trail.
"""
from datetime import datetime
from enum import Enum

from sqlalchemy import Column, String, Integer, DateTime, JSON, ForeignKey, UniqueConstraint

from ajo.database import Base


class ContributionStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class Contribution(Base):
    __tablename__ = "contributions"
    __table_args__ = (
        UniqueConstraint("group_id", "user_id", "cycle_number", name="uq_contribution_cycle"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    group_id = Column(String(36), ForeignKey("groups.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    cycle_number = Column(Integer, nullable=False)

    amount = Column(Integer, nullable=False)
    status = Column(String(16), default=ContributionStatus.PENDING.value, nullable=False)
    paid_at = Column(DateTime, nullable=True)
    transaction_ref = Column(String(100))

    created_at = Column(DateTime, default=datetime.utcnow)


class Transaction(Base):
    """One row per applied payment. The unique reference makes a second insert fail."""

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    reference = Column(String(100), unique=True, nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    group_id = Column(String(36), ForeignKey("groups.id"), nullable=False, index=True)

    type = Column(String(24), nullable=False)       # mirrors PaymentType
    amount = Column(Integer, nullable=False)
    status = Column(String(16), default="completed")
    description = Column(String(255))
    tx_metadata = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow)

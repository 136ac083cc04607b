"""
Payment Record Model: Ledger of gateway payment attempts, keyed by reference.
Rows are inserted pending and updated in place; never deleted.
"""
from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Column, String, Integer, DateTime, JSON, Boolean, ForeignKey, CheckConstraint,
)

from ajo.database import Base


class PaymentType(str, Enum):
    GROUP_CREATION = "group_creation"
    GROUP_JOIN = "group_join"
    CONTRIBUTION = "contribution"
    SECURITY_DEPOSIT = "security_deposit"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


MEMBERSHIP_PAYMENT_TYPES = (PaymentType.GROUP_CREATION, PaymentType.GROUP_JOIN)


class PaymentRecord(Base):
    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount > 0", name="payment_amount_positive"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    reference = Column(String(100), unique=True, nullable=False, index=True)

    user_id = Column(String(64), nullable=False, index=True)
    group_id = Column(String(36), ForeignKey("groups.id"), nullable=False, index=True)
    payment_type = Column(String(24), nullable=False)  # group_creation | group_join | contribution | security_deposit

    amount = Column(Integer, nullable=False)            # Minor units (kobo), expected
    paid_amount = Column(Integer, nullable=True)        # As reported by the gateway on verification
    currency = Column(String(3), default="NGN")

    status = Column(String(16), default=PaymentStatus.PENDING.value, nullable=False)
    verified = Column(Boolean, default=False, nullable=False)

    # Gateway facts, copied from the verify response. No card data.
    email = Column(String(255))
    channel = Column(String(32))
    authorization_code = Column(String(64))
    customer_code = Column(String(64))
    gateway_response = Column(String(255))
    fees = Column(Integer, default=0)
    paid_at = Column(DateTime, nullable=True)

    payment_metadata = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

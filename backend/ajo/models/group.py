"""
Group & Membership Models: Savings groups and their rotation roster.
"""
import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Column, String, Integer, DateTime, Boolean, ForeignKey, CheckConstraint, UniqueConstraint,
)

from ajo.database import Base


class GroupStatus(str, Enum):
    FORMING = "forming"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MembershipStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    REJECTED = "rejected"


class Group(Base):
    __tablename__ = "groups"
    __table_args__ = (
        CheckConstraint("capacity > 0", name="group_capacity_positive"),
        CheckConstraint(
            "current_member_count >= 0 AND current_member_count <= capacity",
            name="group_member_count_valid",
        ),
        CheckConstraint("contribution_amount > 0", name="group_contribution_positive"),
        CheckConstraint("security_deposit_amount >= 0", name="group_deposit_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(120), nullable=False)
    description = Column(String(500))
    created_by = Column(String(64), nullable=False, index=True)

    contribution_amount = Column(Integer, nullable=False)      # Minor units per cycle
    security_deposit_amount = Column(Integer, nullable=False, default=0)
    frequency = Column(String(16), nullable=False)             # daily | weekly | monthly

    capacity = Column(Integer, nullable=False)
    # Only ever changed by the activation transaction.
    current_member_count = Column(Integer, nullable=False, default=0)

    status = Column(String(16), default=GroupStatus.FORMING.value, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class GroupMembership(Base):
    __tablename__ = "group_members"
    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_group_member"),
        UniqueConstraint("group_id", "rotation_position", name="uq_group_rotation_position"),
        CheckConstraint("rotation_position > 0", name="rotation_position_positive"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    group_id = Column(String(36), ForeignKey("groups.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)

    rotation_position = Column(Integer, nullable=True)   # Assigned once, on activation
    preferred_slot = Column(Integer, nullable=True)      # Requested at join time; a hint, not a claim
    status = Column(String(16), default=MembershipStatus.PENDING.value, nullable=False)

    has_paid_deposit = Column(Boolean, default=False, nullable=False)
    deposit_paid_at = Column(DateTime, nullable=True)
    payment_reference = Column(String(100))

    joined_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

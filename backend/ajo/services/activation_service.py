"""
Activation Service: Turns a verified payment into its business effect, once.

Both confirmation paths (the client's verify call and the gateway webhook)
end up here, in any order and possibly at the same time. The database's
unique constraints and guarded UPDATEs decide who wins; the loser re-reads
and reports the winner's result.

Per payment type:
- group_creation / group_join: activate the membership, assign a rotation
  slot, bump the group's member count.
- contribution: mark the cycle's contribution paid.
- security_deposit: flag the member's deposit as paid.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

import structlog
from fastapi import Depends
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ajo.config import get_settings
from ajo.database import ServiceContext, get_service_context
from ajo.errors import ActivationConflictError, UnknownReferenceError, VerificationPendingError
from ajo.models.group import Group, GroupMembership, GroupStatus, MembershipStatus
from ajo.models.ledger import Contribution, ContributionStatus, Transaction
from ajo.models.payment import MEMBERSHIP_PAYMENT_TYPES, PaymentRecord, PaymentStatus, PaymentType
from ajo.schemas.schemas import PaymentMetadata
from ajo.services.paystack_client import GatewayVerification, PaystackClient, VerificationStatus, get_gateway

logger = structlog.get_logger(__name__)

FIRST_CYCLE_NUMBER = 1


class ActivationOutcome(str, Enum):
    ACTIVATED = "activated"
    ALREADY_ACTIVE = "already_active"
    RECORDED = "recorded"
    ALREADY_RECORDED = "already_recorded"
    REJECTED = "rejected"


class RejectionReason(str, Enum):
    GROUP_NOT_FOUND = "group_not_found"
    GROUP_FULL = "group_full"
    GROUP_CLOSED = "group_closed"
    SLOT_UNAVAILABLE = "slot_unavailable"
    ALREADY_REJECTED = "already_rejected"
    PAYMENT_DECLINED = "payment_declined"
    AMOUNT_INSUFFICIENT = "amount_insufficient"
    MEMBERSHIP_REJECTED = "membership_rejected"
    NOT_GROUP_CREATOR = "not_group_creator"
    NOT_A_MEMBER = "not_a_member"
    INVALID_METADATA = "invalid_metadata"


_REJECTION_MESSAGES = {
    RejectionReason.GROUP_NOT_FOUND: "The group for this payment no longer exists.",
    RejectionReason.GROUP_FULL: "The group is already full.",
    RejectionReason.GROUP_CLOSED: "The group is not accepting new members.",
    RejectionReason.SLOT_UNAVAILABLE: "No rotation slot is available in this group.",
    RejectionReason.ALREADY_REJECTED: "This payment was previously marked as failed.",
    RejectionReason.PAYMENT_DECLINED: "The payment was declined by the gateway.",
    RejectionReason.AMOUNT_INSUFFICIENT: "The amount paid does not cover the required amount.",
    RejectionReason.MEMBERSHIP_REJECTED: "Your request to join this group was rejected.",
    RejectionReason.NOT_GROUP_CREATOR: "Only the group creator can make a group creation payment.",
    RejectionReason.NOT_A_MEMBER: "You must be an active member of this group.",
    RejectionReason.INVALID_METADATA: "The payment metadata is malformed.",
}


@dataclass(frozen=True)
class ActivationResult:
    reference: str
    outcome: ActivationOutcome
    rotation_position: Optional[int] = None
    reason: Optional[RejectionReason] = None
    message: str = ""

    @property
    def applied(self) -> bool:
        """True when the payment's effect is in place, whoever put it there."""
        return self.outcome != ActivationOutcome.REJECTED

    @classmethod
    def rejected(cls, reference: str, reason: RejectionReason) -> "ActivationResult":
        return cls(reference, ActivationOutcome.REJECTED, reason=reason, message=_REJECTION_MESSAGES[reason])


class _LostRace(Exception):
    """A guarded UPDATE matched no row: another activation got there first."""


class ActivationService:
    def __init__(self, context: ServiceContext, gateway: PaystackClient, max_attempts: int = 3):
        self.context = context
        self.gateway = gateway
        self.max_attempts = max(1, max_attempts)

    # ─── Public operations ──────────────────────────────────────────

    def activate(self, reference: str, verification: Optional[GatewayVerification] = None) -> ActivationResult:
        """Apply a payment's effect exactly once.

        ``verification`` may carry a result the caller already obtained
        from the gateway client. When it is absent and the stored record
        is unverified, the gateway is asked here, before any transaction
        opens.
        """
        log = logger.bind(reference=reference)

        with self.context.session() as db:
            record = self._load_record(db, reference)
            if record.status == PaymentStatus.FAILED:
                return ActivationResult.rejected(reference, RejectionReason.ALREADY_REJECTED)
            metadata = self._metadata(record)
            if metadata is None:
                log.warning("activation.invalid_metadata")
                return ActivationResult.rejected(reference, RejectionReason.INVALID_METADATA)
            existing = self._already_applied(db, record, metadata)
            if existing is not None:
                log.info("activation.already_applied", outcome=existing.outcome.value)
                return existing
            verified = record.verified

        if not verified:
            if verification is None or verification.reference != reference:
                verification = self.gateway.verify(reference)
            if verification.status == VerificationStatus.DECLINED:
                return self._mark_failed(reference, verification)
            if not verification.confirmed:
                log.info("activation.not_confirmed", verification_status=verification.status.value)
                raise VerificationPendingError(
                    verification.message or "Payment has not been confirmed by the gateway yet.",
                    verification_status=verification.status.value,
                )
        else:
            verification = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                result = self._apply(reference, verification)
            except (IntegrityError, _LostRace) as exc:
                log.info("activation.race_lost", attempt=attempt, error=exc.__class__.__name__)
                with self.context.session() as db:
                    record = self._load_record(db, reference)
                    existing = self._already_applied(db, record, self._metadata(record))
                if existing is not None:
                    return existing
                continue

            log.info(
                "activation.finished",
                outcome=result.outcome.value,
                reason=result.reason.value if result.reason else None,
                rotation_position=result.rotation_position,
            )
            return result

        log.error("activation.gave_up", attempts=self.max_attempts)
        raise ActivationConflictError("Activation is busy for this group. Please retry shortly.")

    def record_failure(self, reference: str) -> Optional[ActivationResult]:
        """Mark a pending payment failed, but only on the gateway's word."""
        with self.context.session() as db:
            record = self._load_record(db, reference)
            if record.status != PaymentStatus.PENDING:
                return None

        verification = self.gateway.verify(reference)
        if verification.status == VerificationStatus.DECLINED:
            return self._mark_failed(reference, verification)
        if verification.confirmed:
            # The failure report is stale; the charge went through after all.
            return self.activate(reference, verification)
        logger.info("activation.failure_unconfirmed", reference=reference, verification_status=verification.status.value)
        return None

    # ─── Reads ──────────────────────────────────────────────────────

    @staticmethod
    def _load_record(db: Session, reference: str) -> PaymentRecord:
        record = db.query(PaymentRecord).filter(PaymentRecord.reference == reference).first()
        if not record:
            raise UnknownReferenceError(f"No payment found for reference {reference}")
        return record

    @staticmethod
    def _metadata(record: PaymentRecord) -> Optional[PaymentMetadata]:
        try:
            metadata = PaymentMetadata.model_validate(record.payment_metadata or {})
        except ValidationError:
            return None
        # Metadata must describe the row it is attached to.
        if (
            metadata.user_id != record.user_id
            or metadata.entity_id != record.group_id
            or metadata.purpose != record.payment_type
        ):
            return None
        return metadata

    @staticmethod
    def _membership(db: Session, group_id: str, user_id: str) -> Optional[GroupMembership]:
        return db.query(GroupMembership).filter(
            GroupMembership.group_id == group_id,
            GroupMembership.user_id == user_id,
        ).first()

    def _already_applied(
        self, db: Session, record: PaymentRecord, metadata: Optional[PaymentMetadata]
    ) -> Optional[ActivationResult]:
        membership = self._membership(db, record.group_id, record.user_id)
        payment_type = record.payment_type

        if payment_type in MEMBERSHIP_PAYMENT_TYPES:
            if membership and membership.status == MembershipStatus.ACTIVE:
                return ActivationResult(
                    record.reference, ActivationOutcome.ALREADY_ACTIVE,
                    rotation_position=membership.rotation_position,
                    message="Membership is already active.",
                )
            return None

        if payment_type == PaymentType.SECURITY_DEPOSIT:
            if membership and membership.has_paid_deposit:
                return ActivationResult(
                    record.reference, ActivationOutcome.ALREADY_RECORDED,
                    rotation_position=membership.rotation_position,
                    message="Security deposit already recorded.",
                )
            return None

        if payment_type == PaymentType.CONTRIBUTION and metadata is not None:
            paid = db.query(Contribution).filter(
                Contribution.group_id == record.group_id,
                Contribution.user_id == record.user_id,
                Contribution.cycle_number == metadata.cycle_number,
                Contribution.status == ContributionStatus.PAID.value,
            ).first()
            if paid:
                return ActivationResult(
                    record.reference, ActivationOutcome.ALREADY_RECORDED,
                    message=f"Contribution for cycle {metadata.cycle_number} already recorded.",
                )
        return None

    # ─── Writes ─────────────────────────────────────────────────────

    def _mark_failed(self, reference: str, verification: GatewayVerification) -> ActivationResult:
        with self.context.transaction() as db:
            updated = db.query(PaymentRecord).filter(
                PaymentRecord.reference == reference,
                PaymentRecord.status == PaymentStatus.PENDING.value,
            ).update(
                {
                    PaymentRecord.status: PaymentStatus.FAILED.value,
                    PaymentRecord.gateway_response: verification.gateway_response or verification.message,
                    PaymentRecord.updated_at: datetime.utcnow(),
                },
                synchronize_session=False,
            )
        if updated:
            logger.info("activation.payment_failed", reference=reference)
        else:
            logger.warning("activation.decline_ignored", reference=reference, detail="payment no longer pending")
        return ActivationResult.rejected(reference, RejectionReason.PAYMENT_DECLINED)

    def _apply(self, reference: str, verification: Optional[GatewayVerification]) -> ActivationResult:
        """One attempt, one transaction. Business rejections still commit the verification."""
        with self.context.transaction() as db:
            record = self._load_record(db, reference)
            if record.status == PaymentStatus.FAILED:
                return ActivationResult.rejected(reference, RejectionReason.ALREADY_REJECTED)
            if verification is not None:
                self._record_verification(record, verification)
            metadata = self._metadata(record)
            if metadata is None:
                return ActivationResult.rejected(reference, RejectionReason.INVALID_METADATA)

            # The gateway's figure, stored at verification time.
            paid_amount = record.paid_amount if record.paid_amount is not None else 0

            if record.payment_type in MEMBERSHIP_PAYMENT_TYPES:
                return self._activate_membership(db, record, metadata, paid_amount)
            if record.payment_type == PaymentType.CONTRIBUTION:
                return self._record_contribution(db, record, metadata, paid_amount)
            return self._record_deposit(db, record, paid_amount)

    @staticmethod
    def _record_verification(record: PaymentRecord, verification: GatewayVerification) -> None:
        now = datetime.utcnow()
        record.status = PaymentStatus.SUCCESS.value
        record.verified = True
        if verification.amount is not None:
            record.paid_amount = verification.amount
        record.paid_at = verification.paid_at or record.paid_at or now
        record.channel = verification.channel or record.channel
        record.currency = verification.currency or record.currency
        record.gateway_response = verification.gateway_response or record.gateway_response
        record.fees = verification.fees
        record.email = verification.email or record.email
        record.customer_code = verification.customer_code or record.customer_code
        record.authorization_code = verification.authorization_code or record.authorization_code
        record.updated_at = now

    @staticmethod
    def _choose_slot(db: Session, group: Group, preferred: Optional[int]) -> Optional[int]:
        """Preferred slot if free, otherwise the lowest free one."""
        occupied = {
            position for (position,) in db.query(GroupMembership.rotation_position).filter(
                GroupMembership.group_id == group.id,
                GroupMembership.rotation_position.isnot(None),
            ).all()
        }
        if preferred is not None and 1 <= preferred <= group.capacity and preferred not in occupied:
            return preferred
        for slot in range(1, group.capacity + 1):
            if slot not in occupied:
                return slot
        return None

    def _activate_membership(
        self, db: Session, record: PaymentRecord, metadata: PaymentMetadata, paid_amount: int
    ) -> ActivationResult:
        reference = record.reference
        group = db.query(Group).filter(Group.id == record.group_id).with_for_update().first()
        if not group:
            return ActivationResult.rejected(reference, RejectionReason.GROUP_NOT_FOUND)

        membership = self._membership(db, group.id, record.user_id)
        if membership and membership.status == MembershipStatus.ACTIVE:
            return ActivationResult(
                reference, ActivationOutcome.ALREADY_ACTIVE,
                rotation_position=membership.rotation_position,
                message="Membership is already active.",
            )
        if membership and membership.status == MembershipStatus.REJECTED:
            return ActivationResult.rejected(reference, RejectionReason.MEMBERSHIP_REJECTED)
        if record.payment_type == PaymentType.GROUP_CREATION and group.created_by != record.user_id:
            return ActivationResult.rejected(reference, RejectionReason.NOT_GROUP_CREATOR)
        if group.current_member_count >= group.capacity:
            return ActivationResult.rejected(reference, RejectionReason.GROUP_FULL)
        if group.status != GroupStatus.FORMING:
            return ActivationResult.rejected(reference, RejectionReason.GROUP_CLOSED)
        if paid_amount < group.contribution_amount + group.security_deposit_amount:
            return ActivationResult.rejected(reference, RejectionReason.AMOUNT_INSUFFICIENT)

        preferred = metadata.preferred_slot
        if preferred is None and membership is not None:
            preferred = membership.preferred_slot
        slot = self._choose_slot(db, group, preferred)
        if slot is None:
            return ActivationResult.rejected(reference, RejectionReason.SLOT_UNAVAILABLE)

        now = datetime.utcnow()
        values = {
            "status": MembershipStatus.ACTIVE.value,
            "rotation_position": slot,
            "has_paid_deposit": True,
            "deposit_paid_at": now,
            "payment_reference": reference,
            "joined_at": now,
            "updated_at": now,
        }
        if membership is None:
            db.add(GroupMembership(group_id=group.id, user_id=record.user_id, **values))
        else:
            updated = db.query(GroupMembership).filter(
                GroupMembership.id == membership.id,
                GroupMembership.status == MembershipStatus.PENDING.value,
            ).update(values, synchronize_session=False)
            if not updated:
                raise _LostRace()
        db.flush()

        incremented = db.query(Group).filter(
            Group.id == group.id,
            Group.current_member_count < Group.capacity,
        ).update(
            {Group.current_member_count: Group.current_member_count + 1, Group.updated_at: now},
            synchronize_session=False,
        )
        if not incremented:
            raise _LostRace()

        db.query(Group).filter(
            Group.id == group.id,
            Group.status == GroupStatus.FORMING.value,
            Group.current_member_count >= Group.capacity,
        ).update({Group.status: GroupStatus.ACTIVE.value}, synchronize_session=False)

        self._upsert_contribution(db, record, FIRST_CYCLE_NUMBER, group.contribution_amount, now)
        db.add(Transaction(
            reference=reference,
            user_id=record.user_id,
            group_id=group.id,
            type=record.payment_type,
            amount=record.amount,
            description=(
                "Group creation: security deposit and first contribution"
                if record.payment_type == PaymentType.GROUP_CREATION
                else "Group join: security deposit and first contribution"
            ),
            tx_metadata={"rotation_position": slot},
        ))
        db.flush()

        return ActivationResult(
            reference, ActivationOutcome.ACTIVATED,
            rotation_position=slot,
            message=f"Membership activated at rotation position {slot}.",
        )

    @staticmethod
    def _upsert_contribution(db: Session, record: PaymentRecord, cycle: int, amount: int, now: datetime) -> bool:
        """Mark the cycle paid. False if it already was."""
        existing = db.query(Contribution).filter(
            Contribution.group_id == record.group_id,
            Contribution.user_id == record.user_id,
            Contribution.cycle_number == cycle,
        ).first()
        if existing is None:
            db.add(Contribution(
                group_id=record.group_id,
                user_id=record.user_id,
                cycle_number=cycle,
                amount=amount,
                status=ContributionStatus.PAID.value,
                paid_at=now,
                transaction_ref=record.reference,
            ))
            return True
        updated = db.query(Contribution).filter(
            Contribution.id == existing.id,
            Contribution.status == ContributionStatus.PENDING.value,
        ).update(
            {
                Contribution.status: ContributionStatus.PAID.value,
                Contribution.paid_at: now,
                Contribution.transaction_ref: record.reference,
            },
            synchronize_session=False,
        )
        return bool(updated)

    def _active_membership(self, db: Session, record: PaymentRecord) -> Optional[GroupMembership]:
        membership = self._membership(db, record.group_id, record.user_id)
        if membership is None or membership.status != MembershipStatus.ACTIVE:
            return None
        return membership

    def _record_contribution(
        self, db: Session, record: PaymentRecord, metadata: PaymentMetadata, paid_amount: int
    ) -> ActivationResult:
        group = db.query(Group).filter(Group.id == record.group_id).first()
        if not group:
            return ActivationResult.rejected(record.reference, RejectionReason.GROUP_NOT_FOUND)
        if self._active_membership(db, record) is None:
            return ActivationResult.rejected(record.reference, RejectionReason.NOT_A_MEMBER)
        if paid_amount < group.contribution_amount:
            return ActivationResult.rejected(record.reference, RejectionReason.AMOUNT_INSUFFICIENT)

        now = datetime.utcnow()
        if not self._upsert_contribution(db, record, metadata.cycle_number, group.contribution_amount, now):
            raise _LostRace()
        db.add(Transaction(
            reference=record.reference,
            user_id=record.user_id,
            group_id=group.id,
            type=PaymentType.CONTRIBUTION.value,
            amount=record.amount,
            description=f"Contribution for cycle {metadata.cycle_number}",
            tx_metadata={"cycle_number": metadata.cycle_number},
        ))
        db.flush()
        return ActivationResult(
            record.reference, ActivationOutcome.RECORDED,
            message=f"Contribution for cycle {metadata.cycle_number} recorded.",
        )

    def _record_deposit(self, db: Session, record: PaymentRecord, paid_amount: int) -> ActivationResult:
        group = db.query(Group).filter(Group.id == record.group_id).first()
        if not group:
            return ActivationResult.rejected(record.reference, RejectionReason.GROUP_NOT_FOUND)
        membership = self._active_membership(db, record)
        if membership is None:
            return ActivationResult.rejected(record.reference, RejectionReason.NOT_A_MEMBER)
        if paid_amount < group.security_deposit_amount:
            return ActivationResult.rejected(record.reference, RejectionReason.AMOUNT_INSUFFICIENT)

        now = datetime.utcnow()
        updated = db.query(GroupMembership).filter(
            GroupMembership.id == membership.id,
            GroupMembership.has_paid_deposit.is_(False),
        ).update(
            {
                GroupMembership.has_paid_deposit: True,
                GroupMembership.deposit_paid_at: now,
                GroupMembership.updated_at: now,
            },
            synchronize_session=False,
        )
        if not updated:
            raise _LostRace()
        db.add(Transaction(
            reference=record.reference,
            user_id=record.user_id,
            group_id=group.id,
            type=PaymentType.SECURITY_DEPOSIT.value,
            amount=record.amount,
            description="Security deposit",
        ))
        db.flush()
        return ActivationResult(
            record.reference, ActivationOutcome.RECORDED,
            rotation_position=membership.rotation_position,
            message="Security deposit recorded.",
        )


def get_activation_service(
    context: ServiceContext = Depends(get_service_context),
    gateway: PaystackClient = Depends(get_gateway),
) -> ActivationService:
    return ActivationService(context, gateway, max_attempts=get_settings().ACTIVATION_MAX_ATTEMPTS)

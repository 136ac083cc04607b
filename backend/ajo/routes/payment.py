"""
Payment Routes: Initialization and synchronous verification of gateway payments.
Handles: group creation, group join, contribution and security deposit payments.
"""
import structlog
from fastapi import APIRouter, Depends, Response
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ajo.config import get_settings
from ajo.database import get_db
from ajo.errors import (
    ConflictError, DuplicateReferenceError, GroupNotFoundError, InvalidRequestError,
    PermissionDeniedError, UnknownReferenceError, VerificationPendingError,
)
from ajo.models.group import Group, GroupMembership, MembershipStatus
from ajo.models.payment import MEMBERSHIP_PAYMENT_TYPES, PaymentRecord, PaymentType
from ajo.schemas.schemas import (
    ErrorResponse, PaymentInitRequest, PaymentInitResponse, PaymentMetadata,
    PaymentStatusResponse, VerifyPaymentRequest, VerifyPaymentResponse,
)
from ajo.services.activation_service import (
    ActivationResult, ActivationService, RejectionReason, get_activation_service,
)
from ajo.services.paystack_client import PaystackClient, VerificationStatus, get_gateway
from ajo.services.token_guard import Principal, require_user
from ajo.utils.rate_limiter import rate_limit
from ajo.utils.validators import generate_reference, validate_reference, validate_slot

logger = structlog.get_logger(__name__)
settings = get_settings()

router = APIRouter(prefix="/api/payments", tags=["Payment"])

_FAILED_REASONS = (RejectionReason.PAYMENT_DECLINED, RejectionReason.ALREADY_REJECTED)


def _required_amount(group: Group, payment_type: PaymentType) -> int:
    if payment_type in MEMBERSHIP_PAYMENT_TYPES:
        return group.contribution_amount + group.security_deposit_amount
    if payment_type == PaymentType.CONTRIBUTION:
        return group.contribution_amount
    return group.security_deposit_amount


def _check_eligibility(payload: PaymentInitRequest, group: Group, membership, user_id: str) -> None:
    """Refuse payments that activation would reject anyway."""
    payment_type = payload.payment_type
    active = membership is not None and membership.status == MembershipStatus.ACTIVE

    if payment_type in MEMBERSHIP_PAYMENT_TYPES:
        if not validate_slot(payload.preferred_slot, group.capacity):
            raise InvalidRequestError(f"preferred_slot must be between 1 and {group.capacity}")
        if active:
            raise ConflictError("You are already an active member of this group", code="already_member")
        if group.current_member_count >= group.capacity:
            raise ConflictError("This group is already full", code="group_full")

    if payment_type == PaymentType.GROUP_CREATION and group.created_by != user_id:
        raise PermissionDeniedError("Only the group creator can make a group creation payment")
    if payment_type == PaymentType.GROUP_JOIN:
        if group.created_by == user_id:
            raise ConflictError("Group creators join through the group creation payment", code="creator_cannot_join")
        if membership is not None and membership.status == MembershipStatus.REJECTED:
            raise PermissionDeniedError("Your request to join this group was rejected")

    if payment_type in (PaymentType.CONTRIBUTION, PaymentType.SECURITY_DEPOSIT) and not active:
        raise PermissionDeniedError("You must be an active member of this group", code="not_a_member")
    if payment_type == PaymentType.CONTRIBUTION and payload.cycle_number is None:
        raise InvalidRequestError("cycle_number is required for contribution payments")
    if payment_type == PaymentType.SECURITY_DEPOSIT and group.security_deposit_amount <= 0:
        raise InvalidRequestError("This group does not require a security deposit")


@router.post(
    "/initialize",
    response_model=PaymentInitResponse,
    status_code=201,
    responses={401: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def initialize_payment(
    payload: PaymentInitRequest,
    principal: Principal = Depends(require_user),
    db: Session = Depends(get_db),
    _throttle: bool = Depends(rate_limit(
        requests=settings.RATE_LIMIT_REQUESTS, window=settings.RATE_LIMIT_WINDOW_SECONDS, scope="initialize",
    )),
):
    """Create a pending payment record and the metadata to hand to the gateway."""
    group = db.query(Group).filter(Group.id == payload.group_id).first()
    if not group:
        raise GroupNotFoundError("Group not found")

    if payload.reference is not None and not validate_reference(payload.reference):
        raise InvalidRequestError("reference must be 6-100 characters of letters, digits, '.', '=', '_' or '-'")
    reference = payload.reference or generate_reference()
    if db.query(PaymentRecord.id).filter(PaymentRecord.reference == reference).first():
        raise DuplicateReferenceError("A payment with this reference already exists")

    membership = db.query(GroupMembership).filter(
        GroupMembership.group_id == group.id,
        GroupMembership.user_id == principal.user_id,
    ).first()
    _check_eligibility(payload, group, membership, principal.user_id)

    is_membership_payment = payload.payment_type in MEMBERSHIP_PAYMENT_TYPES
    metadata = PaymentMetadata(
        app=settings.APP_IDENTIFIER,
        user_id=principal.user_id,
        purpose=payload.payment_type,
        entity_id=group.id,
        preferred_slot=payload.preferred_slot if is_membership_payment else None,
        cycle_number=payload.cycle_number if payload.payment_type == PaymentType.CONTRIBUTION else None,
    )
    amount = _required_amount(group, payload.payment_type)

    record = PaymentRecord(
        reference=reference,
        user_id=principal.user_id,
        group_id=group.id,
        payment_type=payload.payment_type.value,
        amount=amount,
        currency=settings.DEFAULT_CURRENCY,
        email=principal.email,
        payment_metadata=metadata.model_dump(mode="json", exclude_none=True),
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateReferenceError("A payment with this reference already exists")

    logger.info(
        "payment.initialized",
        reference=reference, user_id=principal.user_id, group_id=group.id,
        payment_type=payload.payment_type.value, amount=amount,
    )

    return PaymentInitResponse(
        reference=reference,
        amount=amount,
        currency=record.currency,
        email=principal.email,
        metadata=metadata,
    )


def _verify_response(result: ActivationResult, response: Response) -> VerifyPaymentResponse:
    if result.applied:
        return VerifyPaymentResponse(
            success=True,
            payment_status="verified",
            message=result.message,
            reference=result.reference,
            outcome=result.outcome.value,
            position=result.rotation_position,
        )

    failed = result.reason in _FAILED_REASONS
    response.status_code = 402 if failed else 409
    return VerifyPaymentResponse(
        success=False,
        payment_status="failed" if failed else "verified",
        message=result.message,
        reference=result.reference,
        outcome=result.outcome.value,
        reason=result.reason.value if result.reason else None,
    )


@router.post(
    "/verify",
    response_model=VerifyPaymentResponse,
    responses={
        202: {"model": ErrorResponse, "description": "Not confirmed yet; retry"},
        401: {"model": ErrorResponse, "description": "Token expired, malformed or invalid"},
        402: {"model": VerifyPaymentResponse, "description": "Payment failed"},
        409: {"model": VerifyPaymentResponse, "description": "Payment confirmed but not applicable"},
    },
)
def verify_payment(
    payload: VerifyPaymentRequest,
    response: Response,
    principal: Principal = Depends(require_user),
    db: Session = Depends(get_db),
    gateway: PaystackClient = Depends(get_gateway),
    activation: ActivationService = Depends(get_activation_service),
    _throttle: bool = Depends(rate_limit(
        requests=settings.RATE_LIMIT_REQUESTS, window=settings.RATE_LIMIT_WINDOW_SECONDS, scope="verify",
    )),
):
    """Confirm a payment with the gateway right after checkout and apply it."""
    reference = payload.reference.strip()
    record = db.query(PaymentRecord).filter(PaymentRecord.reference == reference).first()
    if not record:
        raise UnknownReferenceError("Payment not found")
    if record.user_id != principal.user_id:
        logger.warning("payment.verify.foreign_reference", reference=reference, user_id=principal.user_id)
        raise PermissionDeniedError("You can only verify your own payments")

    verification = gateway.verify(reference)
    if verification.status not in (VerificationStatus.CONFIRMED, VerificationStatus.DECLINED):
        logger.info("payment.verify.pending", reference=reference, verification_status=verification.status.value)
        raise VerificationPendingError(
            "Payment is still being confirmed. Please try again shortly.",
            verification_status=verification.status.value,
        )

    result = activation.activate(reference, verification)
    return _verify_response(result, response)


@router.get("/{reference}", response_model=PaymentStatusResponse)
def get_payment_status(
    reference: str,
    principal: Principal = Depends(require_user),
    db: Session = Depends(get_db),
):
    """Current stored status of one of the caller's payments."""
    record = db.query(PaymentRecord).filter(PaymentRecord.reference == reference).first()
    if not record or record.user_id != principal.user_id:
        raise UnknownReferenceError("Payment not found")
    return PaymentStatusResponse.model_validate(record)

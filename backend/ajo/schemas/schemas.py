"""
Pydantic Schemas: Request & Response models for API validation.
"""
from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, ConfigDict, Field, model_validator

from ajo.models.payment import PaymentType


# ──────────────── Payment metadata ────────────────

class PaymentMetadata(BaseModel):
    """Metadata attached to a payment at initialization and sent to the gateway.

    Read back and re-validated by the activation service; unknown keys are
    rejected rather than carried along.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    app: str = Field(..., min_length=1, description="Application identifier")
    user_id: str = Field(..., min_length=1)
    purpose: PaymentType
    entity_id: str = Field(..., min_length=1, description="Target group id")
    preferred_slot: Optional[int] = Field(None, ge=1)
    cycle_number: Optional[int] = Field(None, ge=1)

    @model_validator(mode="after")
    def _cycle_for_contributions(self):
        if self.purpose == PaymentType.CONTRIBUTION and self.cycle_number is None:
            raise ValueError("contribution payments require cycle_number")
        return self


# ──────────────── Payment ────────────────

class PaymentInitRequest(BaseModel):
    group_id: str
    payment_type: PaymentType
    reference: Optional[str] = Field(None, description="Client-generated reference; generated if omitted")
    preferred_slot: Optional[int] = Field(None, ge=1, description="Desired payout rotation position")
    cycle_number: Optional[int] = Field(None, ge=1, description="Contribution cycle (contribution payments)")


class PaymentInitResponse(BaseModel):
    success: bool = True
    reference: str
    amount: int
    currency: str
    email: Optional[str] = None
    status: str = "pending"
    metadata: PaymentMetadata
    message: str = "Payment initialized. Complete it with the gateway, then call verify."


class VerifyPaymentRequest(BaseModel):
    reference: str = Field(..., min_length=1)


class VerifyPaymentResponse(BaseModel):
    success: bool
    payment_status: str          # verified | pending | failed | unauthorized
    message: str
    reference: str
    outcome: Optional[str] = None
    position: Optional[int] = None
    reason: Optional[str] = None
    retryable: bool = False


class PaymentStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    reference: str
    payment_type: str
    status: str
    verified: bool
    amount: int
    currency: str
    channel: Optional[str] = None
    paid_amount: Optional[int] = None
    paid_at: Optional[datetime] = None
    created_at: datetime


# ──────────────── Groups ────────────────

class GroupCreateRequest(BaseModel):
    name: str = Field(..., min_length=3, max_length=120)
    description: Optional[str] = Field(None, max_length=500)
    contribution_amount: int = Field(..., gt=0, description="Per-cycle contribution in kobo")
    security_deposit_amount: int = Field(0, ge=0, description="Security deposit in kobo")
    frequency: str = Field(..., pattern="^(daily|weekly|monthly)$")
    capacity: int = Field(..., ge=2, le=100, description="Number of members / rotation slots")


class MemberEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    status: str
    rotation_position: Optional[int] = None
    preferred_slot: Optional[int] = None
    has_paid_deposit: bool = False
    joined_at: Optional[datetime] = None


class GroupResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    created_by: str
    contribution_amount: int
    security_deposit_amount: int
    frequency: str
    capacity: int
    current_member_count: int
    status: str
    members: List[MemberEntry] = []


class JoinGroupRequest(BaseModel):
    preferred_slot: Optional[int] = Field(None, ge=1, description="Desired payout rotation position")


class JoinRequestResponse(BaseModel):
    success: bool = True
    group_id: str
    user_id: str
    status: str
    preferred_slot: Optional[int] = None
    message: str = ""


# ──────────────── Webhooks ────────────────

class WebhookAck(BaseModel):
    status: str = "received"
    event_id: Optional[int] = None


class WebhookEventEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    event_type: str
    reference: Optional[str] = None
    state: str
    outcome: Optional[str] = None
    error: Optional[str] = None
    received_at: datetime
    processed_at: Optional[datetime] = None


# ──────────────── Admin ────────────────

class ConsistencyReport(BaseModel):
    group_id: str
    current_member_count: int
    active_members: int
    capacity: int
    consistent: bool


# ──────────────── Generic ────────────────

class HealthResponse(BaseModel):
    status: str
    database: str
    version: str
    uptime_seconds: float


class ErrorResponse(BaseModel):
    success: bool = False
    error_code: str
    message: str
    payment_status: Optional[str] = None
    retryable: bool = False

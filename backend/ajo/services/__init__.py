from ajo.services.paystack_client import PaystackClient, GatewayVerification, VerificationStatus
from ajo.services.token_guard import TokenGuard, TokenStatus, Principal
from ajo.services.activation_service import ActivationService, ActivationResult, ActivationOutcome, RejectionReason
from ajo.services.webhook_service import WebhookService

__all__ = [
    "PaystackClient", "GatewayVerification", "VerificationStatus",
    "TokenGuard", "TokenStatus", "Principal",
    "ActivationService", "ActivationResult", "ActivationOutcome", "RejectionReason",
    "WebhookService",
]

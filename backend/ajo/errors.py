"""
Error Taxonomy: Exceptions rendered by the API's single AjoError handler.

Business rejections (group full, slot taken, declined payment) are not
exceptions; the activation service returns them as results.
"""
from typing import Optional


class AjoError(Exception):
    """Base class. Subclasses set the HTTP status and a stable error code."""

    status_code: int = 400
    code: str = "ajo_error"
    payment_status: Optional[str] = None
    retryable: bool = False

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        body = {
            "success": False,
            "error_code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.payment_status:
            body["payment_status"] = self.payment_status
        return body


# ─── Authentication ─────────────────────────────────────────────────

class AuthenticationError(AjoError):
    """The bearer token could not be accepted. Never a payment failure."""

    status_code = 401
    code = "token_invalid"
    payment_status = "unauthorized"

    def __init__(self, message: str, token_status: str = "invalid"):
        super().__init__(message, code=f"token_{token_status}")
        self.token_status = token_status
        # Only an expired token is worth one silent refresh.
        self.retryable = token_status == "expired"


class PermissionDeniedError(AjoError):
    status_code = 403
    code = "forbidden"


# ─── Lookup / request errors ────────────────────────────────────────

class NotFoundError(AjoError):
    status_code = 404
    code = "not_found"


class UnknownReferenceError(NotFoundError):
    code = "unknown_reference"


class GroupNotFoundError(NotFoundError):
    code = "group_not_found"


class ConflictError(AjoError):
    status_code = 409
    code = "conflict"


class DuplicateReferenceError(ConflictError):
    code = "duplicate_reference"


class InvalidRequestError(AjoError):
    status_code = 422
    code = "invalid_request"


# ─── Verification ───────────────────────────────────────────────────

class VerificationPendingError(AjoError):
    """Gateway has not confirmed the payment yet, or could not be reached."""

    status_code = 202
    code = "verification_pending"
    payment_status = "pending"
    retryable = True

    def __init__(self, message: str, verification_status: str = "pending"):
        super().__init__(message)
        self.verification_status = verification_status


class ActivationConflictError(AjoError):
    """Activation kept losing races and gave up; safe to retry."""

    status_code = 503
    code = "activation_conflict"
    payment_status = "pending"
    retryable = True


# ─── Webhooks ───────────────────────────────────────────────────────

class WebhookSignatureError(AjoError):
    status_code = 401
    code = "invalid_signature"


class WebhookPayloadError(AjoError):
    status_code = 400
    code = "invalid_payload"

"""
Paystack Client: Server-side transaction verification.

The only source of truth for whether a payment happened. Client callbacks,
webhook bodies and locally stored statuses are never a substitute for a
call to ``GET /transaction/verify/:reference``.
"""
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from typing import Callable, Optional
from urllib.parse import quote

import httpx
import structlog

from ajo.config import get_settings

logger = structlog.get_logger(__name__)

# Paystack transaction statuses that may still turn into a success.
_IN_FLIGHT_STATUSES = {"abandoned", "ongoing", "pending", "processing", "queued"}
_DECLINED_STATUSES = {"failed", "reversed"}


class VerificationStatus(str, Enum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    DECLINED = "declined"
    NOT_FOUND = "not_found"
    GATEWAY_ERROR = "gateway_error"


@dataclass(frozen=True)
class GatewayVerification:
    """Outcome of one verification call. Card details are deliberately absent."""

    reference: str
    status: VerificationStatus
    amount: Optional[int] = None
    currency: Optional[str] = None
    channel: Optional[str] = None
    paid_at: Optional[datetime] = None
    gateway_response: Optional[str] = None
    fees: int = 0
    email: Optional[str] = None
    customer_code: Optional[str] = None
    authorization_code: Optional[str] = None
    message: str = ""

    @property
    def confirmed(self) -> bool:
        return self.status == VerificationStatus.CONFIRMED


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class PaystackClient:
    """Verification client with a bounded retry budget for transient failures."""

    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        timeout: float = 30.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Content-Type": "application/json",
            },
        )

    def close(self) -> None:
        self._client.close()

    def verify(self, reference: str) -> GatewayVerification:
        """Ask the gateway for the authoritative status of a transaction."""
        path = f"/transaction/verify/{quote(reference, safe='')}"
        last_error = "no attempt made"

        for attempt in range(1, self.max_attempts + 1):
            try:
                response = self._client.get(path)
            except httpx.TimeoutException:
                last_error = "gateway timed out"
                logger.warning("paystack.verify.timeout", reference=reference, attempt=attempt)
            except httpx.TransportError as exc:
                last_error = f"transport error: {exc.__class__.__name__}"
                logger.warning("paystack.verify.transport_error", reference=reference, attempt=attempt, error=str(exc))
            else:
                if response.status_code == 429 or response.status_code >= 500:
                    last_error = f"gateway returned HTTP {response.status_code}"
                    logger.warning(
                        "paystack.verify.retryable_status",
                        reference=reference, attempt=attempt, status_code=response.status_code,
                    )
                else:
                    return self._interpret(reference, response)

            if attempt < self.max_attempts:
                self._sleep(self.backoff_seconds * (2 ** (attempt - 1)))

        logger.error("paystack.verify.exhausted", reference=reference, attempts=self.max_attempts, error=last_error)
        return GatewayVerification(
            reference=reference,
            status=VerificationStatus.GATEWAY_ERROR,
            message=f"Payment gateway unavailable after {self.max_attempts} attempts ({last_error})",
        )

    def _interpret(self, reference: str, response: httpx.Response) -> GatewayVerification:
        try:
            body = response.json()
        except ValueError:
            body = {}
        message = body.get("message") or ""

        if response.status_code == 404 or (
            response.status_code == 400 and "not found" in message.lower()
        ):
            return GatewayVerification(reference, VerificationStatus.NOT_FOUND, message=message or "Transaction not found")

        if response.status_code != 200:
            logger.error("paystack.verify.rejected", reference=reference, status_code=response.status_code, message=message)
            return GatewayVerification(
                reference, VerificationStatus.GATEWAY_ERROR,
                message=message or f"Gateway returned HTTP {response.status_code}",
            )

        data = body.get("data")
        if not body.get("status") or not isinstance(data, dict):
            return GatewayVerification(
                reference, VerificationStatus.GATEWAY_ERROR, message=message or "Invalid response from payment gateway",
            )

        if data.get("reference") != reference:
            logger.error("paystack.verify.reference_mismatch", reference=reference, returned=data.get("reference"))
            return GatewayVerification(
                reference, VerificationStatus.GATEWAY_ERROR, message="Gateway returned a different reference",
            )

        gateway_status = str(data.get("status", "")).lower()
        if gateway_status == "success":
            status = VerificationStatus.CONFIRMED
        elif gateway_status in _DECLINED_STATUSES:
            status = VerificationStatus.DECLINED
        elif gateway_status in _IN_FLIGHT_STATUSES:
            status = VerificationStatus.PENDING
        else:
            logger.warning("paystack.verify.unknown_status", reference=reference, gateway_status=gateway_status)
            status = VerificationStatus.PENDING

        customer = data.get("customer") or {}
        authorization = data.get("authorization") or {}
        return GatewayVerification(
            reference=reference,
            status=status,
            amount=data.get("amount"),
            currency=data.get("currency"),
            channel=data.get("channel"),
            paid_at=_parse_timestamp(data.get("paid_at") or data.get("paidAt")),
            gateway_response=data.get("gateway_response"),
            fees=data.get("fees") or 0,
            email=customer.get("email"),
            customer_code=customer.get("customer_code"),
            authorization_code=authorization.get("authorization_code"),
            message=message,
        )


@lru_cache()
def get_gateway() -> PaystackClient:
    """FastAPI dependency: process-wide Paystack client built from settings."""
    settings = get_settings()
    return PaystackClient(
        secret_key=settings.PAYSTACK_SECRET_KEY,
        base_url=settings.PAYSTACK_BASE_URL,
        timeout=settings.PAYSTACK_TIMEOUT_SECONDS,
        max_attempts=settings.PAYSTACK_MAX_ATTEMPTS,
        backoff_seconds=settings.PAYSTACK_BACKOFF_SECONDS,
    )

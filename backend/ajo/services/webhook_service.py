"""
Webhook Service: Authenticates and processes Paystack event deliveries.

receive() runs inside the request: signature check against the raw bytes,
parse, record the delivery. process() runs after the 200 has gone out and
hands the reference to the activation service. Redeliveries of the same
reference are harmless because activation is idempotent.
"""
import json
from datetime import datetime
from typing import Optional

import structlog
from fastapi import Depends

from ajo.config import get_settings
from ajo.database import ServiceContext, get_service_context
from ajo.errors import AjoError, WebhookPayloadError, WebhookSignatureError
from ajo.models.webhook import WebhookEvent, WebhookState
from ajo.services.activation_service import ActivationService, get_activation_service
from ajo.utils.hashing import payload_digest, verify_signature

logger = structlog.get_logger(__name__)

CHARGE_SUCCESS = "charge.success"
CHARGE_FAILED = "charge.failed"


class WebhookService:
    def __init__(self, context: ServiceContext, activation: ActivationService, secret: str):
        self.context = context
        self.activation = activation
        self.secret = secret

    def receive(self, raw_body: bytes, signature: Optional[str]) -> WebhookEvent:
        """Validate and record a delivery. Nothing is written unless the signature matches."""
        digest = payload_digest(raw_body)

        if not verify_signature(self.secret, raw_body, signature):
            logger.warning(
                "webhook.rejected",
                state=WebhookState.SIGNATURE_INVALID.value,
                signature_present=bool(signature),
                payload_digest=digest,
            )
            raise WebhookSignatureError("Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
        except ValueError:
            raise WebhookPayloadError("Webhook body is not valid JSON")
        if not isinstance(payload, dict) or not isinstance(payload.get("event"), str):
            raise WebhookPayloadError("Webhook body has no event type")

        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        reference = data.get("reference") if isinstance(data.get("reference"), str) else None

        with self.context.transaction() as db:
            event = WebhookEvent(
                event_type=payload["event"][:64],
                reference=reference,
                payload_digest=digest,
                state=WebhookState.SIGNATURE_VALID.value,
            )
            db.add(event)
            db.flush()
            db.refresh(event)
            db.expunge(event)

        logger.info("webhook.received", event_id=event.id, event_type=event.event_type, reference=reference)
        return event

    def process(self, event_id: int) -> str:
        """Dispatch a recorded delivery. Failures are stored, never raised."""
        with self.context.session() as db:
            event = db.query(WebhookEvent).filter(WebhookEvent.id == event_id).first()
            if event is None:
                logger.error("webhook.event_missing", event_id=event_id)
                return WebhookState.PROCESS_FAILED.value
            event_type, reference = event.event_type, event.reference

        log = logger.bind(event_id=event_id, event_type=event_type, reference=reference)
        outcome = None
        error = None

        if event_type not in (CHARGE_SUCCESS, CHARGE_FAILED):
            state = WebhookState.IGNORED
        elif not reference:
            state, error = WebhookState.PROCESS_FAILED, "event carries no reference"
        else:
            try:
                if event_type == CHARGE_SUCCESS:
                    result = self.activation.activate(reference)
                else:
                    result = self.activation.record_failure(reference)
                outcome = result.outcome.value if result else "unchanged"
                state = WebhookState.PROCESSED
            except AjoError as exc:
                # Left for the next delivery of this reference.
                state, error = WebhookState.PROCESS_FAILED, f"{exc.code}: {exc.message}"
            except Exception as exc:
                log.exception("webhook.process_crashed")
                state, error = WebhookState.PROCESS_FAILED, f"{exc.__class__.__name__}: {exc}"

        with self.context.transaction() as db:
            db.query(WebhookEvent).filter(WebhookEvent.id == event_id).update(
                {
                    WebhookEvent.state: state.value,
                    WebhookEvent.outcome: outcome,
                    WebhookEvent.error: error,
                    WebhookEvent.processed_at: datetime.utcnow(),
                },
                synchronize_session=False,
            )

        if state == WebhookState.PROCESS_FAILED:
            log.warning("webhook.process_failed", error=error)
        else:
            log.info("webhook.processed", state=state.value, outcome=outcome)
        return state.value


def get_webhook_service(
    context: ServiceContext = Depends(get_service_context),
    activation: ActivationService = Depends(get_activation_service),
) -> WebhookService:
    return WebhookService(context, activation, secret=get_settings().PAYSTACK_SECRET_KEY)

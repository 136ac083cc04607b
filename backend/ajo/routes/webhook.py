"""
Webhook Routes: Server-to-server notifications from Paystack.
"""
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from starlette.concurrency import run_in_threadpool

from ajo.schemas.schemas import ErrorResponse, WebhookAck
from ajo.services.webhook_service import WebhookService, get_webhook_service

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])


@router.post(
    "/paystack",
    response_model=WebhookAck,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
)
async def paystack_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    service: WebhookService = Depends(get_webhook_service),
):
    """Acknowledge an authentic delivery at once; apply it after responding."""
    # Signature is over these exact bytes; do not parse first.
    raw_body = await request.body()
    signature = request.headers.get("x-paystack-signature")

    event = await run_in_threadpool(service.receive, raw_body, signature)
    background_tasks.add_task(service.process, event.id)

    return WebhookAck(status="received", event_id=event.id)

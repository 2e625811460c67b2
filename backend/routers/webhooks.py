"""
Webhook router

Replicate calls POST /api/webhooks/replicate when a prediction completes.
The raw body is handed to the WebhookReceiver untouched so the HMAC is
computed over exactly the bytes that were signed.
"""

import structlog
from fastapi import APIRouter, Depends, Request

from config import settings
from dependencies import get_webhook_receiver
from schemas import ErrorResponse, WebhookAck
from workers.webhook_receiver import WebhookReceiver

logger = structlog.get_logger()

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])


@router.post(
    "/replicate",
    response_model=WebhookAck,
    status_code=200,
    responses={
        200: {"description": "Delivery acknowledged (applied, ignored or pending)"},
        401: {"model": ErrorResponse, "description": "Missing or invalid signature"},
        422: {"model": ErrorResponse, "description": "Body is not a prediction payload"}
    },
    summary="Replicate Prediction Webhook",
    description="Signed completion notification for a scene prediction"
)
async def replicate_webhook(
    request: Request,
    receiver: WebhookReceiver = Depends(get_webhook_receiver)
):
    body = await request.body()
    signature = request.headers.get(settings.WEBHOOK_SIGNATURE_HEADER)
    logger.debug("webhook_received", size=len(body), signed=signature is not None)
    return await receiver.handle(body, signature)

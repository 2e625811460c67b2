"""
Webhook receiver: the push completion path.

Verifies the `sha256=<hex>` HMAC of the raw body before anything else and
fails closed: no secret configured, no header, a malformed header or a wrong
digest all raise SignatureVerificationError without touching any job.
Verified terminal updates go through the same sequencer entry point as the
status poller.
"""

import hashlib
import hmac
from typing import Optional

import structlog
from pydantic import ValidationError

from config import settings
from pipeline.error_handler import ErrorCode, PipelineError, SignatureVerificationError
from schemas import WebhookAck, WebhookPayload
from workers.scene_sequencer import UpdateOutcome

logger = structlog.get_logger()

SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, body: bytes) -> str:
    """`sha256=<hex>` HMAC-SHA256 of the raw body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """
    Raises:
        SignatureVerificationError: Unless `signature` is the HMAC of `body`
    """
    if not secret:
        raise SignatureVerificationError("Webhook secret is not configured")
    if not signature:
        raise SignatureVerificationError("Missing webhook signature header")

    signature = signature.strip()
    if not signature.startswith(SIGNATURE_PREFIX):
        raise SignatureVerificationError("Malformed webhook signature")

    provided = signature[len(SIGNATURE_PREFIX):].lower()
    if len(provided) != hashlib.sha256().digest_size * 2:
        raise SignatureVerificationError("Malformed webhook signature")

    expected = compute_signature(secret, body)[len(SIGNATURE_PREFIX):]
    if not hmac.compare_digest(expected, provided):
        raise SignatureVerificationError("Webhook signature mismatch")


class WebhookReceiver:
    """
    Handles one Replicate webhook delivery.

    Args:
        sequencer: SceneSequencer
        secret: Shared HMAC secret (defaults to REPLICATE_WEBHOOK_SECRET)
    """

    def __init__(self, sequencer, secret: Optional[str] = None):
        self.sequencer = sequencer
        self.secret = secret if secret is not None else settings.REPLICATE_WEBHOOK_SECRET
        self.logger = logger.bind(service="webhook_receiver")

    async def handle(self, body: bytes, signature: Optional[str]) -> WebhookAck:
        """
        Verify, parse and apply a webhook delivery.

        Raises:
            SignatureVerificationError: On any signature problem (no state change)
            PipelineError: INVALID_WEBHOOK_PAYLOAD if the body is not a prediction
        """
        try:
            verify_signature(body, signature, self.secret)
        except SignatureVerificationError as e:
            self.logger.warning("webhook_signature_rejected", reason=e.message)
            raise

        try:
            payload = WebhookPayload.model_validate_json(body)
        except ValidationError as e:
            self.logger.warning("webhook_payload_invalid", errors=e.error_count())
            raise PipelineError(
                ErrorCode.INVALID_WEBHOOK_PAYLOAD,
                "Webhook body is not a valid prediction payload",
                {"error_count": e.error_count()}
            ) from e

        if payload.status in ("starting", "processing"):
            self.logger.debug("webhook_non_terminal", prediction_id=payload.id, status=payload.status)
            return WebhookAck(outcome=UpdateOutcome.PENDING, prediction_id=payload.id)

        outcome = await self.sequencer.apply_prediction_update(
            payload.id,
            payload.status,
            output=payload.output,
            error=payload.error_message,
        )

        self.logger.info("webhook_processed", prediction_id=payload.id, status=payload.status, outcome=outcome)
        return WebhookAck(outcome=outcome, prediction_id=payload.id)

"""
Replicate prediction gateway

Wraps the Replicate API behind the two operations the orchestrator needs:
submit a scene prompt and poll a prediction by handle.

Key Features:
- Singleton pattern for client reuse
- Retry logic with exponential backoff for transport failures
- Status and output normalization (pending / succeeded / failed)
- Webhook registration when a public webhook URL is configured
- Logging integration with structlog
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import replicate
import structlog
from replicate.exceptions import ReplicateError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
    before_sleep_log,
)

from config import settings
from pipeline.error_handler import ExternalServiceError


logger = structlog.get_logger(__name__)


class PredictionStatus:
    """Normalized prediction states"""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# Replicate status -> normalized status
STATUS_MAP = {
    "starting": PredictionStatus.PENDING,
    "processing": PredictionStatus.PENDING,
    "succeeded": PredictionStatus.SUCCEEDED,
    "failed": PredictionStatus.FAILED,
    "canceled": PredictionStatus.FAILED,
}

# Keys checked, in order, when a model returns a dict
OUTPUT_KEYS = ("video", "url", "output")


@dataclass(frozen=True)
class PredictionResult:
    id: str
    status: str
    output: Optional[str] = None
    error: Optional[str] = None
    raw_status: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != PredictionStatus.PENDING


def normalize_status(raw_status: Optional[str]) -> str:
    """Map a Replicate status to pending/succeeded/failed. Unknown states stay pending."""
    return STATUS_MAP.get((raw_status or "").lower(), PredictionStatus.PENDING)


def normalize_output(output: Any) -> Optional[str]:
    """
    Extract the video URL from a prediction output.

    Accepts a string, a list (first string wins), a dict with a
    video/url/output key, or a replicate FileOutput.
    """
    if output is None:
        return None
    if isinstance(output, str):
        return output or None
    if isinstance(output, (list, tuple)):
        for item in output:
            value = normalize_output(item)
            if value:
                return value
        return None
    if isinstance(output, dict):
        for key in OUTPUT_KEYS:
            value = normalize_output(output.get(key))
            if value:
                return value
        return None
    # FileOutput and similar objects render as their URL
    url = getattr(output, "url", None)
    return str(url) if url else str(output)


def normalize_duration(seconds: Optional[float]) -> int:
    """The video model only accepts 5 or 8 second clips."""
    return 8 if seconds and seconds > 5 else 5


def _is_transport_error(error: BaseException) -> bool:
    if isinstance(error, (httpx.NetworkError, httpx.TimeoutException)):
        return True
    if isinstance(error, ReplicateError):
        status = getattr(error, "status", None)
        return status is not None and (status == 429 or status >= 500)
    return False


def _external_error(action: str, error: Exception, handle: str = None) -> ExternalServiceError:
    message = str(error)
    status = getattr(error, "status", None)
    details = {"action": action}
    if handle:
        details["prediction_id"] = handle

    service_error = ExternalServiceError(
        f"Replicate {action} failed: {message}",
        status_code=status,
        details=details
    )
    if status == 402 or "Insufficient credit" in message:
        service_error._user_message = "Insufficient Replicate credits. Please add credits to continue."
    elif status == 429 or "throttled" in message:
        service_error._user_message = "Rate limit exceeded on the video generation service. Please try again later."
    return service_error


transport_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    retry=retry_if_exception(_is_transport_error),
    before_sleep=before_sleep_log(logging.getLogger(__name__), logging.INFO),
    reraise=True,
)


class ReplicateClient:
    """
    Prediction gateway over the Replicate API.

    Usage:
        client = ReplicateClient()
        handle = await client.submit("a lighthouse at dusk", {"duration": 5, "seed": 42})
        result = await client.poll(handle)
        if result.status == PredictionStatus.SUCCEEDED:
            print(result.output)
    """

    _instance = None

    def __new__(cls, api_token: str = None, max_retries: int = None, timeout: int = None, client=None):
        """Singleton pattern to reuse client instance."""
        if cls._instance is None:
            cls._instance = super(ReplicateClient, cls).__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(
        self,
        api_token: str = None,
        max_retries: int = None,
        timeout: int = None,
        client=None,
    ):
        """
        Initialize Replicate client.

        Args:
            api_token: Replicate API token. If None, loads from settings
            max_retries: Maximum number of retry attempts (default: 3)
            timeout: Timeout in seconds for predictions (default: 600)
            client: Pre-built replicate.Client (tests)
        """
        # Skip if already initialized (singleton pattern)
        if self._initialized:
            return

        self.api_token = api_token or settings.REPLICATE_API_TOKEN or settings.REPLICATE_API_KEY
        if not self.api_token and client is None:
            raise ValueError(
                "Replicate API token is required. Set REPLICATE_API_TOKEN "
                "environment variable or pass api_token parameter."
            )

        self.max_retries = max_retries or settings.REPLICATE_MAX_RETRIES
        self.timeout = timeout or settings.REPLICATE_TIMEOUT
        self.model = settings.REPLICATE_MODEL
        self.model_version = settings.REPLICATE_MODEL_VERSION

        self.logger = logger.bind(service="replicate_client")

        self.client = client or replicate.Client(api_token=self.api_token, timeout=self.timeout)

        self._initialized = True

        self.logger.info(
            "replicate_client_initialized",
            model=self.model,
            max_retries=self.max_retries,
            timeout=self.timeout,
        )

    def build_input(self, prompt: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Build the model input for one scene.

        Optional parameters are only sent when they carry a value.
        """
        params = params or {}
        input_params = {
            "prompt": prompt,
            "duration": normalize_duration(params.get("duration")),
        }
        if params.get("aspect_ratio"):
            input_params["aspect_ratio"] = params["aspect_ratio"]
        if params.get("negative_prompt"):
            input_params["negative_prompt"] = params["negative_prompt"]
        if params.get("seed") is not None:
            input_params["seed"] = params["seed"]
        return input_params

    def _webhook_kwargs(self) -> Dict[str, Any]:
        if not settings.WEBHOOK_URL:
            return {}
        return {
            "webhook": settings.WEBHOOK_URL,
            "webhook_events_filter": ["completed"],
        }

    @transport_retry
    def _create_prediction(self, model_id: str, input_params: dict):
        kwargs = self._webhook_kwargs()
        if self.model_version:
            return self.client.predictions.create(
                version=self.model_version,
                input=input_params,
                **kwargs,
            )
        return self.client.models.predictions.create(
            model=model_id,
            input=input_params,
            **kwargs,
        )

    @transport_retry
    def _get_prediction(self, handle: str):
        return self.client.predictions.get(handle)

    async def submit(self, prompt: str, params: Optional[Dict[str, Any]] = None) -> str:
        """
        Submit a scene prompt.

        Args:
            prompt: Scene prompt
            params: duration, aspect_ratio, negative_prompt, seed, model

        Returns:
            Prediction handle

        Raises:
            ExternalServiceError: If submission fails after transport retries
        """
        params = params or {}
        model_id = params.get("model") or self.model
        input_params = self.build_input(prompt, params)

        self.logger.info(
            "creating_prediction",
            model_id=model_id,
            input_params=input_params,
            webhook=bool(settings.WEBHOOK_URL),
        )

        try:
            prediction = await asyncio.to_thread(self._create_prediction, model_id, input_params)
        except Exception as e:
            self.logger.error("prediction_creation_failed", model_id=model_id, error=str(e))
            raise _external_error("submit", e) from e

        self.logger.info(
            "prediction_created",
            prediction_id=prediction.id,
            status=prediction.status,
        )
        return prediction.id

    async def poll(self, handle: str) -> PredictionResult:
        """
        Fetch the current state of a prediction.

        Raises:
            ExternalServiceError: If the poll fails after transport retries
        """
        try:
            prediction = await asyncio.to_thread(self._get_prediction, handle)
        except Exception as e:
            self.logger.error("prediction_poll_failed", prediction_id=handle, error=str(e))
            raise _external_error("poll", e, handle) from e

        result = PredictionResult(
            id=prediction.id or handle,
            status=normalize_status(prediction.status),
            output=normalize_output(prediction.output),
            error=str(prediction.error) if prediction.error else None,
            raw_status=prediction.status,
        )

        self.logger.debug(
            "prediction_polled",
            prediction_id=handle,
            status=result.status,
            raw_status=result.raw_status,
        )
        return result


# Convenience function for singleton access
def get_replicate_client() -> ReplicateClient:
    """
    Get the singleton ReplicateClient instance.

    Returns:
        ReplicateClient instance
    """
    return ReplicateClient()

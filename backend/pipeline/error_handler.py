"""
Error handling for the scene orchestration pipeline.

Provides structured error handling with:
- Categorized error codes for all failure scenarios
- User-friendly error messages
- Retry classification for the compositor
- Detailed error context for debugging
"""

import asyncio
from enum import Enum
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)


class ErrorCode(Enum):
    """
    Enumeration of all possible error codes in the pipeline.

    Organized by category:
    - Request Errors: rejected before any state is created or touched
    - Job Outcome Errors: terminal failures recorded on the job
    - Infrastructure Errors: transient failures retried inside the compositor
    """

    # Request errors (4xx)
    INVALID_SCENE_CONFIG = "INVALID_SCENE_CONFIG"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    INVALID_WEBHOOK_PAYLOAD = "INVALID_WEBHOOK_PAYLOAD"
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    JOB_ALREADY_FINISHED = "JOB_ALREADY_FINISHED"

    # Job outcome errors
    SCENE_GENERATION_FAILED = "SCENE_GENERATION_FAILED"
    COMPOSITING_FAILED = "COMPOSITING_FAILED"
    RENDER_FAILED = "RENDER_FAILED"
    JOB_CANCELLED = "JOB_CANCELLED"

    # External service errors (terminal for the job)
    REPLICATE_API_ERROR = "REPLICATE_API_ERROR"

    # Infrastructure errors (retryable inside the compositor)
    TRANSIENT_INFRA_ERROR = "TRANSIENT_INFRA_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"


HTTP_STATUS_BY_CODE = {
    ErrorCode.INVALID_SCENE_CONFIG: 422,
    ErrorCode.SIGNATURE_INVALID: 401,
    ErrorCode.INVALID_WEBHOOK_PAYLOAD: 422,
    ErrorCode.JOB_NOT_FOUND: 404,
    ErrorCode.JOB_ALREADY_FINISHED: 409,
    ErrorCode.REPLICATE_API_ERROR: 502,
}


class PipelineError(Exception):
    """
    Base exception for pipeline errors.

    Provides structured error information including:
    - Error code for categorization
    - Detailed message for logging
    - Context dictionary for debugging
    - User-friendly message for API responses and the job's error field

    Example:
        >>> raise PipelineError(
        ...     ErrorCode.INVALID_SCENE_CONFIG,
        ...     "trim_end must be greater than trim_start",
        ...     {"scene_order": 2}
        ... )
    """

    code = ErrorCode.TRANSIENT_INFRA_ERROR

    def __init__(
        self,
        code: Optional[ErrorCode] = None,
        message: str = "",
        details: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None
    ):
        """
        Initialize pipeline error.

        Args:
            code: Error code from ErrorCode enum (defaults to the class code)
            message: Detailed error message for logging
            details: Additional context (field names, values, etc.)
            user_message: Optional override for user-friendly message
        """
        if code is not None:
            self.code = code
        self.message = message
        self.details = details or {}
        self._user_message = user_message
        super().__init__(self.message)

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_CODE.get(self.code, 500)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert error to dictionary for API responses.

        Returns:
            Dictionary with error information
        """
        return {
            "error_code": self.code.value,
            "message": self.message,
            "details": self.details,
            "user_message": self.get_user_friendly_message()
        }

    def get_user_friendly_message(self) -> str:
        """
        Returns user-friendly error message.

        If a custom user message was provided, returns that.
        Otherwise, returns a predefined friendly message based on error code.
        """
        if self._user_message:
            return self._user_message

        friendly_messages = {
            ErrorCode.INVALID_SCENE_CONFIG: "Scene settings are invalid. Check trim points and transitions.",
            ErrorCode.SIGNATURE_INVALID: "Webhook signature could not be verified.",
            ErrorCode.INVALID_WEBHOOK_PAYLOAD: "Webhook payload is malformed.",
            ErrorCode.JOB_NOT_FOUND: "Job not found. It may have expired.",
            ErrorCode.JOB_ALREADY_FINISHED: "Job has already finished.",
            ErrorCode.SCENE_GENERATION_FAILED: "Failed to generate a scene. Please try again.",
            ErrorCode.COMPOSITING_FAILED: "Failed to compose the final video. Please try again or contact support.",
            ErrorCode.RENDER_FAILED: "The scene videos could not be rendered into the final video.",
            ErrorCode.JOB_CANCELLED: "Job was cancelled.",
            ErrorCode.REPLICATE_API_ERROR: "Video generation service temporarily unavailable. Please try again.",
            ErrorCode.TRANSIENT_INFRA_ERROR: "System temporarily unavailable. Please try again.",
            ErrorCode.STORAGE_ERROR: "Storage error occurred. Please try again or contact support.",
        }

        return friendly_messages.get(
            self.code,
            "An error occurred. Please try again or contact support."
        )

    def log_error(self) -> None:
        """
        Log error with appropriate level and context.

        Request errors and retryable errors are warnings, everything else is
        an error.
        """
        log_data = {
            "error_code": self.code.value,
            "message": self.message,
            "details": self.details
        }

        if self.http_status < 500 or is_retryable_error(self):
            logger.warning(f"Pipeline warning: {log_data}")
        else:
            logger.error(f"Pipeline error: {log_data}")

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class TransientInfraError(PipelineError):
    """Network, timeout or resource-busy failure. Retryable inside the compositor only."""

    code = ErrorCode.TRANSIENT_INFRA_ERROR

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(ErrorCode.TRANSIENT_INFRA_ERROR, message, details)


class InvalidSceneConfigError(PipelineError):
    """Trim/transition constraint violation. Rejected at job creation."""

    code = ErrorCode.INVALID_SCENE_CONFIG

    def __init__(self, message: str, scene_order: Optional[int] = None, field: Optional[str] = None):
        details = {}
        if scene_order is not None:
            details["scene_order"] = scene_order
        if field:
            details["field"] = field
        super().__init__(ErrorCode.INVALID_SCENE_CONFIG, message, details)


class ExternalServiceError(PipelineError):
    """Prediction submission or poll failure. Terminal for the job."""

    code = ErrorCode.REPLICATE_API_ERROR

    def __init__(
        self,
        message: str,
        service: str = "replicate",
        status_code: Optional[int] = None,
        details: Optional[Dict] = None
    ):
        error_details = details or {}
        error_details["service"] = service
        if status_code:
            error_details["status_code"] = status_code
        super().__init__(ErrorCode.REPLICATE_API_ERROR, message, error_details)


class SignatureVerificationError(PipelineError):
    """Webhook signature missing or wrong. Never mutates state."""

    code = ErrorCode.SIGNATURE_INVALID

    def __init__(self, message: str):
        super().__init__(ErrorCode.SIGNATURE_INVALID, message)


class SceneGenerationFailed(PipelineError):
    """A scene prediction failed. Terminal, not retried by the orchestrator."""

    code = ErrorCode.SCENE_GENERATION_FAILED

    def __init__(self, reason: str, scene_order: Optional[int] = None):
        self.reason = reason
        details = {"scene_order": scene_order} if scene_order is not None else {}
        super().__init__(
            ErrorCode.SCENE_GENERATION_FAILED,
            reason,
            details,
            user_message=_scene_failure_message(reason, scene_order)
        )


class CompositingFailed(PipelineError):
    """The compositor failed fatally or exhausted its retries. Terminal."""

    code = ErrorCode.COMPOSITING_FAILED

    def __init__(self, reason: str, attempts: Optional[int] = None):
        self.reason = reason
        details = {"attempts": attempts} if attempts is not None else {}
        super().__init__(
            ErrorCode.COMPOSITING_FAILED,
            reason,
            details,
            user_message=f"Failed to compose the final video: {reason}"
        )


class RenderError(PipelineError):
    """A plan could not be rendered (unreadable source, short clip, empty plan). Not retried."""

    code = ErrorCode.RENDER_FAILED

    def __init__(self, message: str, scene_order: Optional[int] = None):
        details = {"scene_order": scene_order} if scene_order is not None else {}
        super().__init__(ErrorCode.RENDER_FAILED, message, details)


class JobNotFoundError(PipelineError):
    code = ErrorCode.JOB_NOT_FOUND

    def __init__(self, job_id: str):
        super().__init__(
            ErrorCode.JOB_NOT_FOUND,
            f"Job with ID '{job_id}' not found",
            {"job_id": job_id}
        )


def _scene_failure_message(reason: str, scene_order: Optional[int]) -> str:
    if scene_order is None:
        return f"Scene generation failed: {reason}"
    return f"Scene {scene_order + 1} failed to generate: {reason}"


# Substrings of error messages that indicate a transient condition
RETRYABLE_MESSAGE_MARKERS = (
    # Network-related errors
    "network",
    "fetch",
    "timeout",
    "timed out",
    "cors",
    "connection",
    # Temporary encoder/resource errors
    "out of memory",
    "resource temporarily unavailable",
    "busy",
)


def _transport_error_types() -> tuple:
    """Exception types of the transport libraries we talk through."""
    types = [asyncio.TimeoutError, TimeoutError, ConnectionError]

    import aiohttp
    import httpx
    from botocore.exceptions import ConnectionError as BotoConnectionError
    from botocore.exceptions import ReadTimeoutError

    types.extend([
        aiohttp.ClientConnectionError,
        aiohttp.ServerTimeoutError,
        httpx.NetworkError,
        httpx.TimeoutException,
        BotoConnectionError,
        ReadTimeoutError,
    ])
    return tuple(types)


def is_retryable_error(error: BaseException) -> bool:
    """
    Determines if an error is transient and worth retrying.

    Transient errors include:
    - TransientInfraError
    - Transport exceptions (aiohttp, httpx, botocore, timeouts)
    - Any error whose message mentions network, timeout, CORS, connection,
      out-of-memory, resource-unavailable or busy conditions

    Args:
        error: Exception to check

    Returns:
        True if error is transient and should be retried, False otherwise

    Example:
        >>> is_retryable_error(TransientInfraError("S3 busy"))
        True
        >>> is_retryable_error(InvalidSceneConfigError("bad trim"))
        False
    """
    if isinstance(error, PipelineError):
        return error.code == ErrorCode.TRANSIENT_INFRA_ERROR

    if isinstance(error, _transport_error_types()):
        return True

    message = str(error).lower()
    return any(marker in message for marker in RETRYABLE_MESSAGE_MARKERS)


def get_retry_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    multiplier: float = 2.0
) -> float:
    """
    Calculate exponential backoff delay for retry attempts.

    Uses formula: min(base_delay * (multiplier ** attempt), max_delay)

    Args:
        attempt: Current retry number (0-indexed)
        base_delay: Base delay in seconds (default: 1.0)
        max_delay: Maximum delay in seconds (default: 10.0)
        multiplier: Backoff multiplier (default: 2.0)

    Returns:
        Delay in seconds for this attempt

    Example:
        >>> [get_retry_delay(i) for i in range(5)]
        [1.0, 2.0, 4.0, 8.0, 10.0]
    """
    delay = base_delay * (multiplier ** attempt)
    return min(delay, max_delay)

"""
Retry controller for the compositor.

Wraps an async operation with exponential backoff (1s, 2s, 4s ... capped at
max_delay). Failures are classified by a pluggable predicate; fatal errors and
the last error after the budget is spent propagate unchanged.

The retry loop is tenacity's AsyncRetrying, the same library the Replicate
client uses for its transport retries.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from config import settings
from pipeline.error_handler import get_retry_delay, is_retryable_error

logger = logging.getLogger(__name__)

# on_retry(attempt_number, error) is called right before attempt 2, 3, ...
RetryCallback = Callable[[int, BaseException], Any]


@dataclass(frozen=True)
class RetryOptions:
    """Backoff policy. Defaults give delays of exactly 1s, 2s and 4s."""

    max_retries: int = 3
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 10.0

    @classmethod
    def from_settings(cls) -> "RetryOptions":
        return cls(
            max_retries=settings.COMPOSITOR_MAX_RETRIES,
            initial_delay=settings.COMPOSITOR_INITIAL_DELAY,
            max_delay=settings.COMPOSITOR_MAX_DELAY,
        )

    def delays(self) -> list:
        """Delays slept between attempts when every attempt fails."""
        return [
            get_retry_delay(i, self.initial_delay, self.max_delay, self.backoff_multiplier)
            for i in range(self.max_retries)
        ]


class RetryController:
    """
    Runs an async operation under a RetryOptions policy.

    Args:
        options: Backoff policy (defaults from settings)
        is_retryable: Predicate classifying an exception as transient
        sleep: Awaitable sleep used between attempts (injectable for tests)

    Example:
        controller = RetryController()
        url = await controller.run(
            lambda: compositor.compose(job_id, scenes),
            on_retry=lambda attempt, error: reset_progress(job_id),
        )
    """

    def __init__(
        self,
        options: Optional[RetryOptions] = None,
        is_retryable: Callable[[BaseException], bool] = is_retryable_error,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.options = options or RetryOptions.from_settings()
        self.is_retryable = is_retryable
        self.sleep = sleep

    def _retrying(self, options: RetryOptions) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(options.max_retries + 1),
            wait=wait_exponential(
                multiplier=options.initial_delay,
                exp_base=options.backoff_multiplier,
                max=options.max_delay,
            ),
            retry=retry_if_exception(self.is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self.sleep,
            reraise=True,
        )

    async def run(
        self,
        operation: Callable[[], Awaitable[Any]],
        on_retry: Optional[RetryCallback] = None,
        options: Optional[RetryOptions] = None,
    ) -> Any:
        """
        Run `operation` until it succeeds, fails fatally or the budget is spent.

        Args:
            operation: Zero-argument coroutine factory; called once per attempt
            on_retry: Called before every retry (sync or async), typically to
                reset progress to 0
            options: Per-call override of the controller's policy

        Returns:
            Whatever `operation` returns on its successful attempt

        Raises:
            The operation's own exception, unchanged
        """
        options = options or self.options
        result = None
        last_error = None

        async for attempt in self._retrying(options):
            attempt_number = attempt.retry_state.attempt_number
            if attempt_number > 1 and on_retry is not None:
                callback_result = on_retry(attempt_number, last_error)
                if inspect.isawaitable(callback_result):
                    await callback_result

            with attempt:
                try:
                    result = await operation()
                except Exception as e:
                    last_error = e
                    raise

        return result

"""
Tests for RetryController

Tests cover:
- Backoff delays (1s, 2s, 4s, capped)
- Progress reset before each retry
- Fatal errors propagate without retry
- Exhausted retries propagate the last error unchanged
"""

from unittest.mock import AsyncMock, Mock

import pytest

from pipeline.error_handler import InvalidSceneConfigError, TransientInfraError
from pipeline.retry import RetryController, RetryOptions


def flaky(failures, result="ok"):
    """Coroutine factory raising the given exceptions in turn, then returning result"""
    errors = list(failures)
    calls = {"count": 0}

    async def operation():
        calls["count"] += 1
        if errors:
            raise errors.pop(0)
        return result

    return operation, calls


class TestRetryOptions:

    def test_default_delays(self):
        assert RetryOptions().delays() == [1.0, 2.0, 4.0]

    def test_delays_are_capped(self):
        options = RetryOptions(max_retries=6, initial_delay=1.0, max_delay=10.0)
        assert options.delays() == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


class TestRetryController:

    @pytest.mark.asyncio
    async def test_success_first_try(self):
        sleep = AsyncMock()
        operation, calls = flaky([])

        result = await RetryController(RetryOptions(), sleep=sleep).run(operation)

        assert result == "ok"
        assert calls["count"] == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_backoff_delays_between_attempts(self):
        sleep = AsyncMock()
        operation, calls = flaky([TransientInfraError("busy")] * 3, result="url")

        result = await RetryController(RetryOptions(), sleep=sleep).run(operation)

        assert result == "url"
        assert calls["count"] == 4
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_last_error(self):
        sleep = AsyncMock()
        last = TransientInfraError("still busy")
        operation, calls = flaky([TransientInfraError("busy")] * 3 + [last])

        with pytest.raises(TransientInfraError) as exc_info:
            await RetryController(RetryOptions(), sleep=sleep).run(operation)

        assert exc_info.value is last
        assert calls["count"] == 4
        assert sleep.await_count == 3

    @pytest.mark.asyncio
    async def test_fatal_error_is_not_retried(self):
        sleep = AsyncMock()
        on_retry = Mock()
        fatal = InvalidSceneConfigError("transition longer than scene")
        operation, calls = flaky([fatal])

        with pytest.raises(InvalidSceneConfigError) as exc_info:
            await RetryController(RetryOptions(), sleep=sleep).run(operation, on_retry=on_retry)

        assert exc_info.value is fatal
        assert calls["count"] == 1
        sleep.assert_not_awaited()
        on_retry.assert_not_called()

    @pytest.mark.asyncio
    async def test_on_retry_called_before_each_retry(self):
        first = TransientInfraError("busy")
        second = TimeoutError("upload timed out")
        operation, _ = flaky([first, second])
        on_retry = Mock()

        await RetryController(RetryOptions(), sleep=AsyncMock()).run(operation, on_retry=on_retry)

        assert on_retry.call_count == 2
        assert on_retry.call_args_list[0].args == (2, first)
        assert on_retry.call_args_list[1].args == (3, second)

    @pytest.mark.asyncio
    async def test_async_on_retry_is_awaited(self):
        operation, _ = flaky([TransientInfraError("busy")])
        on_retry = AsyncMock()

        await RetryController(RetryOptions(), sleep=AsyncMock()).run(operation, on_retry=on_retry)

        on_retry.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_custom_predicate(self):
        operation, calls = flaky([KeyError("flaky"), KeyError("flaky")])
        controller = RetryController(
            RetryOptions(),
            is_retryable=lambda e: isinstance(e, KeyError),
            sleep=AsyncMock(),
        )

        assert await controller.run(operation) == "ok"
        assert calls["count"] == 3

    @pytest.mark.asyncio
    async def test_per_call_options(self):
        sleep = AsyncMock()
        operation, calls = flaky([TransientInfraError("busy")] * 2)
        controller = RetryController(RetryOptions(), sleep=sleep)

        with pytest.raises(TransientInfraError):
            await controller.run(operation, options=RetryOptions(max_retries=1, initial_delay=0.5))

        assert calls["count"] == 2
        assert [c.args[0] for c in sleep.await_args_list] == [0.5]

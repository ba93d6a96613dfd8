"""
Unit tests for retry.py - bounded backoff for calls and stream connections.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import stream_of
from gemini_chat_core.errors import GeminiRateLimitError, GeminiValidationError
from gemini_chat_core.retry import (
    RetryPolicy,
    compute_delay,
    make_retry_wrapper,
    with_retry,
    with_retry_stream,
)


def _delays(sleep: AsyncMock) -> list[float]:
    return [call.args[0] for call in sleep.await_args_list]


class TestComputeDelay:
    """Exponential delay capped at the policy maximum."""

    def test_doubles_then_caps(self):
        policy = RetryPolicy(max_retries=6, base_delay_ms=200, max_delay_ms=2000)
        delays = [compute_delay(policy, attempt) for attempt in range(6)]
        assert delays == [0.2, 0.4, 0.8, 1.6, 2.0, 2.0]

    def test_retry_after_hint_is_honored_up_to_cap(self):
        policy = RetryPolicy(base_delay_ms=200, max_delay_ms=2000)
        assert compute_delay(policy, 0, GeminiRateLimitError(retry_after_ms=1500)) == 1.5
        assert compute_delay(policy, 0, GeminiRateLimitError(retry_after_ms=60_000)) == 2.0

    def test_never_shorter_than_previous_delay(self):
        policy = RetryPolicy(base_delay_ms=200, max_delay_ms=2000)
        assert compute_delay(policy, 1, previous=1.5) == 1.5
        assert compute_delay(policy, 3, previous=1.5) == 1.6

    def test_jitter_never_shortens(self):
        policy = RetryPolicy(base_delay_ms=1000, max_delay_ms=2000, jitter=True)
        for _ in range(20):
            assert 1.0 <= compute_delay(policy, 0) <= 1.1

    def test_rejects_negative_retries(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_retries=-1)


class TestWithRetry:
    """with_retry attempt counting and error propagation."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failures", [0, 1, 2])
    async def test_k_failures_then_success(self, no_sleep: AsyncMock, failures: int):
        operation = AsyncMock(side_effect=[ConnectionError("reset")] * failures + ["ok"])

        result = await with_retry(operation, max_retries=2, base_delay_ms=200)

        assert result == "ok"
        assert operation.await_count == failures + 1
        delays = _delays(no_sleep)
        assert len(delays) == failures
        assert delays == sorted(delays)

    @pytest.mark.asyncio
    async def test_retry_after_hint_does_not_shorten_later_delays(self, no_sleep: AsyncMock):
        operation = AsyncMock(
            side_effect=[GeminiRateLimitError(retry_after_ms=1500), ConnectionError("reset"), "ok"]
        )

        assert await with_retry(operation, max_retries=2, base_delay_ms=200) == "ok"
        assert _delays(no_sleep) == [1.5, 1.5]

    @pytest.mark.asyncio
    async def test_stream_delays_do_not_shrink(self, no_sleep: AsyncMock):
        factory = AsyncMock(
            side_effect=[GeminiRateLimitError(retry_after_ms=1500), ConnectionError("refused"), stream_of("a")]
        )

        items = [item async for item in with_retry_stream(factory, max_retries=2, base_delay_ms=200)]

        assert items == ["a"]
        assert _delays(no_sleep) == [1.5, 1.5]

    @pytest.mark.asyncio
    async def test_exhaustion_raises_last_error(self, no_sleep: AsyncMock):
        errors = [ConnectionError("first"), ConnectionError("second"), ConnectionError("third")]
        operation = AsyncMock(side_effect=errors)

        with pytest.raises(ConnectionError, match="third"):
            await with_retry(operation, max_retries=2)

        assert operation.await_count == 3
        assert _delays(no_sleep) == [0.2, 0.4]

    @pytest.mark.asyncio
    async def test_non_retryable_is_not_retried(self, no_sleep: AsyncMock):
        operation = AsyncMock(side_effect=GeminiValidationError("bad request"))

        with pytest.raises(GeminiValidationError):
            await with_retry(operation, max_retries=5)

        assert operation.await_count == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_untyped_errors_use_heuristics(self, no_sleep: AsyncMock):
        operation = AsyncMock(side_effect=[RuntimeError("503 Service Unavailable"), "done"])
        assert await with_retry(operation) == "done"
        assert operation.await_count == 2

    @pytest.mark.asyncio
    async def test_custom_predicate(self, no_sleep: AsyncMock):
        operation = AsyncMock(side_effect=[ValueError("flaky"), 7])
        result = await with_retry(operation, should_retry=lambda e: isinstance(e, ValueError))
        assert result == 7

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, no_sleep: AsyncMock):
        operation = AsyncMock(side_effect=asyncio.CancelledError())
        with pytest.raises(asyncio.CancelledError):
            await with_retry(operation, max_retries=3)
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_wrapper_binds_policy(self, no_sleep: AsyncMock):
        retry = make_retry_wrapper(RetryPolicy(max_retries=1, base_delay_ms=50))
        operation = AsyncMock(side_effect=[TimeoutError(), TimeoutError()])
        with pytest.raises(TimeoutError):
            await retry(operation)
        assert operation.await_count == 2
        assert _delays(no_sleep) == [0.05]


class TestWithRetryStream:
    """Streams are retried only until the first item reaches the caller."""

    @pytest.mark.asyncio
    async def test_connection_failure_is_retried(self, no_sleep: AsyncMock):
        factory = AsyncMock(side_effect=[ConnectionError("refused"), stream_of("a", "b")])

        items = [item async for item in with_retry_stream(factory)]

        assert items == ["a", "b"]
        assert factory.await_count == 2

    @pytest.mark.asyncio
    async def test_failure_before_first_item_is_retried(self, no_sleep: AsyncMock):
        factory = AsyncMock(
            side_effect=[stream_of(ConnectionError("reset")), stream_of("a")]
        )
        items = [item async for item in with_retry_stream(factory)]
        assert items == ["a"]

    @pytest.mark.asyncio
    async def test_mid_stream_failure_is_not_retried(self, no_sleep: AsyncMock):
        factory = AsyncMock(
            side_effect=[stream_of("a", ConnectionError("reset")), stream_of("never")]
        )
        received = []

        with pytest.raises(ConnectionError):
            async for item in with_retry_stream(factory):
                received.append(item)

        assert received == ["a"]
        assert factory.await_count == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sync_factory(self, no_sleep: AsyncMock):
        items = [item async for item in with_retry_stream(lambda: stream_of(1, 2, 3))]
        assert items == [1, 2, 3]

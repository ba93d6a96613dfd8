"""
Async retry with exponential backoff.

Two flavours:
- ``with_retry`` for request/response calls
- ``with_retry_stream`` for streaming calls, which only retries until the
  first item has been handed to the caller. After that a retry would
  duplicate output, so errors propagate.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from gemini_chat_core.config import (
    DEFAULT_BASE_DELAY_MS,
    DEFAULT_MAX_RETRIES,
    LOGGER_NAME,
    MAX_RETRY_DELAY_MS,
)
from gemini_chat_core.errors import GeminiRateLimitError, is_retryable

logger = logging.getLogger(LOGGER_NAME)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded retry policy. Total attempts = max_retries + 1."""

    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS
    max_delay_ms: int = MAX_RETRY_DELAY_MS
    jitter: bool = False

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("RetryPolicy.max_retries must be >= 0")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("RetryPolicy delays must be >= 0")


def compute_delay(
    policy: RetryPolicy,
    attempt: int,
    error: BaseException | None = None,
    previous: float = 0.0,
) -> float:
    """Seconds to sleep after failed ``attempt`` (0-based).

    Never less than ``previous``: delays across one retry loop do not shrink.
    """
    delay_ms = min(policy.base_delay_ms * (2**attempt), policy.max_delay_ms)
    if isinstance(error, GeminiRateLimitError) and error.retry_after_ms:
        delay_ms = min(max(delay_ms, error.retry_after_ms), policy.max_delay_ms)
    if policy.jitter and delay_ms > 0:
        # Up to 10% extra, never less than the deterministic delay
        delay_ms += random.random() * delay_ms * 0.1  # noqa: S311
    return max(delay_ms / 1000, previous)


def _should_retry(
    error: BaseException,
    attempt: int,
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool],
) -> bool:
    if isinstance(error, asyncio.CancelledError):
        return False
    return attempt < policy.max_retries and should_retry(error)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
    policy: RetryPolicy | None = None,
    should_retry: Callable[[BaseException], bool] = is_retryable,
    label: str = "operation",
) -> T:
    """
    Run an async operation with bounded retries.

    Args:
        operation: Zero-argument callable returning an awaitable
        max_retries: Retries after the first attempt (ignored when policy is given)
        base_delay_ms: First backoff delay (ignored when policy is given)
        policy: Explicit retry policy
        should_retry: Predicate deciding whether an error is worth retrying
        label: Name used in log messages

    Returns:
        The operation's result

    Raises:
        The most recent error once retries are exhausted or the error is not retryable
    """
    policy = policy or RetryPolicy(max_retries=max_retries, base_delay_ms=base_delay_ms)

    attempt = 0
    delay = 0.0
    while True:
        try:
            return await operation()
        except Exception as e:
            if not _should_retry(e, attempt, policy, should_retry):
                raise
            delay = compute_delay(policy, attempt, e, previous=delay)
            logger.warning(
                "🔁 %s failed (attempt %d/%d), retrying in %.2fs: %s",
                label, attempt + 1, policy.max_retries + 1, delay, e,
            )
            await asyncio.sleep(delay)
            attempt += 1


async def with_retry_stream(
    factory: Callable[[], AsyncIterator[T] | Awaitable[AsyncIterator[T]]],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
    policy: RetryPolicy | None = None,
    should_retry: Callable[[BaseException], bool] = is_retryable,
    label: str = "stream",
) -> AsyncIterator[T]:
    """
    Open a stream with retries on the initial connection only.

    A failure before the first item is retried like ``with_retry``. Once an
    item has been yielded, errors propagate unchanged.
    """
    policy = policy or RetryPolicy(max_retries=max_retries, base_delay_ms=base_delay_ms)

    attempt = 0
    delay = 0.0
    while True:
        delivered = False
        try:
            stream = factory()
            if inspect.isawaitable(stream):
                stream = await stream
            async for item in stream:
                delivered = True
                yield item
            return
        except Exception as e:
            if delivered or not _should_retry(e, attempt, policy, should_retry):
                raise
            delay = compute_delay(policy, attempt, e, previous=delay)
            logger.warning(
                "🔁 %s connection failed (attempt %d/%d), retrying in %.2fs: %s",
                label, attempt + 1, policy.max_retries + 1, delay, e,
            )
            await asyncio.sleep(delay)
            attempt += 1


def make_retry_wrapper(
    policy: RetryPolicy | None = None,
    *,
    should_retry: Callable[[BaseException], bool] = is_retryable,
) -> Callable[..., Awaitable[Any]]:
    """Bind a policy once and reuse it: ``await retry(lambda: call())``."""
    bound = policy or RetryPolicy()

    async def retry(operation: Callable[[], Awaitable[T]], *, label: str = "operation") -> T:
        return await with_retry(operation, policy=bound, should_retry=should_retry, label=label)

    return retry

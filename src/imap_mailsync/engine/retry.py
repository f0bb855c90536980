"""Backoff, retry and per-operation timeout helpers."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from imap_mailsync.engine.cancel import CancellationToken
from imap_mailsync.gateway.base import TransientError
from imap_mailsync.models.sync import BackoffPolicy

T = TypeVar("T")


def backoff_delay(policy: BackoffPolicy, attempt: int) -> float:
    """Return the delay before retrying after the given failed attempt.

    Args:
        policy: Backoff parameters.
        attempt: 1-based number of the attempt that just failed.

    Returns:
        Delay in seconds, exponential in `attempt` and capped, plus jitter.
    """
    delay = min(policy.max_delay_s, policy.base_delay_s * (2 ** (attempt - 1)))
    if policy.jitter_s:
        delay = delay + random.uniform(0, policy.jitter_s)
    return delay


async def guarded(awaitable: Awaitable[T], *, timeout_s: float | None, operation: str) -> T:
    """Await a gateway call under a timeout, mapping network failures.

    Args:
        awaitable: Gateway coroutine.
        timeout_s: Per-operation timeout (None disables it).
        operation: Operation name used in error messages.

    Returns:
        Result of the awaitable.

    Raises:
        TransientError: On timeout or socket-level errors.
    """
    try:
        if timeout_s is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=timeout_s)
    except TimeoutError as exc:
        raise TransientError(f"{operation} timed out after {timeout_s}s") from exc
    except OSError as exc:
        raise TransientError(f"{operation} failed: {exc!r}") from exc


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    retry_budget: int,
    policy: BackoffPolicy,
    token: CancellationToken | None = None,
    retry_on: tuple[type[BaseException], ...] = (TransientError,),
    on_retry: Callable[[int, BaseException, float], None] | None = None,
) -> T:
    """Retry an async function with exponential backoff.

    Args:
        fn: Async callable to execute.
        retry_budget: Number of retries after the first attempt.
        policy: Backoff parameters.
        token: Optional cancellation token checked before each attempt and
            while backing off.
        retry_on: Exception types to retry on.
        on_retry: Called with (attempt, exception, delay) before each retry.

    Returns:
        Result of the callable.

    Raises:
        BaseException: The last exception if retries are exhausted.
        SyncCancelled: If cancellation was requested.
    """
    attempts = retry_budget + 1
    for i in range(1, attempts + 1):
        if token is not None:
            token.raise_if_cancelled()
        try:
            return await fn()
        except retry_on as exc:
            if i >= attempts:
                raise
            delay = backoff_delay(policy, i)
            if on_retry is not None:
                on_retry(i, exc, delay)
            if token is not None:
                await token.sleep(delay)
            else:
                await asyncio.sleep(delay)
    raise AssertionError("unreachable")

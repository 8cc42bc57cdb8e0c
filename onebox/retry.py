"""Tenacity retry wrapper driven by RetryConfig."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryConfig


def with_retry(
    config: RetryConfig,
    *,
    retryable_exceptions: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Callable:
    """Return a tenacity retry decorator configured from *config*.

    Waits grow as ``initial_wait_seconds * exp_base ** (attempt - 1)``,
    capped at ``max_wait_seconds``; the final exception is re-raised once
    ``max_attempts`` is exhausted.

    Usage::

        @with_retry(config.retry)
        async def deliver() -> httpx.Response: ...
    """
    return retry(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(
            multiplier=config.initial_wait_seconds,
            exp_base=config.exp_base,
            max=config.max_wait_seconds,
        ),
        retry=retry_if_exception_type(retryable_exceptions),
        sleep=sleep,
        reraise=True,
    )

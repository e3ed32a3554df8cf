"""
Trendscope — Retry Decorator

Exponential backoff with jitter around bar-provider calls. Only transient
errors (connection resets, timeouts, socket errors) are retried; anything
else propagates on the first attempt. Sync and async callables both work.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import random
import time
from typing import Any, Callable, Type

import structlog

log = structlog.get_logger(__name__)

TRANSIENT_ERRORS: tuple[Type[Exception], ...] = (
    ConnectionError,
    TimeoutError,
    OSError,
)


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    backoff_factor: float = 2.0,
    jitter: bool = True,
    retryable_exceptions: tuple[Type[Exception], ...] | None = None,
    on_retry: Callable[..., Any] | None = None,
) -> Callable:
    """Retry the decorated function on transient failures.

    Args:
        max_attempts: Attempts including the first call.
        base_delay: Delay before the second attempt, in seconds.
        max_delay: Upper bound for any single delay.
        backoff_factor: Growth of the delay per attempt.
        jitter: Scale each delay by a random factor in [0.5, 1.5].
        retryable_exceptions: Exception types worth retrying.
            Defaults to TRANSIENT_ERRORS.
        on_retry: Optional callback(attempt, exception, delay) run before sleeping.

    Usage::

        @with_retry(max_attempts=3, base_delay=0.5)
        async def fetch_bars(symbol: str):
            ...
    """
    retry_on = retryable_exceptions or TRANSIENT_ERRORS

    def decorator(func: Callable) -> Callable:
        def _before_sleep(attempt: int, exc: Exception) -> float:
            delay = compute_delay(attempt, base_delay, max_delay, backoff_factor, jitter)
            log.warning(
                "retry.attempt",
                func=func.__qualname__,
                attempt=attempt,
                max_attempts=max_attempts,
                delay=round(delay, 2),
                error=str(exc),
            )
            if on_retry:
                on_retry(attempt, exc, delay)
            return delay

        def _exhausted(exc: Exception) -> None:
            log.error(
                "retry.exhausted",
                func=func.__qualname__,
                attempts=max_attempts,
                error=str(exc),
            )

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    if attempt >= max_attempts:
                        _exhausted(exc)
                        raise
                    await asyncio.sleep(_before_sleep(attempt, exc))

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except retry_on as exc:
                    if attempt >= max_attempts:
                        _exhausted(exc)
                        raise
                    time.sleep(_before_sleep(attempt, exc))

        return async_wrapper if inspect.iscoroutinefunction(func) else sync_wrapper

    return decorator


def compute_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    backoff_factor: float,
    jitter: bool,
) -> float:
    """Backoff delay before retry number ``attempt`` (1-based)."""
    delay = base_delay * (backoff_factor ** (attempt - 1))
    if jitter:
        delay *= random.uniform(0.5, 1.5)
    return min(delay, max_delay)

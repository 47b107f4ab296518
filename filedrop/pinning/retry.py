"""Retry mechanisms for cheap IPFS daemon calls."""

import asyncio
import functools
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx

from filedrop.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def with_daemon_retry(
    max_retries: int = 2,
    base_delay: float = 0.2,
    max_delay: float = 2.0,
    backoff_factor: float = 2.0,
    retry_on: tuple[type[Exception], ...] = (httpx.TransportError,),
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator that retries an async daemon call with exponential backoff.

    Only meant for short, idempotent RPCs (existence and size queries);
    long transfers are never retried here because the stale sweep owns
    their recovery.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        backoff_factor: Multiplier for exponential backoff
        retry_on: Tuple of exception types to retry on

    Returns:
        Decorated coroutine function with retry logic
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except retry_on as e:
                    if attempt == max_retries:
                        raise

                    delay = min(base_delay * (backoff_factor**attempt), max_delay)
                    logger.debug(
                        "daemon_call_retry",
                        call=func.__name__,
                        attempt=attempt + 1,
                        max_attempts=max_retries + 1,
                        error=str(e),
                        delay=round(delay, 2),
                    )
                    await asyncio.sleep(delay)

            raise RuntimeError("Unexpected retry loop exit")

        return wrapper

    return decorator

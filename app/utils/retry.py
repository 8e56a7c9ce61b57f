"""
Centralized async retry utility for transient failures.

Used around external I/O that may fail transiently: the asyncpg pool
creation and the SMS provider HTTP call.

Retry policy:
- Exponential backoff with jitter
- Only retries on transient failures
- Preserves original exception on final failure
- No logging inside utility (caller handles logging)

Transient exceptions: asyncpg.PostgresError, asyncio.TimeoutError,
httpx.HTTPError, ConnectionError, OSError.
Domain and validation errors are NEVER retried, they are raised immediately.
"""

import asyncio
import inspect
import random
from typing import Callable, Type, Tuple, Any
import asyncpg
import httpx


DEFAULT_RETRIES = 2
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0


TRANSIENT_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    asyncpg.PostgresError,
    asyncio.TimeoutError,
    httpx.HTTPError,  # includes httpx.TimeoutException and HTTPStatusError
    ConnectionError,
    OSError,
)


def compute_backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential backoff capped at max_delay, with ±20% jitter"""
    delay = min(base_delay * (2 ** attempt), max_delay)
    jitter = delay * 0.2 * (random.random() * 2 - 1)
    return max(0, delay + jitter)


async def retry_async(
    fn: Callable[[], Any],
    *,
    retries: int = DEFAULT_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    retry_on: Tuple[Type[Exception], ...] = TRANSIENT_EXCEPTIONS,
) -> Any:
    """
    Retry an async function with exponential backoff.

    Args:
        fn: Async function to retry (callable that returns awaitable)
        retries: Number of retry attempts (default: 2, total attempts: 3)
        base_delay: Base delay in seconds for exponential backoff (default: 1.0)
        max_delay: Maximum delay in seconds (default: 10.0)
        retry_on: Tuple of exception types to retry on (default: transient exceptions)

    Returns:
        Result of the function call

    Raises:
        Original exception if all retries fail
        Non-retryable exceptions are raised immediately
    """
    for attempt in range(retries + 1):
        try:
            result = fn()
            if inspect.isawaitable(result):
                result = await result
            return result

        except Exception as e:
            if not isinstance(e, retry_on):
                raise

            if attempt >= retries:
                raise

            await asyncio.sleep(compute_backoff_delay(attempt, base_delay, max_delay))

    raise RuntimeError("retry_async: unexpected end of retry loop")

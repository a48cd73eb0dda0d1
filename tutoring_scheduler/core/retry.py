import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from tutoring_scheduler.core.config import Settings
from tutoring_scheduler.core.exceptions import StoreUnavailable, StoreRetriesExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_deadline(
    operation: Callable[[], Awaitable[T]],
    timeout_seconds: float,
    description: str = "store call",
) -> T:
    """Await a store operation, turning a missed deadline into StoreUnavailable"""
    try:
        return await asyncio.wait_for(operation(), timeout=timeout_seconds)
    except asyncio.TimeoutError as e:
        logger.warning(f"{description} timed out after {timeout_seconds}s")
        raise StoreUnavailable(f"{description} timed out") from e


async def retry_store_call(
    operation: Callable[[], Awaitable[T]],
    attempts: int = 3,
    base_delay: float = 0.1,
    max_delay: float = 2.0,
    description: str = "store call",
) -> T:
    """Run an idempotent store operation with exponential backoff.

    Only StoreUnavailable is retried; every other exception propagates on the
    first occurrence. When all attempts fail, StoreRetriesExhausted is raised
    from the last StoreUnavailable.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except StoreUnavailable as e:
            last_error = e
            if attempt == attempts:
                break
            delay = min(max_delay, base_delay * (2 ** (attempt - 1)))
            logger.warning(f"{description} failed (attempt {attempt}/{attempts}): {e}; retrying in {delay:.2f}s")
            await asyncio.sleep(delay)

    logger.error(f"{description} failed after {attempts} attempts: {last_error}")
    raise StoreRetriesExhausted(f"{description} failed after {attempts} attempts", attempts) from last_error


async def read_with_retry(operation: Callable[[], Awaitable[T]], settings: Settings, description: str) -> T:
    """Idempotent store read: each attempt bounded by STORE_TIMEOUT_SECONDS, retried per settings"""
    return await retry_store_call(
        lambda: call_with_deadline(operation, settings.STORE_TIMEOUT_SECONDS, description),
        attempts=settings.STORE_RETRY_ATTEMPTS,
        base_delay=settings.STORE_RETRY_BASE_DELAY,
        max_delay=settings.STORE_RETRY_MAX_DELAY,
        description=description,
    )

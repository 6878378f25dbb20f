"""
EMS Pipeline — Reliability helpers
═══════════════════════════════════
  - retry_with_backoff   retry transient backend failures
  - with_deadline        bound an awaitable by an explicit timeout
"""
import asyncio
import logging
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

log = logging.getLogger("ems.reliability")

T = TypeVar("T")


class DeadlineExceeded(TimeoutError):
    """Raised when an upload or OCR call outlives its configured deadline."""


# ═══════════════════════════════════════════════════════════════
#  Retry Decorator with Exponential Backoff
# ═══════════════════════════════════════════════════════════════
def retry_with_backoff(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    exceptions: tuple = (Exception,),
):
    """
    Retry decorator with exponential backoff for async functions.

    Args:
        max_attempts: Maximum number of attempts (including first try)
        initial_delay: Initial delay in seconds
        max_delay: Maximum delay between retries
        exponential_base: Base for exponential backoff calculation
        exceptions: Tuple of exception types to catch and retry

    Example:
        @retry_with_backoff(max_attempts=3, initial_delay=2)
        async def upsert():
            ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            delay = initial_delay
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        log.error(f"{func.__name__} failed after {max_attempts} attempts: {e}")
                        raise
                    wait_time = min(delay, max_delay)
                    log.warning(
                        f"{func.__name__} attempt {attempt}/{max_attempts} failed: {e}. "
                        f"Retrying in {wait_time:.1f}s..."
                    )
                    await asyncio.sleep(wait_time)
                    delay *= exponential_base
        return wrapper
    return decorator


# ═══════════════════════════════════════════════════════════════
#  Deadlines
# ═══════════════════════════════════════════════════════════════
async def with_deadline(awaitable: Awaitable[T], seconds: Optional[float], what: str) -> T:
    """Await `awaitable`, raising DeadlineExceeded after `seconds` (None or <= 0 disables)."""
    if not seconds or seconds <= 0:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        raise DeadlineExceeded(f"{what} exceeded {seconds:.0f}s deadline") from e

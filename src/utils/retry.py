"""Retry decorator with exponential backoff for idempotent upstream calls."""

import asyncio
import logging
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)
T = TypeVar("T")


def is_transient(error: Exception) -> bool:
    """
    Decide whether an upstream error is worth another attempt.

    Errors carrying an HTTP ``status_code`` are retried only for 429 and 5xx;
    client errors (bad key, private video, malformed payload) fail fast.
    """
    status_code = getattr(error, "status_code", None)
    if status_code is None:
        return True
    return status_code == 429 or status_code >= 500


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
    should_retry: Optional[Callable[[Exception], bool]] = is_transient,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator for exponential backoff retry logic.

    Only applied to lookups, posting and terminal status writes. Generation
    submissions are never wrapped: a failed generation is reported to the
    pipeline runner as-is.

    Args:
        max_attempts: Maximum number of attempts
        base_delay: Base delay in seconds (doubles each attempt)
        exceptions: Tuple of exception types to catch
        should_retry: Predicate deciding if a caught error is retryable

    Returns:
        Decorated function with retry logic
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            last_exception: Exception | None = None

            for attempt in range(max_attempts):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    if should_retry is not None and not should_retry(e):
                        logger.warning(f"{func.__name__} failed with non-retryable error: {e}")
                        raise
                    if attempt < max_attempts - 1:
                        delay = base_delay * (2**attempt)
                        logger.warning(
                            f"{func.__name__} attempt {attempt + 1}/{max_attempts} failed: {e}. "
                            f"Retrying in {delay}s..."
                        )
                        await asyncio.sleep(delay)
                    else:
                        logger.error(f"{func.__name__}: all {max_attempts} attempts failed: {e}")

            raise last_exception  # type: ignore

        return wrapper  # type: ignore

    return decorator

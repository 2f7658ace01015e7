"""Bounded retry with a per-attempt timeout for async operations."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(base: float, attempt: int, maximum: float = 30.0) -> float:
    """Linear delay after failed attempt number ``attempt`` (0-based)."""
    if base <= 0:
        return 0.0
    return min(base * (attempt + 1), maximum)


async def retry_async(
    attempt_fn: Callable[[], Awaitable[T]],
    attempts: int,
    timeout: Optional[float] = None,
    should_retry: Callable[[BaseException], bool] = lambda e: False,
    backoff: float = 0.0,
    operation: str = "operation",
) -> T:
    """Run ``attempt_fn`` up to ``attempts`` times.

    Each attempt is bounded by ``timeout`` seconds; a timed-out attempt is
    always retryable. Any other exception is retried only when
    ``should_retry`` returns True for it, otherwise it propagates at once.
    When every attempt fails, the last failure is raised
    (``asyncio.TimeoutError`` for a timeout).

    Args:
        attempt_fn: Zero-argument coroutine factory; called once per attempt.
        attempts: Total number of attempts, at least 1.
        timeout: Per-attempt limit in seconds, or None for no limit.
        should_retry: Classifies non-timeout failures.
        backoff: Base delay in seconds between attempts (0 disables).
        operation: Name used in log messages.
    """
    attempts = max(1, attempts)
    for attempt in range(attempts):
        try:
            if timeout is None:
                result = await attempt_fn()
            else:
                result = await asyncio.wait_for(attempt_fn(), timeout)
            if attempt > 0:
                logger.info(f"{operation} succeeded on attempt {attempt + 1}/{attempts}")
            return result
        except asyncio.TimeoutError:
            if attempt == attempts - 1:
                logger.warning(
                    f"{operation} timed out after {timeout}s on final attempt "
                    f"{attempt + 1}/{attempts}"
                )
                raise
            logger.warning(
                f"{operation} timed out after {timeout}s, "
                f"retrying ({attempt + 1}/{attempts})"
            )
        except Exception as e:
            if not should_retry(e):
                raise
            if attempt == attempts - 1:
                logger.warning(
                    f"{operation} failed after {attempts} attempts: {e}"
                )
                raise
            logger.warning(
                f"{operation} failed, retrying ({attempt + 1}/{attempts}): {e}"
            )

        delay = backoff_delay(backoff, attempt)
        if delay:
            await asyncio.sleep(delay)

    raise RuntimeError(f"{operation}: retry loop exited without a result")

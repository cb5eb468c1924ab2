"""
Generic retry with exponential backoff.
Delay before retry n (0-based) is initial_delay * 2**n; no sleep after the last attempt.
The last exception is re-raised unchanged; an exception with retryable=False
is re-raised at once.
"""
import logging
import time
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_with_backoff(
    fn: Callable[[], T],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    *,
    sleep: Callable[[float], None] = time.sleep,
    operation: str | None = None,
) -> T:
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    last_error: Exception | None = None
    for attempt in range(max_attempts):
        try:
            return fn()
        except Exception as e:
            last_error = e
            if attempt >= max_attempts - 1 or getattr(e, "retryable", True) is False:
                break
            delay = initial_delay * (2 ** attempt)
            logger.info(
                "retry_scheduled",
                extra={
                    "operation": operation or getattr(fn, "__name__", "call"),
                    "attempt": attempt + 1,
                    "max_attempts": max_attempts,
                    "delay_seconds": delay,
                    "error": str(e),
                },
            )
            sleep(delay)

    raise last_error

"""Retry utilities using tenacity."""
from __future__ import annotations

import logging
import time
from functools import wraps
from typing import Any, Callable, Optional, Type, TypeVar, ParamSpec

from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    before_sleep_log,
)

from core.config import get_settings
from core.exceptions import DatabaseError
from core.logging_config import get_logger

LOGGER = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# Exceptions that indicate a transient store failure
TRANSIENT_ERRORS: tuple[Type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    OSError,
    DatabaseError,
)


def retrying_call(
    func: Callable[[], T],
    *,
    max_attempts: Optional[int] = None,
    retry_exceptions: tuple[Type[BaseException], ...] = TRANSIENT_ERRORS,
    min_wait: Optional[float] = None,
    max_wait: Optional[float] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """
    Call func with bounded exponential backoff; re-raise the last error.

    Attempt ceiling and wait window default to the configured
    ``event_log_max_attempts`` and ``retry_*_wait_seconds``.

    Args:
        func: Zero-argument callable to run.
        max_attempts: Attempt ceiling, including the first call.
        retry_exceptions: Exception types that trigger another attempt.
        min_wait: Lower bound of the backoff wait, in seconds.
        max_wait: Upper bound of the backoff wait, in seconds.
        sleep: Sleep function, injectable for tests.

    Returns:
        Whatever func returns on its first successful attempt.
    """
    settings = get_settings()
    attempts = max_attempts if max_attempts is not None else settings.event_log_max_attempts
    low = min_wait if min_wait is not None else settings.retry_min_wait_seconds
    high = max_wait if max_wait is not None else settings.retry_max_wait_seconds

    retrying_kwargs: dict[str, Any] = {
        "retry": retry_if_exception_type(retry_exceptions),
        "stop": stop_after_attempt(attempts),
        "wait": wait_exponential(multiplier=low or 1, min=low, max=high),
        "before_sleep": before_sleep_log(LOGGER, log_level=logging.WARNING),
        "reraise": True,
    }
    if sleep is not None:
        retrying_kwargs["sleep"] = sleep

    return Retrying(**retrying_kwargs)(func)


def timed_call(func: Callable[P, T]) -> Callable[P, tuple[T, float]]:
    """
    Decorator to measure function execution time.

    Returns:
        Tuple of (result, duration_ms).
    """

    @wraps(func)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> tuple[T, float]:
        start = time.perf_counter()
        result = func(*args, **kwargs)
        duration_ms = (time.perf_counter() - start) * 1000
        return result, duration_ms

    return wrapper


__all__ = [
    "retrying_call",
    "timed_call",
    "TRANSIENT_ERRORS",
]

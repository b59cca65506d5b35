"""Retry utilities for transient upstream failures."""

from __future__ import annotations

import logging
import random
import time
from functools import wraps
from typing import Any, Callable, TypeVar

import httpx

from inboxpilot.errors import RateLimitError, ServerError

T = TypeVar("T")

logger = logging.getLogger(__name__)


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        retryable_exceptions: tuple = (Exception,),
        delays: list[float] | None = None,
    ) -> None:
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.retryable_exceptions = retryable_exceptions
        # explicit schedule; overrides the exponential curve when set
        self.delays = delays


def exponential_backoff(attempt: int, config: RetryConfig) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    if config.delays:
        return config.delays[min(attempt, len(config.delays)) - 1]
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    return min(delay, config.max_delay)


def backoff_seconds(attempt: int, base_seconds: int = 5, max_seconds: int = 300) -> int:
    """Jittered exponential delay used when re-queueing a rate-limited job."""
    candidate = base_seconds * (2 ** max(0, attempt - 1))
    jitter = random.randint(0, 3)
    return min(max_seconds, candidate + jitter)


def with_retry(config: RetryConfig | None = None) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator adding retry with exponential backoff."""
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            last_exception: Exception | None = None

            for attempt in range(1, config.max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except config.retryable_exceptions as e:
                    last_exception = e
                    if attempt < config.max_attempts:
                        delay = exponential_backoff(attempt, config)
                        logger.info(
                            "retrying %s in %.1fs after %s", func.__name__, delay, e,
                            extra={"attempt": attempt},
                        )
                        time.sleep(delay)

            if last_exception:
                raise last_exception
            raise RuntimeError("Unexpected retry state")

        return wrapper

    return decorator


NETWORK_RETRY = RetryConfig(
    max_attempts=3,
    base_delay=1.0,
    max_delay=30.0,
    exponential_base=2.0,
    retryable_exceptions=(httpx.ConnectError, httpx.TimeoutException, ServerError),
)

MAIL_FETCH_RETRYABLE = (RateLimitError, ServerError, httpx.ConnectError, httpx.TimeoutException)


def mail_fetch_retry(delays: list[float]) -> RetryConfig:
    """Policy for single-message fetches: one attempt, then one more after each delay."""
    return RetryConfig(
        max_attempts=len(delays) + 1,
        delays=list(delays),
        retryable_exceptions=MAIL_FETCH_RETRYABLE,
    )


# Body fetches: wait 1s, 3s, then 10s between attempts
MAIL_FETCH_RETRY = mail_fetch_retry([1.0, 3.0, 10.0])

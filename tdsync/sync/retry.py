"""Bounded retry policy shared by the token refresher and the provider client."""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Retry budget.

    ``max_retries`` counts retries after the first attempt, so a call is
    tried at most ``max_retries + 1`` times. The default is a fixed delay
    between attempts; set ``exponential_base`` above 1 for backoff.
    """

    max_retries: int = 3
    base_delay: float = 5.0  # seconds
    max_delay: float = 60.0  # seconds
    exponential_base: float = 1.0
    jitter: bool = False

    @classmethod
    def from_token_settings(cls, settings) -> "RetryConfig":
        """Budget from the ``max_refresh_retries`` / ``refresh_retry_delay`` options."""
        return cls(
            max_retries=settings.max_refresh_retries,
            base_delay=settings.refresh_retry_delay,
        )

    @property
    def attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, attempt: int, error: Optional[Exception] = None) -> float:
        """Seconds to wait after a failed attempt (0-indexed).

        A numeric ``retry_after`` on the error (rate limit responses)
        replaces the computed delay. Either way the result is capped at
        ``max_delay``.
        """
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            return min(max(0.0, float(retry_after)), self.max_delay)

        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            # +/- 25%
            delay += random.uniform(-delay * 0.25, delay * 0.25)
        return max(0.0, delay)


class RetryExhausted(Exception):
    """All retry attempts exhausted."""

    def __init__(self, attempts: int, last_error: Optional[Exception] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Retry exhausted after {attempts} attempts")


def retry_with_backoff(
    func: Callable[[], T],
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    retryable_exceptions: tuple = (Exception,),
) -> T:
    """Call ``func`` until it succeeds or the retry budget runs out.

    Args:
        func: Function to execute
        config: Retry budget
        on_retry: Called before each wait with (attempt, error, delay)
        retryable_exceptions: Exceptions that trigger a retry; anything
            else propagates immediately

    Raises:
        RetryExhausted: Every attempt failed with a retryable exception
    """
    config = config or RetryConfig()
    last_error: Optional[Exception] = None

    for attempt in range(config.attempts):
        try:
            return func()
        except retryable_exceptions as e:
            last_error = e
            if attempt + 1 >= config.attempts:
                break

            delay = config.delay_for(attempt, e)
            if on_retry:
                on_retry(attempt, e, delay)
            else:
                logger.warning(
                    f"Attempt {attempt + 1}/{config.attempts} failed: {e}. "
                    f"Retrying in {delay:.1f}s..."
                )
            time.sleep(delay)

    raise RetryExhausted(config.attempts, last_error)

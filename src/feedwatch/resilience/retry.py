"""Retry logic with exponential backoff."""

from __future__ import annotations

import random
from typing import Callable

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from feedwatch.core.config import BackoffSettings
from feedwatch.core.exceptions import ConfigurationError


class BackoffPolicy:
    """
    Capped exponential backoff for reconnect attempts.

    The delay for attempt ``n`` (1-based) is ``base_delay * 2 ** (n - 1)``
    capped at ``max_delay``. Jitter only ever shortens a delay, and by less
    than half, so the sequence strictly increases until it reaches the cap
    and never exceeds it.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        max_attempts: int = 5,
        jitter: float = 0.25,
        exponential_base: float = 2.0,
        rng: Callable[[], float] = random.random,
    ) -> None:
        """
        Initialize backoff policy.

        Args:
            base_delay: Delay before the first reconnect, in seconds.
            max_delay: Upper bound for any delay, in seconds.
            max_attempts: Consecutive failures tolerated before giving up.
            jitter: Fraction of the delay that may be removed at random (< 0.5).
            exponential_base: Growth factor between attempts.
            rng: Source of uniform floats in [0, 1), injectable for tests.
        """
        if base_delay <= 0 or max_delay <= 0:
            raise ConfigurationError(
                "Backoff delays must be positive",
                {"base_delay": base_delay, "max_delay": max_delay},
            )
        if not 0.0 <= jitter < 0.5:
            raise ConfigurationError("Backoff jitter must be in [0, 0.5)", {"jitter": jitter})
        if exponential_base < 2.0:
            raise ConfigurationError(
                "Backoff exponential base must be at least 2",
                {"exponential_base": exponential_base},
            )
        if max_attempts < 0:
            raise ConfigurationError("max_attempts cannot be negative", {"max_attempts": max_attempts})

        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.jitter = jitter
        self.exponential_base = exponential_base
        self._rng = rng

    @classmethod
    def from_settings(cls, settings: BackoffSettings) -> BackoffPolicy:
        return cls(
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
            max_attempts=settings.max_attempts,
            jitter=settings.jitter,
        )

    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate delay for a given attempt number.

        Args:
            attempt: Current attempt (1-based).

        Returns:
            Delay in seconds.
        """
        if attempt < 1:
            raise ValueError("attempt is 1-based")

        delay = self.base_delay * (self.exponential_base ** (attempt - 1))

        if self.jitter:
            delay -= delay * self.jitter * self._rng()

        return min(delay, self.max_delay)

    def exhausted(self, attempt: int) -> bool:
        """True once ``attempt`` consecutive failures exceed the budget."""
        return attempt > self.max_attempts


def create_tenacity_retry(
    max_attempts: int = 3,
    base_delay: float = 0.1,
    max_delay: float = 2.0,
    retryable_exceptions: tuple[type[BaseException], ...] = (ConnectionError, TimeoutError),
) -> AsyncRetrying:
    """
    Create a tenacity retry configuration.

    Args:
        max_attempts: Maximum attempts including the first.
        base_delay: Base delay in seconds.
        max_delay: Maximum delay in seconds.
        retryable_exceptions: Exceptions that trigger retry.

    Returns:
        AsyncRetrying instance for use with async for.
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, max=max_delay),
        retry=retry_if_exception_type(retryable_exceptions),
        reraise=True,
    )

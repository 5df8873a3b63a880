"""Shared backoff policy.

One policy object drives every retry-with-sleep loop in the engine: the
propagation waiter, the operation poller and the worker's transient
authorization retries.
"""

from __future__ import annotations

import random
from collections.abc import Iterator
from dataclasses import dataclass

from .config import MAX_AUTH_RETRIES, RETRY_BACKOFF_BASE_SECONDS, RETRY_BACKOFF_MAX_SECONDS


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry schedule with optional exponential growth and jitter.

    Attributes:
        max_attempts: Total attempts including the first one.
        interval: Delay before the second attempt.
        multiplier: Growth factor per attempt (1.0 keeps the interval fixed).
        max_interval: Upper bound for a single delay.
        jitter: Fraction of the delay added as uniform random jitter.
    """

    max_attempts: int = MAX_AUTH_RETRIES
    interval: float = RETRY_BACKOFF_BASE_SECONDS
    multiplier: float = 2.0
    max_interval: float = RETRY_BACKOFF_MAX_SECONDS
    jitter: float = 0.2

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.interval < 0 or self.max_interval < 0:
            raise ValueError("intervals must not be negative")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")

    @classmethod
    def fixed(cls, interval: float, max_attempts: int = 1_000_000) -> BackoffPolicy:
        """Constant interval without jitter, for deadline-bounded polling."""
        return cls(
            max_attempts=max_attempts,
            interval=interval,
            multiplier=1.0,
            max_interval=interval,
            jitter=0.0,
        )

    def delay(self, attempt: int) -> float:
        """Delay to sleep after the given (1-based) failed attempt."""
        base = min(self.interval * (self.multiplier ** (attempt - 1)), self.max_interval)
        if self.jitter:
            base += random.uniform(0, base * self.jitter)
        return base

    def delays(self) -> Iterator[float]:
        """Yield the delays between consecutive attempts (max_attempts - 1 values)."""
        for attempt in range(1, self.max_attempts):
            yield self.delay(attempt)

"""Retry policy for alert delivery."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Attempt ``n`` (0-based) that fails waits ``delay_for(n)`` before the
    next attempt. No delay follows the last attempt.

    Attributes:
        max_attempts: Total number of attempts, including the first.
        base_delay: Delay after the first failed attempt, in seconds.
        multiplier: Growth factor between consecutive delays.
        max_delay: Upper bound for a single delay.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt."""
        return min(self.base_delay * (self.multiplier**attempt), self.max_delay)

    def should_retry(self, attempt: int) -> bool:
        """Whether another attempt follows the given failed attempt."""
        return attempt + 1 < self.max_attempts

"""
Retry policy with capped exponential backoff.

Usage:
    policy = RetryPolicy(initial_delay=2.0, max_delay=15.0)
    while not policy.exhausted:
        await sleep(policy.next_delay())
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class RetryPolicy:
    """Backoff state for a retried operation.

    Attributes:
        initial_delay: Delay before the first retry, in seconds
        max_delay: Ceiling for any single delay
        factor: Growth factor per attempt
        max_attempts: Upper bound on retries, None for unbounded
        attempt: Retries scheduled so far
    """

    initial_delay: float = 2.0
    max_delay: float = 15.0
    factor: float = 2.0
    max_attempts: Optional[int] = None
    attempt: int = 0

    def calculate_delay(self, attempt: int) -> float:
        """Delay for a 0-indexed attempt: initial * factor^attempt, capped."""
        # Exponent capped so unbounded retries never overflow a float
        return min(self.initial_delay * (self.factor ** min(attempt, 64)), self.max_delay)

    def next_delay(self) -> float:
        """Return the delay for the next attempt and advance the counter."""
        delay = self.calculate_delay(self.attempt)
        self.attempt += 1
        return delay

    @property
    def exhausted(self) -> bool:
        return self.max_attempts is not None and self.attempt >= self.max_attempts

    def reset(self) -> None:
        self.attempt = 0

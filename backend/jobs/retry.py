"""
Retry policy for failed unsubscribe jobs.

Two policies exist:
- single_attempt: a failed job goes straight to FAILED for manual review
- exponential_backoff: the job returns to PENDING with a growing delay
  until ``max_attempts`` claims have been made
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

SINGLE_ATTEMPT = "single_attempt"
EXPONENTIAL_BACKOFF = "exponential_backoff"

POLICIES = (SINGLE_ATTEMPT, EXPONENTIAL_BACKOFF)


@dataclass(frozen=True)
class RetryPolicy:
    mode: str = SINGLE_ATTEMPT
    max_attempts: int = 3
    base_delay: float = 60.0
    max_delay: float = 3600.0

    def __post_init__(self):
        if self.mode not in POLICIES:
            raise ValueError(f"Unknown retry policy: {self.mode!r} (expected one of {POLICIES})")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            mode=settings.RETRY_POLICY,
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
        )

    def delay_for(self, attempts: int) -> float:
        """Backoff delay in seconds after the given number of attempts."""
        return min(self.base_delay * (2 ** max(attempts - 1, 0)), self.max_delay)

    def next_run_at(self, attempts: int, max_attempts: int, now: datetime) -> Optional[datetime]:
        """
        When to retry a job that has failed ``attempts`` times.

        Returns None when the job should be failed instead.
        """
        if self.mode == SINGLE_ATTEMPT:
            return None
        if attempts >= min(max_attempts, self.max_attempts):
            return None
        return now + timedelta(seconds=self.delay_for(attempts))

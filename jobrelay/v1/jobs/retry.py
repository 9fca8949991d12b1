"""
Retry policy: decides between another attempt and terminal failure.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum


class RetryDecision(str, Enum):
    RETRY = "retry"
    EXHAUSTED = "exhausted"


def decide(attempts: int, max_attempts: int) -> RetryDecision:
    """
    Decide what happens after a failed attempt.

    Args:
        attempts: Attempt count including the attempt that just failed
        max_attempts: Configured ceiling for the job

    Returns:
        RETRY while attempts remain, EXHAUSTED otherwise
    """
    if attempts < max_attempts:
        return RetryDecision.RETRY
    return RetryDecision.EXHAUSTED


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule for re-claiming a job after a failed attempt."""

    base_delay_ms: int = 0
    exponential_backoff: bool = False
    max_delay_ms: int = 300_000

    def delay_ms(self, attempts: int) -> int:
        """Delay after the given (1-based) attempt failed."""
        if self.base_delay_ms <= 0:
            return 0
        if not self.exponential_backoff:
            return min(self.base_delay_ms, self.max_delay_ms)

        exponent = max(0, attempts - 1)
        return min(self.max_delay_ms, self.base_delay_ms * (2**exponent))

    def next_attempt_at(self, attempts: int, now: datetime) -> datetime:
        return now + timedelta(milliseconds=self.delay_ms(attempts))

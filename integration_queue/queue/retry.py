"""
Retry/backoff scheduling.

Everything here is pure: given the attempt count, the policy and a fixed
``now`` the decision is deterministic, so tests never touch the wall clock.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from integration_queue.config import Settings, get_settings
from integration_queue.constants import JobType


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff with a cap.

    delay(attempts) = min(base * multiplier ** (attempts - 1), max)
    """

    base_seconds: float = 5.0
    max_seconds: float = 600.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.base_seconds < 0 or self.max_seconds < 0:
            raise ValueError("Backoff delays must be non-negative")
        if self.multiplier < 1:
            raise ValueError("Backoff multiplier must be >= 1")

    def delay_for(self, attempts: int) -> timedelta:
        """Delay before the next attempt after ``attempts`` failures."""
        exponent = max(0, attempts - 1)
        # Stop growing once the cap is reached to avoid float overflow
        delay = self.base_seconds
        for _ in range(exponent):
            delay *= self.multiplier
            if delay >= self.max_seconds:
                break
        return timedelta(seconds=min(delay, self.max_seconds))


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of scheduling a failed attempt."""

    dead_letter: bool
    next_eligible_at: datetime | None
    delay: timedelta | None


def schedule_retry(
    attempts: int,
    max_attempts: int,
    policy: BackoffPolicy,
    now: datetime,
) -> RetryDecision:
    """
    Decide what happens after a failed attempt.

    Args:
        attempts: Attempt count including the one that just failed.
        max_attempts: Retry budget of the job.
        policy: Backoff policy for the job type.
        now: Reference time.

    Returns:
        RetryDecision: dead-letter when the budget is spent, otherwise the
        time the job becomes eligible again.
    """
    if attempts >= max_attempts:
        return RetryDecision(dead_letter=True, next_eligible_at=None, delay=None)

    delay = policy.delay_for(attempts)
    return RetryDecision(dead_letter=False, next_eligible_at=now + delay, delay=delay)


def policy_for(job_type: JobType, settings: Settings | None = None) -> BackoffPolicy:
    """Backoff policy configured for a job type."""
    settings = settings or get_settings()
    if job_type == JobType.OUTBOUND_POSTING:
        return BackoffPolicy(
            base_seconds=settings.posting_backoff_base_seconds,
            max_seconds=settings.posting_backoff_max_seconds,
            multiplier=settings.backoff_multiplier,
        )
    return BackoffPolicy(
        base_seconds=settings.backoff_base_seconds,
        max_seconds=settings.backoff_max_seconds,
        multiplier=settings.backoff_multiplier,
    )


def default_max_attempts(job_type: JobType, settings: Settings | None = None) -> int:
    """Retry budget configured for a job type."""
    settings = settings or get_settings()
    if job_type == JobType.OUTBOUND_POSTING:
        return settings.posting_max_attempts
    return settings.default_max_attempts

"""
Retry Controller for Job Scheduler.

- Decides whether a failed job is retried
- Computes the exponential backoff delay before the retry becomes eligible

What RetryController MUST NOT do:
- Execute jobs
- Mutate Jobs or the queue (the Dispatcher applies its decisions)

Backoff calculation:
    delay = min(initial_delay * multiplier ^ retry_count, max_delay)
    Example with defaults (5s, x2, cap 300s): 5s -> 10s -> 20s -> ... -> 300s
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .entities import ErrorKind, Job, JobStatus


logger = logging.getLogger(__name__)


# Default retry configuration
DEFAULT_INITIAL_DELAY_SECONDS = 5.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_MAX_DELAY_SECONDS = 300.0


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a retry evaluation."""

    should_retry: bool
    delay: float = 0.0
    reason: Optional[str] = None


class RetryController:
    """
    Pure retry policy over a Job's attempt history.

    Parameters are process-wide; max_retries comes from the Job itself.
    """

    def __init__(
        self,
        initial_delay: float = DEFAULT_INITIAL_DELAY_SECONDS,
        multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
        max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
    ):
        """
        Initialize RetryController.

        Args:
            initial_delay: Delay in seconds before the first retry
            multiplier: Growth factor applied per previous retry
            max_delay: Upper bound on any single delay
        """
        if initial_delay <= 0:
            raise ValueError(f"initial_delay must be positive, got {initial_delay}")
        if multiplier < 1:
            raise ValueError(f"multiplier must be >= 1, got {multiplier}")
        if max_delay < initial_delay:
            raise ValueError("max_delay must be >= initial_delay")

        self.initial_delay = initial_delay
        self.multiplier = multiplier
        self.max_delay = max_delay

    def calculate_backoff(self, retry_count: int) -> float:
        """
        Calculate exponential backoff delay.

        Formula: delay = min(initial_delay * multiplier ^ retry_count, max_delay)
        """
        if retry_count < 0:
            raise ValueError(f"retry_count must be >= 0, got {retry_count}")
        try:
            delay = self.initial_delay * (self.multiplier ** retry_count)
        except OverflowError:
            return self.max_delay
        return min(delay, self.max_delay)

    def can_retry(self, job: Job) -> bool:
        """Check whether the job has retry budget left and a retryable failure."""
        if job.error_kind == ErrorKind.CONFIGURATION:
            return False
        return job.retry_count < job.max_retries

    def evaluate(self, job: Job) -> RetryDecision:
        """
        Decide what happens to a failed job.

        Args:
            job: A job in FAILED status

        Returns:
            RetryDecision with the delay to apply when a retry is permitted
        """
        if job.status != JobStatus.FAILED:
            return RetryDecision(False, reason=f"job is {job.status.value}, not failed")

        if job.error_kind == ErrorKind.CONFIGURATION:
            return RetryDecision(False, reason="configuration error is not retryable")

        if not self.can_retry(job):
            return RetryDecision(
                False,
                reason=f"max retries reached ({job.retry_count}/{job.max_retries})",
            )

        return RetryDecision(True, delay=self.calculate_backoff(job.retry_count))

    def delay_schedule(self, max_retries: int) -> list[float]:
        """Delays a job would wait before each of its retries."""
        return [self.calculate_backoff(n) for n in range(max_retries)]

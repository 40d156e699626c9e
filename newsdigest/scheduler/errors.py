"""
Scheduler-specific exceptions.

Validation and lookup failures propagate to callers of submit/cancel.
Handler failures never escape the dispatcher; they are converted into
Job state transitions instead.
"""

from typing import Optional


class SchedulerError(Exception):
    """Base exception for all scheduler errors."""
    pass


class ConfigurationError(SchedulerError):
    """Raised when scheduler settings are invalid."""
    pass


class InvalidOperationError(SchedulerError):
    """
    Raised when an operation violates scheduler invariants.

    Examples:
    - Cancelling a job that already reached a terminal state
    - Registering handlers after the scheduler has started
    """
    pass


class InvalidTransitionError(InvalidOperationError):
    """Raised when a Job is asked to move along an edge its state machine lacks."""

    def __init__(self, job_id: str, current: str, target: str):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(
            f"Invalid transition for job {job_id}: {current} -> {target}"
        )


class JobNotFoundError(SchedulerError):
    """Raised when a requested job does not exist."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class JobValidationError(SchedulerError):
    """
    Raised when a submission is rejected before a Job exists.

    Also raised when the initial store write fails, since the job is then
    never enqueued.
    """

    def __init__(self, message: str, errors: Optional[list] = None):
        self.errors = errors or []
        super().__init__(message)


class ScheduleNotFoundError(SchedulerError):
    """Raised when a schedule name is not configured."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Schedule not found: {name}")


class HandlerNotFoundError(SchedulerError):
    """Raised when no handler is registered for a job type."""

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"No handler registered for job type: {job_type}")


class HandlerRegistrationError(SchedulerError):
    """Raised on duplicate or late handler registration."""
    pass


class JobTimeoutError(SchedulerError):
    """Raised when a handler does not settle within the job's timeout."""

    def __init__(self, job_id: str, timeout: float):
        self.job_id = job_id
        self.timeout = timeout
        super().__init__(f"Job {job_id} timed out after {timeout}s")


class JobStoreError(SchedulerError):
    """Raised by JobStore implementations when a read or write fails."""
    pass

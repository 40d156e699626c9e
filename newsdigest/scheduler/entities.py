"""
Scheduler Domain Entities.

- Job: Single unit of work with its own state machine
- JobStatus / JobPriority / ErrorKind: value types used by the Job

State machine:
    PENDING  -> RUNNING    start()
    RUNNING  -> COMPLETED  complete()
    RUNNING  -> FAILED     fail()
    PENDING  -> FAILED     fail(kind=CONFIGURATION) only
    FAILED   -> RETRYING   retry()
    RETRYING -> PENDING    requeue()
    PENDING/RUNNING/RETRYING -> CANCELLED  cancel()

COMPLETED and CANCELLED have no outgoing edges. FAILED is terminal once
the retry budget is exhausted.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Any, Optional
import uuid

from .errors import InvalidOperationError, InvalidTransitionError


class JobStatus(str, Enum):
    """Job status values."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RETRYING = "retrying"


class JobPriority(IntEnum):
    """Dispatch priority (higher = more urgent)."""

    LOW = 1
    NORMAL = 2
    HIGH = 3
    CRITICAL = 4


class ErrorKind(str, Enum):
    """
    Failure classification.

    CONFIGURATION failures (no handler registered) are never retried,
    since retrying cannot change the outcome.
    """

    CONFIGURATION = "configuration"
    EXECUTION = "execution"
    TIMEOUT = "timeout"


_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset(
        {JobStatus.RUNNING, JobStatus.CANCELLED, JobStatus.FAILED}
    ),
    JobStatus.RUNNING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.FAILED: frozenset({JobStatus.RETRYING}),
    JobStatus.RETRYING: frozenset({JobStatus.PENDING, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Get current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Job:
    """
    Single unit of work queued for execution.

    Mutability rules:
    - job_id, job_type, name, created_at: Immutable
    - status and the timestamps/counters tied to it change only through
      the transition methods below
    - Nothing changes once the job is COMPLETED or CANCELLED
    """

    job_id: str
    name: str
    job_type: str
    priority: int = JobPriority.NORMAL
    status: JobStatus = JobStatus.PENDING
    payload: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)
    scheduled_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    attempts: int = 0
    retry_count: int = 0
    max_retries: int = 3
    timeout: float = 300.0
    result: Any = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        name: str,
        job_type: str,
        priority: int = JobPriority.NORMAL,
        payload: Optional[dict] = None,
        metadata: Optional[dict] = None,
        scheduled_at: Optional[datetime] = None,
        max_retries: int = 3,
        timeout: float = 300.0,
        now: Optional[datetime] = None,
    ) -> "Job":
        """Create a new Job with generated ID and PENDING status."""
        now = now or utcnow()
        return cls(
            job_id=generate_uuid(),
            name=name,
            job_type=job_type,
            priority=int(priority),
            status=JobStatus.PENDING,
            payload=payload or {},
            metadata=metadata or {},
            scheduled_at=scheduled_at or now,
            max_retries=max_retries,
            timeout=timeout,
            created_at=now,
            updated_at=now,
        )

    # =========================================================================
    # State Machine
    # =========================================================================

    def _transition(self, target: JobStatus, now: datetime) -> None:
        if target not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.job_id, self.status.value, target.value)
        self.status = target
        self.updated_at = now

    def start(self, now: Optional[datetime] = None) -> None:
        """PENDING -> RUNNING. Counts the attempt."""
        now = now or utcnow()
        self._transition(JobStatus.RUNNING, now)
        self.started_at = now
        self.completed_at = None
        self.attempts += 1

    def complete(self, result: Any = None, now: Optional[datetime] = None) -> None:
        """RUNNING -> COMPLETED."""
        now = now or utcnow()
        self._transition(JobStatus.COMPLETED, now)
        self.completed_at = now
        self.result = result
        self.error = None
        self.error_kind = None

    def fail(
        self,
        error: Any,
        kind: ErrorKind = ErrorKind.EXECUTION,
        now: Optional[datetime] = None,
    ) -> None:
        """
        RUNNING -> FAILED, or PENDING -> FAILED for configuration errors.

        Args:
            error: Exception or message describing the failure
            kind: Failure classification
        """
        if self.status == JobStatus.PENDING and kind != ErrorKind.CONFIGURATION:
            raise InvalidTransitionError(
                self.job_id, self.status.value, JobStatus.FAILED.value
            )
        now = now or utcnow()
        self._transition(JobStatus.FAILED, now)
        self.completed_at = now
        self.error = str(error) or type(error).__name__
        self.error_kind = kind

    def retry(self, delay: float, now: Optional[datetime] = None) -> None:
        """
        FAILED -> RETRYING. Pushes scheduled_at past the failure time.

        Args:
            delay: Backoff in seconds, must be positive
        """
        if not self.can_retry():
            raise InvalidOperationError(
                f"Job {self.job_id} cannot be retried "
                f"(retry_count={self.retry_count}, max_retries={self.max_retries}, "
                f"error_kind={self.error_kind.value if self.error_kind else None})"
            )
        if delay <= 0:
            raise InvalidOperationError(f"Retry delay must be positive, got {delay}")
        now = now or utcnow()
        self._transition(JobStatus.RETRYING, now)
        self.retry_count += 1
        self.scheduled_at = now + timedelta(seconds=delay)

    def requeue(self, now: Optional[datetime] = None) -> None:
        """RETRYING -> PENDING once the backoff has elapsed."""
        self._transition(JobStatus.PENDING, now or utcnow())

    def cancel(self, now: Optional[datetime] = None) -> None:
        """PENDING/RUNNING/RETRYING -> CANCELLED. Does not interrupt a running handler."""
        now = now or utcnow()
        self._transition(JobStatus.CANCELLED, now)
        self.completed_at = now

    # =========================================================================
    # Queries
    # =========================================================================

    def can_retry(self) -> bool:
        """Check whether a failed job still has retry budget."""
        return (
            self.status == JobStatus.FAILED
            and self.error_kind != ErrorKind.CONFIGURATION
            and self.retry_count < self.max_retries
        )

    def is_terminal(self) -> bool:
        """Check if job is in a terminal state."""
        if self.status in (JobStatus.COMPLETED, JobStatus.CANCELLED):
            return True
        return self.status == JobStatus.FAILED and not self.can_retry()

    def is_eligible(self, now: datetime) -> bool:
        """A job is eligible for dispatch when PENDING and due."""
        return self.status == JobStatus.PENDING and self.scheduled_at <= now

    def duration(self, now: Optional[datetime] = None) -> float:
        """Execution time in seconds of the latest attempt."""
        if self.started_at is None:
            return 0.0
        end = self.completed_at or now or utcnow()
        return (end - self.started_at).total_seconds()

    # =========================================================================
    # Serialization
    # =========================================================================

    def status_fields(self) -> dict:
        """Fields that change across transitions, in store form."""
        return {
            "status": self.status.value,
            "scheduled_at": _to_iso(self.scheduled_at),
            "started_at": _to_iso(self.started_at),
            "completed_at": _to_iso(self.completed_at),
            "attempts": self.attempts,
            "retry_count": self.retry_count,
            "result": self.result,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "updated_at": _to_iso(self.updated_at),
        }

    def to_dict(self) -> dict:
        """JSON-friendly snapshot of the job."""
        data = {
            "job_id": self.job_id,
            "name": self.name,
            "job_type": self.job_type,
            "priority": int(self.priority),
            "payload": self.payload,
            "metadata": self.metadata,
            "max_retries": self.max_retries,
            "timeout": self.timeout,
            "created_at": _to_iso(self.created_at),
        }
        data.update(self.status_fields())
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Job":
        """Rebuild a Job from a to_dict() snapshot or a store row."""
        error_kind = data.get("error_kind")
        return cls(
            job_id=data["job_id"],
            name=data["name"],
            job_type=data["job_type"],
            priority=int(data.get("priority", JobPriority.NORMAL)),
            status=JobStatus(data.get("status", JobStatus.PENDING.value)),
            payload=data.get("payload") or {},
            metadata=data.get("metadata") or {},
            scheduled_at=_from_iso(data.get("scheduled_at")) or utcnow(),
            started_at=_from_iso(data.get("started_at")),
            completed_at=_from_iso(data.get("completed_at")),
            attempts=int(data.get("attempts") or 0),
            retry_count=int(data.get("retry_count") or 0),
            max_retries=int(data.get("max_retries", 3)),
            timeout=float(data.get("timeout", 300.0)),
            result=data.get("result"),
            error=data.get("error"),
            error_kind=ErrorKind(error_kind) if error_kind else None,
            created_at=_from_iso(data.get("created_at")) or utcnow(),
            updated_at=_from_iso(data.get("updated_at")) or utcnow(),
        )

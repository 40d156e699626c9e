"""
Queue Manager for Job Scheduler.

- Maintains the ordered queue of eligible PENDING jobs
- Holds not-yet-due jobs (initial delay or retry backoff) separately
- Provides insertion, removal and priority-ordered pop

What QueueManager MUST NOT do:
- Execute jobs (Dispatcher's responsibility)
- Change job status (Dispatcher's responsibility)
- Persist anything

Ordering: priority DESC, then insertion order among equal priorities.
Insertion finds the first entry with strictly lower priority and inserts
immediately before it.
"""

from datetime import datetime
from typing import Iterator, Optional

from .entities import Job


class QueueManager:
    """In-memory priority queue owned by a single Dispatcher."""

    def __init__(self):
        self._ready: list[Job] = []
        self._delayed: list[Job] = []

    # =========================================================================
    # Insertion
    # =========================================================================

    def enqueue(self, job: Job, now: datetime) -> bool:
        """
        Add a job to the queue.

        Jobs whose scheduled_at is still in the future are held aside until
        take_due() releases them.

        Returns:
            True if the job went straight into the ready queue
        """
        if job.scheduled_at > now:
            self._delayed.append(job)
            return False
        self._insert(job)
        return True

    def _insert(self, job: Job) -> None:
        for index, queued in enumerate(self._ready):
            if queued.priority < job.priority:
                self._ready.insert(index, job)
                return
        self._ready.append(job)

    def hold(self, job: Job) -> None:
        """Park a job with the delayed jobs regardless of scheduled_at."""
        self._delayed.append(job)

    def push_ready(self, job: Job) -> None:
        """Insert a job into the ready queue regardless of scheduled_at."""
        self._insert(job)

    # =========================================================================
    # Retrieval
    # =========================================================================

    def take_due(self, now: datetime) -> list[Job]:
        """
        Remove and return delayed jobs whose scheduled_at has elapsed.

        Returned in scheduled_at order (stable for ties). The caller is
        expected to push them back with push_ready().
        """
        due = [job for job in self._delayed if job.scheduled_at <= now]
        if not due:
            return []
        self._delayed = [job for job in self._delayed if job.scheduled_at > now]
        due.sort(key=lambda job: job.scheduled_at)
        return due

    def pop(self) -> Optional[Job]:
        """Remove and return the highest-priority ready job."""
        if not self._ready:
            return None
        return self._ready.pop(0)

    def peek(self) -> Optional[Job]:
        """Return the next ready job without removing it."""
        return self._ready[0] if self._ready else None

    def next_due_at(self) -> Optional[datetime]:
        """Earliest scheduled_at among delayed jobs."""
        if not self._delayed:
            return None
        return min(job.scheduled_at for job in self._delayed)

    # =========================================================================
    # Removal
    # =========================================================================

    def remove(self, job_id: str) -> Optional[Job]:
        """Remove a job from either list. Returns the removed job, if any."""
        for bucket in (self._ready, self._delayed):
            for index, job in enumerate(bucket):
                if job.job_id == job_id:
                    return bucket.pop(index)
        return None

    def clear(self) -> None:
        self._ready.clear()
        self._delayed.clear()

    # =========================================================================
    # Introspection
    # =========================================================================

    def __len__(self) -> int:
        return len(self._ready)

    def __contains__(self, job_id: str) -> bool:
        return any(job.job_id == job_id for job in self._ready) or any(
            job.job_id == job_id for job in self._delayed
        )

    def __iter__(self) -> Iterator[Job]:
        return iter(list(self._ready))

    @property
    def delayed_count(self) -> int:
        return len(self._delayed)

    def list_ready(self) -> list[Job]:
        """Ready jobs in dispatch order."""
        return list(self._ready)

    def list_delayed(self) -> list[Job]:
        return list(self._delayed)

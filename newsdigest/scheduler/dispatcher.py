"""
Dispatcher for Job Scheduler.

- Accepts submissions and records them in the store and the queue
- Polls the queue on a fixed tick and starts eligible jobs while under the
  concurrency cap
- Races each handler, run as its own asyncio task, against its timeout
- Applies the RetryController's decision to failed jobs
- Mirrors every state transition to the JobStore (best effort)

What Dispatcher MUST NOT do:
- Let a handler failure escape the polling loop
- Preempt a running job to honor priority
- Forcibly interrupt a handler on cancel (cancellation is cooperative)

Queue and in-flight bookkeeping are owned by the instance; the polling loop
and the per-job tasks are the only writers, all on one event loop.
"""

import asyncio
import inspect
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import ValidationError

from .entities import ErrorKind, Job, JobStatus, utcnow
from .errors import (
    HandlerNotFoundError,
    InvalidOperationError,
    JobNotFoundError,
    JobTimeoutError,
    JobValidationError,
)
from .persistence import JobStore
from .queue_manager import QueueManager
from .registry import HandlerRegistry, JobHandler
from .retry_controller import RetryController
from .schemas import JobSpec


logger = logging.getLogger(__name__)


DEFAULT_MAX_CONCURRENCY = 10
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_JOB_TIMEOUT = 300.0


class DispatcherState(str, Enum):
    """Dispatcher lifecycle states."""

    STOPPED = "STOPPED"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"


class JobEvent(str, Enum):
    """Lifecycle events published to listeners."""

    ADDED = "added"
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    CANCELLED = "cancelled"


JobListener = Callable[[JobEvent, Job], Any]


class Dispatcher:
    """
    Pulls eligible jobs from the queue and runs them under a concurrency cap.

    Key behaviors:
    1. Release delayed jobs whose scheduled_at has elapsed
    2. While occupied slots < max_concurrency, pop the highest-priority job
    3. Unregistered job type -> FAILED (configuration), never RUNNING
    4. Otherwise RUNNING, and the handler races its timeout in a new task
    5. On failure, retry with backoff or leave FAILED as terminal

    A slot is held by the execution task until the handler settles or the
    timeout elapses, whichever comes first, even if the job was cancelled
    meanwhile. At the deadline the handler is cancelled but not awaited; the
    job fails right away and its slot is released, while the abandoned
    handler unwinds in the background.
    """

    def __init__(
        self,
        store: JobStore,
        registry: HandlerRegistry,
        retry_controller: Optional[RetryController] = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        default_max_retries: int = DEFAULT_MAX_RETRIES,
        timeout_for: Optional[Callable[[str], float]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize Dispatcher.

        Args:
            store: JobStore that mirrors state transitions
            registry: HandlerRegistry resolving job types
            retry_controller: Retry policy (defaults to standard backoff)
            max_concurrency: Hard ceiling on simultaneously executing jobs
            poll_interval: Seconds between queue polls
            default_max_retries: Retry cap when a submission omits one
            timeout_for: Default timeout lookup by job type
            clock: Source of "now" (injectable for tests)
        """
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")

        self.store = store
        self.registry = registry
        self.retry_controller = retry_controller or RetryController()
        self.max_concurrency = max_concurrency
        self.poll_interval = poll_interval
        self.default_max_retries = default_max_retries
        self._timeout_for = timeout_for or (lambda job_type: DEFAULT_JOB_TIMEOUT)
        self._clock = clock

        self._queue = QueueManager()
        self._jobs: dict[str, Job] = {}
        self._in_flight: dict[str, Job] = {}
        self._tasks: set[asyncio.Task] = set()
        self._listener_tasks: set[asyncio.Task] = set()
        self._abandoned: dict[asyncio.Task, str] = {}
        self._listeners: list[JobListener] = []

        self._state = DispatcherState.STOPPED
        self._loop_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def state(self) -> DispatcherState:
        """Get current dispatcher state."""
        return self._state

    def is_running(self) -> bool:
        return self._state == DispatcherState.RUNNING

    # =========================================================================
    # Listeners
    # =========================================================================

    def add_listener(self, listener: JobListener) -> None:
        """
        Subscribe to job lifecycle events.

        Listeners may be plain or async callables. Their errors are logged
        and never affect job execution.
        """
        self._listeners.append(listener)

    def remove_listener(self, listener: JobListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: JobEvent, job: Job) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(event, job)
                if inspect.isawaitable(outcome):
                    task = asyncio.ensure_future(outcome)
                    self._listener_tasks.add(task)
                    task.add_done_callback(self._on_listener_done)
            except Exception as e:
                logger.error(f"Error in job listener for {event.value} ({job.job_id}): {e}")

    def _on_listener_done(self, task: asyncio.Task) -> None:
        self._listener_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Error in async job listener: {task.exception()}")

    # =========================================================================
    # Submission
    # =========================================================================

    async def submit(self, spec: JobSpec | dict | None = None, **fields: Any) -> Job:
        """
        Validate, persist and enqueue a new job.

        Args:
            spec: JobSpec or dict; keyword fields override it

        Returns:
            The created Job (PENDING)

        Raises:
            JobValidationError: If the submission is invalid or the store write fails
        """
        spec = self._validate(spec, fields)
        now = self._clock()

        job = Job.create(
            name=spec.name,
            job_type=spec.type,
            priority=spec.priority,
            payload=spec.payload,
            metadata=spec.metadata,
            scheduled_at=spec.scheduled_at,
            max_retries=(
                spec.max_retries
                if spec.max_retries is not None
                else self.default_max_retries
            ),
            timeout=spec.timeout or self._timeout_for(spec.type),
            now=now,
        )

        try:
            await self.store.create(job)
        except Exception as e:
            logger.error(f"Failed to persist new job {job.job_id} ({job.job_type}): {e}")
            raise JobValidationError(f"Failed to persist job {job.name}: {e}") from e

        self._jobs[job.job_id] = job
        self._queue.enqueue(job, now)

        logger.info(
            f"Job added: {job.name} ({job.job_id}, type={job.job_type}, "
            f"priority={job.priority})"
        )
        self._emit(JobEvent.ADDED, job)
        return job

    @staticmethod
    def _validate(spec: JobSpec | dict | None, fields: dict) -> JobSpec:
        if isinstance(spec, JobSpec):
            data = spec.model_dump()
        else:
            data = dict(spec or {})
        data.update(fields)
        try:
            return JobSpec.model_validate(data)
        except ValidationError as e:
            raise JobValidationError(
                f"Invalid job submission: {e.error_count()} error(s)",
                errors=e.errors(),
            ) from e

    def adopt(self, job: Job) -> None:
        """
        Take ownership of a job loaded from the store (startup recovery).

        The job must be PENDING or RETRYING; it is queued without a new
        store record.
        """
        if job.status not in (JobStatus.PENDING, JobStatus.RETRYING):
            raise InvalidOperationError(
                f"Cannot adopt job {job.job_id} in {job.status.value} status"
            )
        if job.job_id in self._jobs:
            return
        self._jobs[job.job_id] = job
        if job.status == JobStatus.RETRYING:
            # requeue() happens in _release_due, even if the backoff already elapsed
            self._queue.hold(job)
        else:
            self._queue.enqueue(job, self._clock())

    # =========================================================================
    # Cancellation
    # =========================================================================

    async def cancel(self, job_id: str) -> Job:
        """
        Cancel a pending, retrying or running job.

        A running handler is NOT interrupted; its eventual outcome is
        discarded and its slot is released when it settles or times out.

        Raises:
            JobNotFoundError: If the job is unknown
            InvalidOperationError: If the job is already terminal
        """
        job = self._jobs.get(job_id)
        if job is None:
            return await self._cancel_detached(job_id)

        was_running = job.status == JobStatus.RUNNING
        job.cancel(self._clock())
        self._queue.remove(job_id)
        self._in_flight.pop(job_id, None)
        self._jobs.pop(job_id, None)

        await self._persist(job)
        logger.info(
            f"Job cancelled: {job.name} ({job.job_id})"
            + (" - handler left to finish in background" if was_running else "")
        )
        self._emit(JobEvent.CANCELLED, job)
        return job

    async def _cancel_detached(self, job_id: str) -> Job:
        # Known only to the store, e.g. left behind by another process
        try:
            job = await self.store.find(job_id)
        except Exception as e:
            logger.error(f"Failed to look up job {job_id} for cancel: {e}")
            job = None
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status in (JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED):
            raise InvalidOperationError(
                f"Job {job_id} is already {job.status.value} and cannot be cancelled"
            )
        job.cancel(self._clock())
        await self._persist(job)
        logger.info(f"Job cancelled in store: {job.name} ({job.job_id})")
        self._emit(JobEvent.CANCELLED, job)
        return job

    # =========================================================================
    # Single Poll
    # =========================================================================

    async def poll_once(self) -> list[Job]:
        """
        Run one polling tick.

        Starts as many eligible jobs as free slots allow and returns them
        (already RUNNING) without waiting for their handlers.
        """
        now = self._clock()
        await self._release_due(now)

        started = []
        while len(self._tasks) < self.max_concurrency:
            job = self._queue.pop()
            if job is None:
                break
            if job.status != JobStatus.PENDING:
                logger.debug(f"Skipping job {job.job_id} in {job.status.value} status")
                continue

            handler = self.registry.get(job.job_type)
            if handler is None:
                await self._fail_unregistered(job)
                continue

            job.start(now)
            self._in_flight[job.job_id] = job
            task = asyncio.create_task(
                self._execute(job, handler),
                name=f"job-{job.job_type}-{job.job_id}",
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started.append(job)

        if started:
            logger.debug(
                f"Dispatched {len(started)} job(s); "
                f"{len(self._tasks)}/{self.max_concurrency} slots in use, "
                f"{len(self._queue)} queued"
            )
        return started

    async def _release_due(self, now: datetime) -> None:
        for job in self._queue.take_due(now):
            if job.status == JobStatus.RETRYING:
                job.requeue(now)
                await self._persist(job)
            self._queue.push_ready(job)

    async def _fail_unregistered(self, job: Job) -> None:
        error = HandlerNotFoundError(job.job_type)
        job.fail(error, ErrorKind.CONFIGURATION, self._clock())
        self._jobs.pop(job.job_id, None)
        logger.error(f"Job {job.name} ({job.job_id}) failed: {error}")
        await self._persist(job)
        self._emit(JobEvent.FAILED, job)

    # =========================================================================
    # Execution
    # =========================================================================

    async def _execute(self, job: Job, handler: JobHandler) -> None:
        """Run one attempt. Never raises."""
        try:
            await self._persist(job)
            logger.info(
                f"Starting job: {job.name} ({job.job_id}, "
                f"attempt {job.attempts}, timeout={job.timeout}s)"
            )
            self._emit(JobEvent.STARTED, job)

            handler_task = asyncio.create_task(
                handler.execute(job), name=f"handler-{job.job_type}-{job.job_id}"
            )
            try:
                done, _ = await asyncio.wait({handler_task}, timeout=job.timeout)
            except asyncio.CancelledError:
                handler_task.cancel()
                raise

            if not done:
                # The deadline wins; the handler is not awaited
                self._abandon(job, handler_task)
                await self._on_failure(job, JobTimeoutError(job.job_id, job.timeout), ErrorKind.TIMEOUT)
            elif handler_task.cancelled():
                await self._on_failure(job, RuntimeError("Handler was cancelled"), ErrorKind.EXECUTION)
            elif handler_task.exception() is not None:
                await self._on_failure(job, handler_task.exception(), ErrorKind.EXECUTION)
            else:
                await self._on_success(job, handler_task.result())

        except asyncio.CancelledError:
            logger.warning(f"Execution task for job {job.job_id} was cancelled")
            raise
        except Exception as e:
            logger.error(f"Unexpected error executing job {job.job_id}: {e}", exc_info=True)
        finally:
            self._in_flight.pop(job.job_id, None)

    def _abandon(self, job: Job, handler_task: asyncio.Task) -> None:
        handler_task.cancel()
        self._abandoned[handler_task] = job.job_id
        handler_task.add_done_callback(self._on_abandoned_done)
        logger.warning(
            f"Job {job.job_id} exceeded its {job.timeout}s timeout; "
            f"handler cancelled and left to unwind"
        )

    def _on_abandoned_done(self, task: asyncio.Task) -> None:
        job_id = self._abandoned.pop(task, None)
        if task.cancelled():
            logger.debug(f"Timed-out handler for job {job_id} stopped")
        elif task.exception() is not None:
            logger.warning(f"Timed-out handler for job {job_id} raised: {task.exception()}")
        else:
            logger.warning(f"Timed-out handler for job {job_id} returned late; result discarded")

    async def _on_success(self, job: Job, result: Any) -> None:
        if job.status != JobStatus.RUNNING:
            logger.info(
                f"Job {job.job_id} finished after being {job.status.value}; result discarded"
            )
            return

        job.complete(result, self._clock())
        self._jobs.pop(job.job_id, None)
        logger.info(
            f"Job completed: {job.name} ({job.job_id}, "
            f"duration={job.duration():.3f}s, attempts={job.attempts})"
        )
        await self._persist(job)
        self._emit(JobEvent.COMPLETED, job)

    async def _on_failure(self, job: Job, error: Exception, kind: ErrorKind) -> None:
        if job.status != JobStatus.RUNNING:
            logger.info(
                f"Job {job.job_id} failed after being {job.status.value}; error discarded: {error}"
            )
            return

        now = self._clock()
        job.fail(error, kind, now)
        logger.error(
            f"Job failed: {job.name} ({job.job_id}, attempt {job.attempts}, "
            f"kind={kind.value}): {job.error}"
        )

        decision = self.retry_controller.evaluate(job)
        if not decision.should_retry:
            self._jobs.pop(job.job_id, None)
            logger.warning(f"Job {job.job_id} will not be retried: {decision.reason}")
            await self._persist(job)
            self._emit(JobEvent.FAILED, job)
            return

        self._emit(JobEvent.FAILED, job)
        # Single store write: FAILED is never persisted while retry budget remains
        job.retry(decision.delay, now)
        self._queue.enqueue(job, now)
        logger.info(
            f"Job rescheduled: {job.name} ({job.job_id}, "
            f"retry {job.retry_count}/{job.max_retries} in {decision.delay}s)"
        )
        await self._persist(job)
        self._emit(JobEvent.RETRYING, job)

    async def _persist(self, job: Job) -> bool:
        """Best-effort mirror of the job's state to the store."""
        try:
            await self.store.update_status(job.job_id, job.status_fields())
            return True
        except Exception as e:
            logger.error(
                f"Failed to persist job {job.job_id} ({job.status.value}): {e}"
            )
            return False

    # =========================================================================
    # Polling Loop
    # =========================================================================

    async def start(self) -> None:
        """Start the polling loop as a background task on the running loop."""
        if self._state != DispatcherState.STOPPED:
            raise RuntimeError(f"Cannot start dispatcher in {self._state.value} state")

        self._stop_event = asyncio.Event()
        self._state = DispatcherState.RUNNING
        self._loop_task = asyncio.create_task(self._poll_loop(), name="dispatcher-poll-loop")

    async def stop(self, timeout: Optional[float] = None) -> int:
        """
        Stop polling, then wait up to timeout for in-flight jobs.

        Jobs still running after the wait are left to finish in the
        background.

        Returns:
            Number of jobs still executing
        """
        if self._state == DispatcherState.STOPPED:
            return len(self._tasks)

        logger.info("Stopping dispatcher...")
        self._state = DispatcherState.STOPPING
        if self._stop_event is not None:
            self._stop_event.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None

        outstanding = await self.wait_for_idle(timeout)
        if outstanding:
            logger.warning(
                f"{outstanding} job(s) still running after stop wait: "
                f"{', '.join(sorted(self._in_flight))}"
            )
        if self._abandoned:
            logger.warning(
                f"{len(self._abandoned)} timed-out handler(s) still unwinding: "
                f"{', '.join(sorted(self._abandoned.values()))}"
            )

        self._state = DispatcherState.STOPPED
        logger.info("Dispatcher stopped")
        return outstanding

    async def wait_for_idle(self, timeout: Optional[float] = None) -> int:
        """
        Wait for in-flight execution tasks to settle.

        Returns:
            Number of tasks still pending when the wait ended
        """
        if not self._tasks:
            return 0
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        return len(pending)

    async def _poll_loop(self) -> None:
        """Main polling loop."""
        logger.info(
            f"Dispatcher loop started (max_concurrency={self.max_concurrency}, "
            f"poll_interval={self.poll_interval}s)"
        )

        while not self._stop_event.is_set():
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"Error in dispatch loop: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Dispatcher loop ended")

    # =========================================================================
    # Introspection
    # =========================================================================

    def get_job(self, job_id: str) -> Optional[Job]:
        """Live (non-terminal) job owned by this dispatcher, if any."""
        return self._jobs.get(job_id)

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def delayed_count(self) -> int:
        return self._queue.delayed_count

    @property
    def in_flight_count(self) -> int:
        """Occupied concurrency slots."""
        return len(self._tasks)

    @property
    def abandoned_count(self) -> int:
        """Timed-out handlers that have not finished unwinding."""
        return len(self._abandoned)

    def running_jobs(self) -> list[Job]:
        return list(self._in_flight.values())

    def queued_jobs(self) -> list[Job]:
        """Ready jobs in dispatch order."""
        return self._queue.list_ready()

    def delayed_jobs(self) -> list[Job]:
        return self._queue.list_delayed()

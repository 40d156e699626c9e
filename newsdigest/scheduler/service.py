"""
Scheduler Service - Main entry point for the Job Scheduler.

This service orchestrates all scheduler components:
- JobStore (durable job records)
- HandlerRegistry (job type -> handler)
- Dispatcher (queue, concurrency cap, timeouts, retries)
- CronTriggerSet (recurring submissions)
- RecoveryManager (startup reconciliation)

Usage:
    service = SchedulerService.create(settings, handlers=[RssCheckHandler()])
    await service.start()
    job = await service.submit(name="Morning digest", type="email_send")
    ...
    await service.stop()
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from .config import SchedulerSettings
from .dispatcher import Dispatcher, JobListener
from .entities import Job, JobStatus, utcnow
from .errors import HandlerRegistrationError
from .persistence import InMemoryJobStore, JobStore
from .recovery import RecoveryManager
from .registry import FunctionHandler, HandlerFunc, HandlerRegistry, JobHandler
from .retry_controller import RetryController
from .schemas import JobSpec
from .triggers import CronTriggerSet, ScheduleResolver


logger = logging.getLogger(__name__)


class SchedulerService:
    """
    Public lifecycle API composing all scheduler components.

    Provides:
    - Component initialization and wiring
    - Idempotent start (with reconciliation) and bounded graceful stop
    - submit / cancel / status / statistics for callers such as REST handlers
    - runtime schedule management (list, run now, enable, disable)
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        triggers: CronTriggerSet,
        handlers: Iterable[JobHandler] = (),
        recovery_manager: Optional[RecoveryManager] = None,
        shutdown_wait: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize SchedulerService with all components.

        Use SchedulerService.create() for convenient construction.
        """
        self.dispatcher = dispatcher
        self.registry = dispatcher.registry
        self.store = dispatcher.store
        self.triggers = triggers
        self.recovery_manager = recovery_manager
        self.shutdown_wait = shutdown_wait
        self._clock = clock

        self._handlers: dict[str, JobHandler] = {}
        for handler in handlers:
            self.register_handler(handler)

        self._running = False

    @classmethod
    def create(
        cls,
        settings: Optional[SchedulerSettings] = None,
        store: Optional[JobStore] = None,
        handlers: Iterable[JobHandler] = (),
        listeners: Iterable[JobListener] = (),
        resolver: Optional[ScheduleResolver] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "SchedulerService":
        """
        Create a SchedulerService with all components wired together.

        Args:
            settings: Scheduler configuration (defaults when omitted)
            store: JobStore (in-memory when omitted)
            handlers: Handlers registered on start()
            listeners: Job event listeners (e.g. WebhookNotifier)
            resolver: Cron resolver (croniter when omitted)
            clock: Source of "now"

        Returns:
            Configured SchedulerService
        """
        settings = settings or SchedulerSettings()
        store = store if store is not None else InMemoryJobStore()

        retry_controller = RetryController(
            initial_delay=settings.retry.initial_delay,
            multiplier=settings.retry.multiplier,
            max_delay=settings.retry.max_delay,
        )

        dispatcher = Dispatcher(
            store=store,
            registry=HandlerRegistry(),
            retry_controller=retry_controller,
            max_concurrency=settings.max_concurrency,
            poll_interval=settings.poll_interval,
            default_max_retries=settings.max_retries,
            timeout_for=settings.timeout_for,
            clock=clock,
        )
        for listener in listeners:
            dispatcher.add_listener(listener)

        triggers = CronTriggerSet(
            submit=dispatcher.submit,
            schedules=settings.schedule_definitions(),
            resolver=resolver,
            clock=clock,
        )

        recovery_manager = (
            RecoveryManager(dispatcher, clock=clock) if settings.recover_on_start else None
        )

        return cls(
            dispatcher=dispatcher,
            triggers=triggers,
            handlers=handlers,
            recovery_manager=recovery_manager,
            shutdown_wait=settings.shutdown_wait,
            clock=clock,
        )

    # =========================================================================
    # Handlers
    # =========================================================================

    def register_handler(self, handler: JobHandler) -> None:
        """
        Queue a handler for registration at start().

        Raises:
            HandlerRegistrationError: On duplicate type or after start
        """
        if self.registry.frozen:
            raise HandlerRegistrationError(
                f"Cannot register handler for {handler.job_type!r} after start"
            )
        if handler.job_type in self._handlers:
            raise HandlerRegistrationError(
                f"Handler already registered for job type: {handler.job_type}"
            )
        self._handlers[handler.job_type] = handler

    def handler(self, job_type: str) -> Callable[[HandlerFunc], HandlerFunc]:
        """
        Decorator registering an async function as a handler.

            @service.handler("rss_check")
            async def check_feeds(job): ...
        """

        def decorator(func: HandlerFunc) -> HandlerFunc:
            self.register_handler(FunctionHandler(job_type, func))
            return func

        return decorator

    def _register_handlers(self) -> None:
        if self.registry.frozen:
            return
        for handler in self._handlers.values():
            self.registry.register(handler)
        self.registry.freeze()
        logger.info(f"Registered {len(self.registry)} job handler(s): {', '.join(self.registry.job_types())}")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> dict:
        """
        Start the scheduler service.

        Registers handlers, reconciles the store, starts cron triggers and
        the dispatcher polling loop. A second call while running is a no-op.

        Returns:
            Recovery statistics if reconciliation ran
        """
        if self._running:
            logger.warning("Scheduler already running; start() ignored")
            return {}

        logger.info("Starting scheduler service...")

        self._register_handlers()

        recovery_stats: dict = {}
        if self.recovery_manager is not None:
            recovery_stats = await self.recovery_manager.recover_on_startup()

        self.triggers.start()
        await self.dispatcher.start()
        self._running = True

        logger.info(
            f"Scheduler service started ({len(self.triggers)} schedule(s), "
            f"max_concurrency={self.dispatcher.max_concurrency})"
        )
        return recovery_stats

    async def stop(self) -> int:
        """
        Stop the scheduler service gracefully.

        Stops cron triggers first, then waits up to shutdown_wait for
        in-flight jobs. A second call while stopped is a no-op.

        Returns:
            Number of jobs left running in the background
        """
        if not self._running:
            logger.warning("Scheduler is not running; stop() ignored")
            return 0

        logger.info("Stopping scheduler service...")
        await self.triggers.stop()
        outstanding = await self.dispatcher.stop(timeout=self.shutdown_wait)
        self._running = False
        logger.info("Scheduler service stopped")
        return outstanding

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._running and self.dispatcher.is_running()

    # =========================================================================
    # Job Operations (API-friendly)
    # =========================================================================

    async def submit(self, spec: JobSpec | dict | None = None, **fields: Any) -> Job:
        """
        Submit a new job for execution.

        Raises:
            JobValidationError: If the submission is invalid or cannot be stored
        """
        return await self.dispatcher.submit(spec, **fields)

    async def cancel(self, job_id: str) -> Job:
        """
        Cancel a job that has not reached a terminal state.

        Running handlers are not interrupted.

        Raises:
            JobNotFoundError: If job doesn't exist
            InvalidOperationError: If job is already terminal
        """
        return await self.dispatcher.cancel(job_id)

    async def get_status(self, job_id: str) -> Optional[Job]:
        """Current state of a job: live copy first, then the durable record."""
        job = self.dispatcher.get_job(job_id)
        if job is not None:
            return job
        try:
            return await self.store.find(job_id)
        except Exception as e:
            logger.error(f"Failed to load job status for {job_id}: {e}")
            return None

    async def list_jobs(self, status: JobStatus | str, limit: int = 100) -> list[Job]:
        """List durable job records in a status, oldest first."""
        return await self.store.list_by_status(JobStatus(status), limit=limit)

    # =========================================================================
    # Schedules
    # =========================================================================

    def list_schedules(self) -> list[dict]:
        """Configured schedules with timer state, next fire time and fire history."""
        return self.triggers.status()

    async def run_schedule_now(self, name: str) -> Job:
        """
        Submit a schedule's job immediately, outside its timer.

        Raises:
            ScheduleNotFoundError: If no schedule has this name
            JobValidationError: If the job cannot be stored
        """
        job = await self.triggers.fire_now(name)
        logger.info(f"Schedule {name} run manually: job {job.job_id}")
        return job

    def enable_schedule(self, name: str) -> bool:
        """
        Enable a schedule. While the service runs its timer starts right away.

        Returns:
            True if the schedule's timer is running afterwards

        Raises:
            ScheduleNotFoundError: If no schedule has this name
        """
        return self.triggers.enable(name)

    async def disable_schedule(self, name: str) -> bool:
        """
        Disable a schedule and stop its timer until re-enabled.

        Returns:
            True if a running timer was stopped

        Raises:
            ScheduleNotFoundError: If no schedule has this name
        """
        return await self.triggers.disable(name)

    # =========================================================================
    # Queue Status
    # =========================================================================

    def get_queue_status(self) -> dict:
        """Read-only snapshot of the scheduler's in-memory state."""
        return {
            "queue_length": self.dispatcher.queue_length,
            "delayed": self.dispatcher.delayed_count,
            "in_flight": self.dispatcher.in_flight_count,
            "running_jobs": len(self.dispatcher.running_jobs()),
            "max_concurrency": self.dispatcher.max_concurrency,
            "running": self.is_running,
            "registered_handlers": len(self.registry) or len(self._handlers),
            "active_triggers": len(self.triggers),
        }

    async def get_statistics(self, timeframe: Optional[timedelta] = None) -> dict:
        """
        Historical job counts from the store.

        Args:
            timeframe: Only count jobs created within this window (all when None)

        Returns:
            Dict with total, today, by_status, success_rate and queue_status
        """
        now = self._clock()
        since = now - timeframe if timeframe is not None else None
        today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

        by_status = {status.value: 0 for status in JobStatus}
        today = 0
        try:
            for status in JobStatus:
                jobs = await self.store.list_by_status(status, since=since)
                by_status[status.value] = len(jobs)
                today += sum(1 for job in jobs if job.created_at >= today_start)
        except Exception as e:
            logger.error(f"Failed to collect scheduler statistics: {e}")
            by_status = {status.value: 0 for status in JobStatus}
            today = 0

        total = sum(by_status.values())
        completed = by_status[JobStatus.COMPLETED.value]
        success_rate = (completed / total) * 100 if total else 0.0

        return {
            "timeframe_seconds": timeframe.total_seconds() if timeframe is not None else None,
            "total": total,
            "today": today,
            "by_status": by_status,
            "success_rate": round(success_rate, 2),
            "queue_status": self.get_queue_status(),
        }

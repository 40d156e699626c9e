"""
Recovery Manager for Job Scheduler.

Reconciles durable state with a freshly started Dispatcher:
- PENDING / RETRYING records are adopted back into the queue
- RUNNING records were interrupted by a crash or restart; they are failed
  and retried under the normal policy
- FAILED records that still have retry budget never got their retry
  scheduled; they are rescheduled

Execution is at-least-once across restarts: a handler that was interrupted
mid-flight may run again. Recovery is idempotent for jobs the Dispatcher
already owns.
"""

import logging
from datetime import datetime
from typing import Callable

from .dispatcher import Dispatcher
from .entities import ErrorKind, Job, JobStatus, utcnow


logger = logging.getLogger(__name__)


INTERRUPTED_ERROR = "Interrupted by scheduler restart"


class RecoveryManager:
    """Handles startup reconciliation of the job store."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize RecoveryManager.

        Args:
            dispatcher: Dispatcher that takes ownership of recovered jobs
            clock: Source of "now"
        """
        self.dispatcher = dispatcher
        self.store = dispatcher.store
        self._clock = clock

    async def recover_on_startup(self) -> dict:
        """
        Perform full recovery before the polling loop starts.

        Returns:
            Recovery statistics
        """
        stats = {
            "running_jobs_recovered": 0,
            "running_jobs_failed": 0,
            "pending_jobs_restored": 0,
            "failed_jobs_rescheduled": 0,
            "errors": [],
        }

        logger.info("Starting job store reconciliation...")

        try:
            retried, failed = await self._recover_running_jobs()
            stats["running_jobs_recovered"] = retried
            stats["running_jobs_failed"] = failed
        except Exception as e:
            logger.error(f"Error recovering RUNNING jobs: {e}")
            stats["errors"].append(f"Running jobs: {e}")

        try:
            stats["failed_jobs_rescheduled"] = await self._reschedule_stranded_failures()
        except Exception as e:
            logger.error(f"Error rescheduling FAILED jobs: {e}")
            stats["errors"].append(f"Failed jobs: {e}")

        for status in (JobStatus.PENDING, JobStatus.RETRYING):
            try:
                stats["pending_jobs_restored"] += await self._restore(status)
            except Exception as e:
                logger.error(f"Error restoring {status.value} jobs: {e}")
                stats["errors"].append(f"{status.value} jobs: {e}")

        logger.info(
            f"Recovery complete: "
            f"{stats['running_jobs_recovered']} interrupted jobs rescheduled, "
            f"{stats['running_jobs_failed']} interrupted jobs failed, "
            f"{stats['failed_jobs_rescheduled']} failed jobs rescheduled, "
            f"{stats['pending_jobs_restored']} queued jobs restored"
        )
        return stats

    async def _restore(self, status: JobStatus) -> int:
        restored = 0
        for job in await self.store.list_by_status(status):
            if self.dispatcher.get_job(job.job_id) is not None:
                continue
            self.dispatcher.adopt(job)
            restored += 1
        return restored

    async def _recover_running_jobs(self) -> tuple[int, int]:
        """
        Fail RUNNING records left by a previous process.

        Returns:
            (rescheduled count, terminally failed count)
        """
        rescheduled = 0
        failed = 0

        for job in await self.store.list_by_status(JobStatus.RUNNING):
            if self.dispatcher.get_job(job.job_id) is not None:
                continue

            now = self._clock()
            job.fail(INTERRUPTED_ERROR, ErrorKind.EXECUTION, now)
            decision = self.dispatcher.retry_controller.evaluate(job)

            if decision.should_retry:
                job.retry(decision.delay, now)
                await self._persist(job)
                self.dispatcher.adopt(job)
                rescheduled += 1
                logger.info(
                    f"Recovered interrupted job {job.job_id} ({job.job_type}); "
                    f"retry {job.retry_count}/{job.max_retries} in {decision.delay}s"
                )
            else:
                await self._persist(job)
                failed += 1
                logger.warning(
                    f"Interrupted job {job.job_id} ({job.job_type}) marked failed: "
                    f"{decision.reason}"
                )

        return rescheduled, failed

    async def _reschedule_stranded_failures(self) -> int:
        """Schedule the retry of FAILED records that still have budget left."""
        rescheduled = 0
        for job in await self.store.list_by_status(JobStatus.FAILED):
            if self.dispatcher.get_job(job.job_id) is not None:
                continue
            decision = self.dispatcher.retry_controller.evaluate(job)
            if not decision.should_retry:
                continue

            job.retry(decision.delay, self._clock())
            await self._persist(job)
            self.dispatcher.adopt(job)
            rescheduled += 1
            logger.info(
                f"Rescheduled failed job {job.job_id} ({job.job_type}); "
                f"retry {job.retry_count}/{job.max_retries} in {decision.delay}s"
            )
        return rescheduled

    async def _persist(self, job: Job) -> bool:
        try:
            await self.store.update_status(job.job_id, job.status_fields())
            return True
        except Exception as e:
            logger.error(f"Failed to persist recovered job {job.job_id}: {e}")
            return False

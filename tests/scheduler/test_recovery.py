"""
Startup Reconciliation Tests.

- PENDING / RETRYING records are adopted into the queue
- RUNNING records left by a dead process are failed and retried
- FAILED records with retry budget left get their retry scheduled
"""

import pytest

from newsdigest.scheduler import ErrorKind, JobStatus, JobStoreError, RecoveryManager
from newsdigest.scheduler.recovery import INTERRUPTED_ERROR

from .conftest import ScriptedHandler


@pytest.fixture
def recovery_manager(dispatcher, mock_clock) -> RecoveryManager:
    return RecoveryManager(dispatcher, clock=mock_clock.now)


class TestRestoreQueued:

    @pytest.mark.asyncio
    async def test_pending_and_retrying_are_adopted(self, recovery_manager, dispatcher, store, make_job):
        pending = make_job(name="pending")
        retrying = make_job(name="retrying", status=JobStatus.RETRYING)
        done = make_job(name="done", status=JobStatus.COMPLETED)
        for job in (pending, retrying, done):
            await store.create(job)

        stats = await recovery_manager.recover_on_startup()

        assert stats["pending_jobs_restored"] == 2
        assert stats["errors"] == []
        assert dispatcher.get_job(pending.job_id) is not None
        assert dispatcher.get_job(retrying.job_id) is not None
        assert dispatcher.get_job(done.job_id) is None
        assert dispatcher.queue_length == 1
        assert dispatcher.delayed_count == 1

    @pytest.mark.asyncio
    async def test_recovery_is_idempotent(self, recovery_manager, dispatcher, store, make_job):
        await store.create(make_job())

        await recovery_manager.recover_on_startup()
        stats = await recovery_manager.recover_on_startup()

        assert stats["pending_jobs_restored"] == 0
        assert dispatcher.queue_length == 1

    @pytest.mark.asyncio
    async def test_restored_retry_runs_after_backoff(
        self, recovery_manager, dispatcher, registry, store, make_job, mock_clock
    ):
        handler = ScriptedHandler("rss_check")
        registry.register(handler)
        job = make_job(status=JobStatus.RETRYING)
        await store.create(job)
        await recovery_manager.recover_on_startup()

        await dispatcher.poll_once()
        assert handler.calls == []

        mock_clock.tick(5)
        await dispatcher.poll_once()
        await dispatcher.wait_for_idle()

        assert (await store.find(job.job_id)).status == JobStatus.COMPLETED


class TestInterruptedJobs:

    @pytest.mark.asyncio
    async def test_running_job_failed_and_rescheduled(self, recovery_manager, dispatcher, store, make_job):
        job = make_job(status=JobStatus.RUNNING)
        await store.create(job)

        stats = await recovery_manager.recover_on_startup()

        assert stats["running_jobs_recovered"] == 1
        stored = await store.find(job.job_id)
        assert stored.status == JobStatus.RETRYING
        assert stored.retry_count == 1
        assert stored.error == INTERRUPTED_ERROR
        assert stored.error_kind == ErrorKind.EXECUTION
        assert dispatcher.get_job(job.job_id).status == JobStatus.RETRYING

    @pytest.mark.asyncio
    async def test_running_job_without_budget_fails(self, recovery_manager, dispatcher, store, make_job):
        job = make_job(status=JobStatus.RUNNING, max_retries=0)
        await store.create(job)

        stats = await recovery_manager.recover_on_startup()

        assert stats["running_jobs_failed"] == 1
        assert (await store.find(job.job_id)).status == JobStatus.FAILED
        assert dispatcher.get_job(job.job_id) is None


class TestStrandedFailures:

    @pytest.mark.asyncio
    async def test_failed_job_with_budget_is_rescheduled(
        self, recovery_manager, dispatcher, registry, store, make_job, mock_clock
    ):
        handler = ScriptedHandler("rss_check")
        registry.register(handler)
        job = make_job(status=JobStatus.FAILED, max_retries=3)
        await store.create(job)

        stats = await recovery_manager.recover_on_startup()

        assert stats["failed_jobs_rescheduled"] == 1
        stored = await store.find(job.job_id)
        assert stored.status == JobStatus.RETRYING
        assert stored.retry_count == 1
        assert dispatcher.delayed_count == 1

        mock_clock.tick(5)
        await dispatcher.poll_once()
        await dispatcher.wait_for_idle()

        assert len(handler.calls) == 1
        assert (await store.find(job.job_id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_terminal_failures_left_alone(self, recovery_manager, dispatcher, store, make_job):
        exhausted = make_job(status=JobStatus.FAILED, max_retries=0)
        await store.create(exhausted)
        unconfigured = await dispatcher.submit(name="orphan", type="unknown_type")
        await dispatcher.poll_once()
        assert unconfigured.error_kind == ErrorKind.CONFIGURATION

        stats = await recovery_manager.recover_on_startup()

        assert stats["failed_jobs_rescheduled"] == 0
        assert (await store.find(exhausted.job_id)).status == JobStatus.FAILED
        assert (await store.find(unconfigured.job_id)).status == JobStatus.FAILED
        assert dispatcher.get_job(exhausted.job_id) is None
        assert dispatcher.get_job(unconfigured.job_id) is None


class TestStoreErrors:

    @pytest.mark.asyncio
    async def test_listing_failure_is_reported(self, recovery_manager, store, monkeypatch):
        async def broken(*args, **kwargs):
            raise JobStoreError("locked")

        monkeypatch.setattr(store, "list_by_status", broken)

        stats = await recovery_manager.recover_on_startup()

        assert len(stats["errors"]) == 4
        assert "locked" in stats["errors"][0]

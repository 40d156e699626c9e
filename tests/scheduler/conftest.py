"""
Scheduler Test Fixtures.

Base fixtures:
  - Empty job stores (in-memory and SQLite)
  - Mocked clock at fixed time
  - Handler registry and dispatcher wired to both

Helpers:
  - ScriptedHandler: replays a list of outcomes, one per attempt
  - BlockingHandler: holds its slot until released
  - EventRecorder: collects dispatcher events
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import pytest

from newsdigest.scheduler import (
    Dispatcher,
    HandlerRegistry,
    InMemoryJobStore,
    Job,
    JobHandler,
    JobStatus,
    RetryController,
    SQLiteJobStore,
)


FIXED_DATETIME = datetime(2026, 1, 1, 0, 0, 0, tzinfo=timezone.utc)


class MockClock:
    """
    Mock clock for deterministic time control.

    - Starts at fixed epoch
    - Advances only when explicitly ticked
    """

    def __init__(self, start_time: datetime = FIXED_DATETIME):
        self._current = start_time

    def now(self) -> datetime:
        return self._current

    def tick(self, seconds: float = 1) -> None:
        """Advance time by specified seconds."""
        self._current += timedelta(seconds=seconds)

    def set(self, time: datetime) -> None:
        """Set time to specific value."""
        self._current = time


class ScriptedHandler(JobHandler):
    """
    Handler whose outcome per attempt is scripted.

    Each outcome is either a value to return or an exception to raise.
    Once the script runs out, the last outcome repeats.
    """

    def __init__(self, job_type: str = "rss_check", outcomes: Optional[list] = None):
        self.job_type = job_type
        self.outcomes = list(outcomes) if outcomes else ["ok"]
        self.calls: list[Job] = []

    async def execute(self, job: Job) -> Any:
        self.calls.append(job)
        index = min(len(self.calls) - 1, len(self.outcomes) - 1)
        outcome = self.outcomes[index]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class BlockingHandler(JobHandler):
    """Handler that blocks until release() and tracks peak concurrency."""

    def __init__(self, job_type: str = "ai_analysis"):
        self.job_type = job_type
        self.release_event = asyncio.Event()
        self.active = 0
        self.peak = 0
        self.calls: list[Job] = []

    async def execute(self, job: Job) -> Any:
        self.calls.append(job)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await self.release_event.wait()
            return {"job": job.name}
        finally:
            self.active -= 1

    def release(self) -> None:
        self.release_event.set()


class EventRecorder:
    """Dispatcher listener collecting (event, job_id, status) tuples."""

    def __init__(self):
        self.events: list[tuple[str, str, str]] = []

    def __call__(self, event, job: Job) -> None:
        self.events.append((event.value, job.job_id, job.status.value))

    def names(self, job_id: Optional[str] = None) -> list[str]:
        return [e for e, jid, _ in self.events if job_id is None or jid == job_id]


class FastResolver:
    """Schedule resolver firing every `interval` seconds; "invalid" is rejected."""

    def __init__(self, interval: float = 0.02):
        self.interval = interval

    def is_valid(self, expression: str) -> bool:
        return expression != "invalid"

    def next_fire_time(self, expression: str, after: datetime) -> datetime:
        return after + timedelta(seconds=self.interval)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll predicate on the event loop until it holds or timeout elapses."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.01)


# =============================================================================
# Store Fixtures
# =============================================================================


@pytest.fixture
def store() -> InMemoryJobStore:
    """Create an empty in-memory job store."""
    return InMemoryJobStore()


@pytest.fixture
def sqlite_store(tmp_path) -> SQLiteJobStore:
    """Create a SQLite job store in a temporary directory."""
    return SQLiteJobStore(tmp_path / "jobs.sqlite")


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    """Each JobStore implementation in turn."""
    if request.param == "memory":
        return InMemoryJobStore()
    return SQLiteJobStore(tmp_path / "jobs.sqlite")


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def mock_clock() -> MockClock:
    """Create a mock clock at fixed time."""
    return MockClock()


@pytest.fixture
def registry() -> HandlerRegistry:
    return HandlerRegistry()


@pytest.fixture
def retry_controller() -> RetryController:
    return RetryController(initial_delay=5.0, multiplier=2.0, max_delay=300.0)


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def dispatcher(
    store: InMemoryJobStore,
    registry: HandlerRegistry,
    retry_controller: RetryController,
    mock_clock: MockClock,
    recorder: EventRecorder,
) -> Dispatcher:
    """Create a Dispatcher on the mock clock with fast polling."""
    disp = Dispatcher(
        store=store,
        registry=registry,
        retry_controller=retry_controller,
        max_concurrency=10,
        poll_interval=0.01,
        clock=mock_clock.now,
    )
    disp.add_listener(recorder)
    return disp


@pytest.fixture
def make_job(mock_clock: MockClock) -> Callable[..., Job]:
    """
    Factory fixture for Job objects in a given status.

    Jobs are built through the real transition methods.
    """

    def _make(
        job_type: str = "rss_check",
        name: str = "test job",
        status: JobStatus = JobStatus.PENDING,
        priority: int = 2,
        max_retries: int = 3,
        retry_count: int = 0,
        created_at: Optional[datetime] = None,
    ) -> Job:
        now = created_at or mock_clock.now()
        job = Job.create(
            name=name,
            job_type=job_type,
            priority=priority,
            max_retries=max_retries,
            now=now,
        )
        for _ in range(retry_count):
            job.start(now)
            job.fail("earlier failure", now=now)
            job.retry(5.0, now)
            job.requeue(now)
        if status == JobStatus.PENDING:
            return job
        if status == JobStatus.CANCELLED:
            job.cancel(now)
            return job
        job.start(now)
        if status == JobStatus.RUNNING:
            return job
        if status == JobStatus.COMPLETED:
            job.complete({"ok": True}, now)
            return job
        job.fail("boom", now=now)
        if status == JobStatus.RETRYING:
            job.retry(5.0, now)
        return job

    return _make

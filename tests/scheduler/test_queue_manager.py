"""
Priority Queue Tests.

Ordering: priority DESC, insertion order among equal priorities.
"""

from datetime import timedelta

from newsdigest.scheduler import Job, JobPriority, QueueManager


def _job(name, priority=JobPriority.NORMAL, scheduled_at=None, now=None):
    return Job.create(name=name, job_type="rss_check", priority=priority, scheduled_at=scheduled_at, now=now)


class TestOrdering:
    """pop() order."""

    def test_higher_priority_pops_first(self, mock_clock):
        queue = QueueManager()
        now = mock_clock.now()
        for name, priority in [
            ("low", JobPriority.LOW),
            ("normal", JobPriority.NORMAL),
            ("critical", JobPriority.CRITICAL),
            ("high", JobPriority.HIGH),
        ]:
            queue.enqueue(_job(name, priority, now=now), now)

        assert [queue.pop().name for _ in range(4)] == ["critical", "high", "normal", "low"]
        assert queue.pop() is None

    def test_fifo_among_equal_priority(self, mock_clock):
        queue = QueueManager()
        now = mock_clock.now()
        for name in ["first", "second", "third"]:
            queue.enqueue(_job(name, JobPriority.HIGH, now=now), now)
        queue.enqueue(_job("urgent", JobPriority.CRITICAL, now=now), now)
        queue.enqueue(_job("fourth", JobPriority.HIGH, now=now), now)

        assert [job.name for job in queue.list_ready()] == [
            "urgent", "first", "second", "third", "fourth",
        ]

    def test_peek_does_not_remove(self, mock_clock):
        queue = QueueManager()
        job = _job("only", now=mock_clock.now())
        queue.enqueue(job, mock_clock.now())

        assert queue.peek() is job
        assert len(queue) == 1


class TestDelayedJobs:
    """Jobs not yet due wait outside the ready queue."""

    def test_future_job_is_held(self, mock_clock):
        queue = QueueManager()
        now = mock_clock.now()
        later = _job("later", scheduled_at=now + timedelta(seconds=30), now=now)

        assert queue.enqueue(later, now) is False
        assert len(queue) == 0
        assert queue.delayed_count == 1
        assert later.job_id in queue
        assert queue.next_due_at() == later.scheduled_at

    def test_take_due_releases_in_schedule_order(self, mock_clock):
        queue = QueueManager()
        now = mock_clock.now()
        b = _job("b", scheduled_at=now + timedelta(seconds=20), now=now)
        a = _job("a", scheduled_at=now + timedelta(seconds=10), now=now)
        c = _job("c", scheduled_at=now + timedelta(seconds=90), now=now)
        for job in (b, a, c):
            queue.enqueue(job, now)

        mock_clock.tick(25)
        due = queue.take_due(mock_clock.now())

        assert [job.name for job in due] == ["a", "b"]
        assert queue.delayed_count == 1
        assert queue.take_due(mock_clock.now()) == []

    def test_released_job_keeps_priority_position(self, mock_clock):
        queue = QueueManager()
        now = mock_clock.now()
        queue.enqueue(_job("normal", now=now), now)
        queue.hold(_job("retry", JobPriority.HIGH, scheduled_at=now, now=now))

        for job in queue.take_due(now):
            queue.push_ready(job)

        assert queue.pop().name == "retry"


class TestRemoval:

    def test_remove_from_either_list(self, mock_clock):
        queue = QueueManager()
        now = mock_clock.now()
        ready = _job("ready", now=now)
        delayed = _job("delayed", scheduled_at=now + timedelta(minutes=1), now=now)
        queue.enqueue(ready, now)
        queue.enqueue(delayed, now)

        assert queue.remove(delayed.job_id) is delayed
        assert queue.remove(ready.job_id) is ready
        assert queue.remove("missing") is None
        assert len(queue) == 0 and queue.delayed_count == 0

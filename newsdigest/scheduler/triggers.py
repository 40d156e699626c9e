"""
Cron Trigger Set for Job Scheduler.

Each configured schedule gets an independent timer. On every firing a
synthetic job of the schedule's type is submitted to the Dispatcher with a
payload marking it as schedule-originated.

Firings never wait on the Dispatcher: a slow or saturated Dispatcher just
accumulates more PENDING jobs.

Cron expressions are opaque here; ScheduleResolver turns them into fire
times (CroniterResolver by default, standard 5-field syntax).
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Iterable, Optional, Protocol

from croniter import croniter

from .entities import Job, JobPriority, utcnow
from .errors import ScheduleNotFoundError
from .schemas import JobSpec


logger = logging.getLogger(__name__)


class ScheduleResolver(Protocol):
    """Turns a schedule expression into concrete fire times."""

    def is_valid(self, expression: str) -> bool:
        ...

    def next_fire_time(self, expression: str, after: datetime) -> datetime:
        """First occurrence strictly after `after`."""
        ...


class CroniterResolver:
    """ScheduleResolver backed by croniter."""

    def is_valid(self, expression: str) -> bool:
        return croniter.is_valid(expression)

    def next_fire_time(self, expression: str, after: datetime) -> datetime:
        return croniter(expression, after).get_next(datetime)


@dataclass(frozen=True)
class ScheduleDefinition:
    """A named recurring job: which type to submit and when."""

    name: str
    cron: str
    job_type: str
    description: str = ""
    enabled: bool = True
    priority: int = JobPriority.NORMAL


SubmitFunc = Callable[[JobSpec], Awaitable[Job]]


class CronTrigger:
    """Independent timer for one schedule."""

    # Pause before asking the resolver again after it raised
    resolve_retry_delay = 60.0

    def __init__(
        self,
        definition: ScheduleDefinition,
        on_fire: Callable[[ScheduleDefinition], Awaitable[Optional[Job]]],
        resolver: ScheduleResolver,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.definition = definition
        self._on_fire = on_fire
        self._resolver = resolver
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._fire_tasks: set[asyncio.Task] = set()

        self.next_fire_at: Optional[datetime] = None
        self.last_fired_at: Optional[datetime] = None
        self.fire_count = 0

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def is_active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_active:
            return
        self._task = asyncio.create_task(self._run(), name=f"cron-{self.name}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Cron trigger {self.name} had stopped with an error: {e}")
        self._task = None
        self.next_fire_at = None
        if self._fire_tasks:
            await asyncio.gather(*self._fire_tasks, return_exceptions=True)

    async def _run(self) -> None:
        anchor = self._clock()
        while True:
            try:
                self.next_fire_at = self._resolver.next_fire_time(self.definition.cron, anchor)
            except Exception as e:
                self.next_fire_at = None
                logger.error(
                    f"Cannot compute next fire time for schedule {self.name} "
                    f"({self.definition.cron}): {e}; retrying in {self.resolve_retry_delay}s",
                    exc_info=True,
                )
                await asyncio.sleep(self.resolve_retry_delay)
                anchor = self._clock()
                continue

            delay = (self.next_fire_at - self._clock()).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)

            # Anchor on the scheduled time so an early wake-up cannot fire twice
            anchor = max(self._clock(), self.next_fire_at)
            self.last_fired_at = self.next_fire_at
            self.fire_count += 1

            task = asyncio.create_task(self.fire())
            self._fire_tasks.add(task)
            task.add_done_callback(self._fire_tasks.discard)

    async def fire(self) -> Optional[Job]:
        """Submit one job for this schedule. Errors are logged, not raised."""
        logger.info(f"Cron trigger fired: {self.name} ({self.definition.cron})")
        try:
            return await self._on_fire(self.definition)
        except Exception as e:
            logger.error(f"Scheduled job submission failed for {self.name}: {e}")
            return None


class CronTriggerSet:
    """
    All cron triggers of one scheduler.

    Invalid expressions are logged and skipped; the remaining triggers still
    start. Schedules can be enabled, disabled and fired by name at runtime;
    a disabled schedule keeps its fire history.
    """

    def __init__(
        self,
        submit: SubmitFunc,
        schedules: Iterable[ScheduleDefinition],
        resolver: Optional[ScheduleResolver] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._submit = submit
        self._definitions: dict[str, ScheduleDefinition] = {
            definition.name: definition for definition in schedules
        }
        self._enabled: dict[str, bool] = {
            name: definition.enabled for name, definition in self._definitions.items()
        }
        self._resolver = resolver or CroniterResolver()
        self._clock = clock
        self._triggers: dict[str, CronTrigger] = {}
        self._started = False

    def start(self) -> int:
        """
        Start one trigger per enabled schedule.

        Returns:
            Number of triggers started
        """
        self._started = True
        for name, definition in self._definitions.items():
            if not self._enabled[name]:
                logger.info(f"Schedule disabled, not registering: {name}")
                continue
            self._start_trigger(definition)

        return len(self)

    def _start_trigger(self, definition: ScheduleDefinition) -> Optional[CronTrigger]:
        trigger = self._triggers.get(definition.name)
        if trigger is not None:
            trigger.start()
            return trigger

        if not self._resolver.is_valid(definition.cron):
            logger.error(
                f"Invalid cron expression for schedule {definition.name}: "
                f"{definition.cron!r}"
            )
            return None

        trigger = CronTrigger(definition, self._fire, self._resolver, self._clock)
        trigger.start()
        self._triggers[definition.name] = trigger
        logger.info(
            f"Registered schedule: {definition.name} ({definition.cron}) "
            f"-> {definition.job_type}"
            + (f" - {definition.description}" if definition.description else "")
        )
        return trigger

    async def stop(self) -> None:
        self._started = False
        for name, trigger in self._triggers.items():
            was_active = trigger.is_active
            await trigger.stop()
            if was_active:
                logger.info(f"Stopped schedule: {name}")

    def _definition(self, name: str) -> ScheduleDefinition:
        try:
            return self._definitions[name]
        except KeyError:
            raise ScheduleNotFoundError(name) from None

    def enable(self, name: str) -> bool:
        """
        Enable a schedule. Its timer starts immediately if the set is running,
        otherwise on the next start().

        Returns:
            True if the schedule's timer is running afterwards

        Raises:
            ScheduleNotFoundError: If no schedule has this name
        """
        definition = self._definition(name)
        self._enabled[name] = True
        logger.info(f"Schedule enabled: {name}")
        if not self._started:
            return False
        return self._start_trigger(definition) is not None

    async def disable(self, name: str) -> bool:
        """
        Disable a schedule and stop its timer. Jobs it already submitted are
        not affected.

        Returns:
            True if a running timer was stopped

        Raises:
            ScheduleNotFoundError: If no schedule has this name
        """
        self._definition(name)
        self._enabled[name] = False
        trigger = self._triggers.get(name)
        if trigger is None or not trigger.is_active:
            logger.info(f"Schedule disabled: {name}")
            return False
        await trigger.stop()
        logger.info(f"Schedule disabled, timer stopped: {name}")
        return True

    async def _fire(self, definition: ScheduleDefinition) -> Job:
        spec = JobSpec(
            name=definition.name,
            type=definition.job_type,
            priority=definition.priority,
            payload={"scheduled": True, "schedule": definition.name},
        )
        return await self._submit(spec)

    async def fire_now(self, name: str) -> Job:
        """
        Fire a configured schedule immediately, outside its timer. Works for
        disabled schedules too.

        Raises:
            ScheduleNotFoundError: If no schedule has this name
        """
        return await self._fire(self._definition(name))

    def get(self, name: str) -> Optional[CronTrigger]:
        return self._triggers.get(name)

    def status(self) -> list[dict]:
        """One entry per configured schedule, running or not."""
        entries = []
        for name, definition in self._definitions.items():
            trigger = self._triggers.get(name)
            entries.append(
                {
                    "name": name,
                    "cron": definition.cron,
                    "job_type": definition.job_type,
                    "description": definition.description,
                    "enabled": self._enabled[name],
                    "active": trigger is not None and trigger.is_active,
                    "next_fire_at": (
                        trigger.next_fire_at.isoformat()
                        if trigger and trigger.next_fire_at
                        else None
                    ),
                    "last_fired_at": (
                        trigger.last_fired_at.isoformat()
                        if trigger and trigger.last_fired_at
                        else None
                    ),
                    "fire_count": trigger.fire_count if trigger else 0,
                }
            )
        return entries

    def __len__(self) -> int:
        return sum(1 for trigger in self._triggers.values() if trigger.is_active)

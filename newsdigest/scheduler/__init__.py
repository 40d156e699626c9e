"""
Job Scheduler Core Module.

Priority queue, bounded-concurrency dispatcher, retry policy, cron triggers
and the SchedulerService facade that composes them.
"""

from .entities import (
    ErrorKind,
    Job,
    JobPriority,
    JobStatus,
)
from .errors import (
    SchedulerError,
    ConfigurationError,
    InvalidOperationError,
    InvalidTransitionError,
    JobNotFoundError,
    JobValidationError,
    ScheduleNotFoundError,
    HandlerNotFoundError,
    HandlerRegistrationError,
    JobTimeoutError,
    JobStoreError,
)
from .schemas import JobSpec
from .persistence import JobStore, InMemoryJobStore, SQLiteJobStore
from .queue_manager import QueueManager
from .registry import JobHandler, FunctionHandler, HandlerRegistry
from .retry_controller import RetryController, RetryDecision
from .dispatcher import Dispatcher, DispatcherState, JobEvent
from .triggers import CronTrigger, CronTriggerSet, CroniterResolver, ScheduleDefinition
from .recovery import RecoveryManager
from .config import SchedulerSettings, load_settings
from .service import SchedulerService

__all__ = [
    # Entities
    "ErrorKind",
    "Job",
    "JobPriority",
    "JobStatus",
    "JobSpec",
    # Errors
    "SchedulerError",
    "ConfigurationError",
    "InvalidOperationError",
    "InvalidTransitionError",
    "JobNotFoundError",
    "JobValidationError",
    "ScheduleNotFoundError",
    "HandlerNotFoundError",
    "HandlerRegistrationError",
    "JobTimeoutError",
    "JobStoreError",
    # Persistence
    "JobStore",
    "InMemoryJobStore",
    "SQLiteJobStore",
    # Queue
    "QueueManager",
    # Handlers
    "JobHandler",
    "FunctionHandler",
    "HandlerRegistry",
    # Retry
    "RetryController",
    "RetryDecision",
    # Dispatcher
    "Dispatcher",
    "DispatcherState",
    "JobEvent",
    # Triggers
    "CronTrigger",
    "CronTriggerSet",
    "CroniterResolver",
    "ScheduleDefinition",
    # Recovery
    "RecoveryManager",
    # Config
    "SchedulerSettings",
    "load_settings",
    # Service
    "SchedulerService",
]

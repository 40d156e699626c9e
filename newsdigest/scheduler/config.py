"""
Scheduler configuration.

Defaults below are the production values of the news pipeline. Every value
can be overridden through environment variables (a .env file is loaded
first when present).

Environment Variables:
- SCHEDULER_MAX_CONCURRENCY: Simultaneously executing jobs (default: 10)
- SCHEDULER_MAX_RETRIES: Default retry cap per job (default: 3)
- SCHEDULER_POLL_INTERVAL: Seconds between queue polls (default: 1.0)
- SCHEDULER_SHUTDOWN_WAIT: Max seconds stop() waits for running jobs (default: 60)
- SCHEDULER_RETRY_INITIAL_DELAY / _MULTIPLIER / _MAX_DELAY: Backoff (5s, x2, 300s)
- SCHEDULER_DB_PATH: SQLite job store path (default: data/scheduler.sqlite)
- SCHEDULER_WEBHOOK_URL: POST job events here when set
- SCHEDULER_RECOVER_ON_START: Reconcile the store on start (default: true)
- SCHEDULER_HEALTH_CHECK_URLS: Comma-separated URLs probed by health_check
- SCHEDULER_SCHEDULES: JSON object of schedules merged over the defaults, e.g.
  {"daily_digest": {"cron": "30 7 * * *", "job_type": "email_send"}}
- SCHEDULER_DISABLED_SCHEDULES: Comma-separated schedule names to skip
- LOG_LEVEL / LOG_DIR: Logging (default: INFO, logs)
"""

import json
import os
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, model_validator

from .errors import ConfigurationError
from .triggers import ScheduleDefinition


DEFAULT_MAX_CONCURRENCY = 10
DEFAULT_MAX_RETRIES = 3
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_SHUTDOWN_WAIT = 60.0
DEFAULT_DB_PATH = Path("data/scheduler.sqlite")

# Per-category timeouts in seconds; the category is the job type's prefix
DEFAULT_JOB_TIMEOUTS = {
    "default": 300.0,
    "rss": 60.0,
    "ai": 300.0,
    "email": 120.0,
    "cleanup": 600.0,
}

DEFAULT_SCHEDULES = {
    "rss_check": {
        "cron": "*/5 * * * *",
        "job_type": "rss_check",
        "description": "Check RSS sources for updates",
    },
    "ai_analysis": {
        "cron": "0 */2 * * *",
        "job_type": "ai_analysis",
        "description": "Run AI analysis on new articles",
    },
    "daily_digest": {
        "cron": "0 8 * * *",
        "job_type": "email_send",
        "description": "Send the daily digest email",
    },
    "cleanup_expired": {
        "cron": "0 3 * * *",
        "job_type": "cleanup",
        "description": "Remove expired data",
    },
    "health_check": {
        "cron": "*/10 * * * *",
        "job_type": "health_check",
        "description": "System health check",
    },
    "statistics_report": {
        "cron": "0 6 * * *",
        "job_type": "statistics_report",
        "description": "Generate statistics report",
    },
    "index_optimization": {
        "cron": "0 2 * * 0",
        "job_type": "index_optimization",
        "description": "Database index optimization",
    },
    "backup": {
        "cron": "0 1 * * *",
        "job_type": "backup",
        "description": "Data backup",
    },
}

DEFAULT_WEBHOOK_EVENTS = ["completed", "failed", "cancelled"]


class RetrySettings(BaseModel):
    """Exponential backoff parameters."""

    initial_delay: float = Field(default=5.0, gt=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=300.0, gt=0)

    @model_validator(mode="after")
    def max_not_below_initial(self) -> "RetrySettings":
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        return self


class ScheduleSettings(BaseModel):
    """One cron schedule."""

    cron: str = Field(..., min_length=1)
    job_type: str = Field(..., min_length=1)
    description: str = ""
    enabled: bool = True


class SchedulerSettings(BaseModel):
    """Process-wide scheduler configuration."""

    max_concurrency: int = Field(default=DEFAULT_MAX_CONCURRENCY, ge=1)
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    poll_interval: float = Field(default=DEFAULT_POLL_INTERVAL, gt=0)
    shutdown_wait: float = Field(default=DEFAULT_SHUTDOWN_WAIT, ge=0)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    job_timeouts: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_JOB_TIMEOUTS))
    schedules: Dict[str, ScheduleSettings] = Field(
        default_factory=lambda: {
            name: ScheduleSettings(**values) for name, values in DEFAULT_SCHEDULES.items()
        }
    )
    db_path: Path = DEFAULT_DB_PATH
    webhook_url: Optional[str] = None
    webhook_events: List[str] = Field(default_factory=lambda: list(DEFAULT_WEBHOOK_EVENTS))
    recover_on_start: bool = True
    health_check_urls: List[str] = Field(default_factory=list)
    log_level: str = "INFO"
    log_dir: Path = Path("logs")

    @model_validator(mode="after")
    def default_timeout_present(self) -> "SchedulerSettings":
        if "default" not in self.job_timeouts:
            self.job_timeouts["default"] = DEFAULT_JOB_TIMEOUTS["default"]
        if any(value <= 0 for value in self.job_timeouts.values()):
            raise ValueError("job timeouts must be positive")
        return self

    def timeout_for(self, job_type: str) -> float:
        """
        Default timeout for a job type.

        Exact match first, then the category prefix ("rss_check" -> "rss"),
        then "default".
        """
        if job_type in self.job_timeouts:
            return self.job_timeouts[job_type]
        category = job_type.split("_", 1)[0]
        return self.job_timeouts.get(category, self.job_timeouts["default"])

    def schedule_definitions(self) -> list[ScheduleDefinition]:
        return [
            ScheduleDefinition(
                name=name,
                cron=schedule.cron,
                job_type=schedule.job_type,
                description=schedule.description,
                enabled=schedule.enabled,
            )
            for name, schedule in self.schedules.items()
        ]


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_schedules(value: str) -> dict:
    """Merge a JSON schedule mapping over DEFAULT_SCHEDULES."""
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"SCHEDULER_SCHEDULES is not valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise ConfigurationError("SCHEDULER_SCHEDULES must be a JSON object keyed by schedule name")

    merged = {name: dict(values) for name, values in DEFAULT_SCHEDULES.items()}
    merged.update(parsed)
    return merged


def _env_overrides() -> dict:
    """Collect settings from environment variables that are set."""
    overrides: dict = {}
    scalar_keys = {
        "SCHEDULER_MAX_CONCURRENCY": "max_concurrency",
        "SCHEDULER_MAX_RETRIES": "max_retries",
        "SCHEDULER_POLL_INTERVAL": "poll_interval",
        "SCHEDULER_SHUTDOWN_WAIT": "shutdown_wait",
        "SCHEDULER_DB_PATH": "db_path",
        "SCHEDULER_WEBHOOK_URL": "webhook_url",
        "SCHEDULER_RECOVER_ON_START": "recover_on_start",
        "LOG_LEVEL": "log_level",
        "LOG_DIR": "log_dir",
    }
    for env_key, field_name in scalar_keys.items():
        value = os.getenv(env_key)
        if value:
            overrides[field_name] = value

    retry: dict = {}
    for env_key, field_name in (
        ("SCHEDULER_RETRY_INITIAL_DELAY", "initial_delay"),
        ("SCHEDULER_RETRY_MULTIPLIER", "multiplier"),
        ("SCHEDULER_RETRY_MAX_DELAY", "max_delay"),
    ):
        value = os.getenv(env_key)
        if value:
            retry[field_name] = value
    if retry:
        overrides["retry"] = retry

    urls = os.getenv("SCHEDULER_HEALTH_CHECK_URLS")
    if urls:
        overrides["health_check_urls"] = _split_csv(urls)

    schedules = os.getenv("SCHEDULER_SCHEDULES")
    if schedules:
        overrides["schedules"] = _parse_schedules(schedules)

    return overrides


def load_settings(env_file: Optional[str | Path] = None, **overrides) -> SchedulerSettings:
    """
    Build SchedulerSettings from defaults, environment and explicit overrides.

    Args:
        env_file: Optional .env path (default: .env in the working directory)
        **overrides: Field values that win over the environment

    Raises:
        ConfigurationError: If any value fails validation
    """
    load_dotenv(dotenv_path=env_file)

    data = _env_overrides()
    data.update(overrides)

    try:
        settings = SchedulerSettings(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid scheduler settings: {e}") from e

    disabled = os.getenv("SCHEDULER_DISABLED_SCHEDULES")
    if disabled:
        for name in _split_csv(disabled):
            if name in settings.schedules:
                settings.schedules[name].enabled = False

    return settings

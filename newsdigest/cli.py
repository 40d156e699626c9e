"""
CLI entry point for the news digest scheduler.

Commands:
- run: start the scheduler with the built-in handlers until interrupted
- status: job statistics from the store
- jobs list / jobs show: inspect durable job records
- submit: persist a pending job for the next `run` to pick up
- schedules list / schedules run: inspect schedules, queue a scheduled job now
"""

import argparse
import asyncio
import json
import logging
import re
import signal
import sys
from datetime import timedelta
from typing import List, Optional

from newsdigest.infra.logging_config import setup_logging
from newsdigest.infra.webhook import WebhookNotifier
from newsdigest.scheduler.builtin_handlers import HealthCheckHandler, StatisticsReportHandler
from newsdigest.scheduler.config import SchedulerSettings, load_settings
from newsdigest.scheduler.entities import JobPriority, JobStatus, utcnow
from newsdigest.scheduler.errors import (
    ConfigurationError,
    JobStoreError,
    JobValidationError,
    ScheduleNotFoundError,
)
from newsdigest.scheduler.persistence import SQLiteJobStore
from newsdigest.scheduler.service import SchedulerService
from newsdigest.scheduler.triggers import CroniterResolver


EXIT_SUCCESS = 0
EXIT_INVALID_INPUT = 1
EXIT_NOT_FOUND = 2
EXIT_CONFIG_ERROR = 3
EXIT_STORE_ERROR = 4

DEFAULT_LIST_LIMIT = 20

_TIMEFRAME_PATTERN = re.compile(r"^(\d+)([mhd])$")
_TIMEFRAME_UNITS = {"m": "minutes", "h": "hours", "d": "days"}


logger = logging.getLogger(__name__)


def parse_timeframe(value: str) -> Optional[timedelta]:
    """
    Parse "30m", "24h", "7d" or "all".

    Raises:
        ValueError: On any other format
    """
    value = value.strip().lower()
    if value == "all":
        return None
    match = _TIMEFRAME_PATTERN.match(value)
    if not match:
        raise ValueError(f"Invalid timeframe: {value!r} (expected e.g. 30m, 24h, 7d, all)")
    amount, unit = match.groups()
    return timedelta(**{_TIMEFRAME_UNITS[unit]: int(amount)})


def build_service(settings: SchedulerSettings, with_listeners: bool = False) -> SchedulerService:
    """Compose a SchedulerService backed by the SQLite store."""
    listeners = []
    if with_listeners and settings.webhook_url:
        listeners.append(WebhookNotifier(settings.webhook_url, events=settings.webhook_events))

    service = SchedulerService.create(
        settings,
        store=SQLiteJobStore(settings.db_path),
        listeners=listeners,
    )
    service.register_handler(HealthCheckHandler(settings.health_check_urls))
    service.register_handler(StatisticsReportHandler(service.get_statistics))
    return service


def _print_job_line(job) -> None:
    created = job.created_at.strftime("%Y-%m-%d %H:%M:%S")
    print(
        f"  {job.job_id}  {created}  {job.status.value:<9}  "
        f"{JobPriority(job.priority).name:<8}  {job.job_type:<18}  {job.name[:40]}"
    )


# =============================================================================
# Commands
# =============================================================================


async def _run_until_interrupted(service: SchedulerService) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt still cancels the main task
            pass

    await service.start()
    try:
        await stop_event.wait()
    finally:
        await service.stop()


def cmd_run(args: argparse.Namespace, settings: SchedulerSettings) -> int:
    """
    Run the scheduler in the foreground.

    Returns:
        Exit code
    """
    service = build_service(settings, with_listeners=True)

    logger.info("=== News digest scheduler starting ===")
    logger.info(f"Job store: {settings.db_path}")
    if settings.webhook_url:
        logger.info(f"Webhook notifications: {settings.webhook_url} ({', '.join(settings.webhook_events)})")

    try:
        asyncio.run(_run_until_interrupted(service))
    except KeyboardInterrupt:
        logger.info("Interrupted")

    logger.info("=== News digest scheduler stopped ===")
    return EXIT_SUCCESS


def cmd_status(args: argparse.Namespace, settings: SchedulerSettings) -> int:
    """
    Print job statistics from the store.

    Returns:
        Exit code
    """
    try:
        timeframe = parse_timeframe(args.timeframe)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID_INPUT

    service = build_service(settings)
    stats = asyncio.run(service.get_statistics(timeframe))

    print(f"Job store: {settings.db_path}")
    print(f"Timeframe: {args.timeframe}")
    print()
    print(f"Total jobs: {stats['total']}")
    print(f"Created today: {stats['today']}")
    print(f"Success rate: {stats['success_rate']}%")
    print()
    print("By status:")
    for status, count in stats["by_status"].items():
        print(f"  {status:<10} {count}")
    return EXIT_SUCCESS


def cmd_jobs_list(args: argparse.Namespace, settings: SchedulerSettings) -> int:
    """
    List job records, newest first.

    Returns:
        Exit code
    """
    store = SQLiteJobStore(settings.db_path)
    statuses = [JobStatus(args.status)] if args.status else list(JobStatus)

    async def collect():
        jobs = []
        for status in statuses:
            jobs.extend(await store.list_by_status(status))
        return jobs

    try:
        jobs = asyncio.run(collect())
    except JobStoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_STORE_ERROR

    jobs.sort(key=lambda job: job.created_at, reverse=True)
    jobs = jobs[: args.limit]

    if not jobs:
        print("No jobs found")
        return EXIT_SUCCESS

    print(f"Jobs (showing {len(jobs)}):")
    print()
    for job in jobs:
        _print_job_line(job)
    return EXIT_SUCCESS


def cmd_jobs_show(args: argparse.Namespace, settings: SchedulerSettings) -> int:
    """
    Print one job record as JSON.

    Returns:
        Exit code
    """
    store = SQLiteJobStore(settings.db_path)
    try:
        job = asyncio.run(store.find(args.job_id))
    except JobStoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_STORE_ERROR

    if job is None:
        print(f"Error: Job not found: {args.job_id}", file=sys.stderr)
        return EXIT_NOT_FOUND

    print(json.dumps(job.to_dict(), indent=2, ensure_ascii=False, default=str))
    return EXIT_SUCCESS


def cmd_submit(args: argparse.Namespace, settings: SchedulerSettings) -> int:
    """
    Persist a PENDING job.

    A running scheduler does not poll the store, so the job is picked up by
    the next `run` through startup reconciliation.

    Returns:
        Exit code
    """
    try:
        payload = json.loads(args.payload) if args.payload else {}
    except json.JSONDecodeError as e:
        print(f"Error: Invalid payload JSON: {e}", file=sys.stderr)
        return EXIT_INVALID_INPUT
    if not isinstance(payload, dict):
        print("Error: Payload must be a JSON object", file=sys.stderr)
        return EXIT_INVALID_INPUT

    service = build_service(settings)
    try:
        job = asyncio.run(
            service.submit(
                name=args.name,
                type=args.type,
                priority=args.priority,
                payload=payload,
                metadata={"source": "cli"},
            )
        )
    except JobValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        for error in e.errors:
            location = ".".join(str(part) for part in error.get("loc", ()))
            print(f"  {location}: {error.get('msg')}", file=sys.stderr)
        return EXIT_INVALID_INPUT

    print(f"Job ID: {job.job_id}")
    print(f"Type: {job.job_type}")
    print(f"Priority: {JobPriority(job.priority).name}")
    print(f"Status: {job.status.value}")
    return EXIT_SUCCESS


def cmd_schedules_list(args: argparse.Namespace, settings: SchedulerSettings) -> int:
    """
    List configured schedules with their next fire time.

    Returns:
        Exit code
    """
    service = build_service(settings)
    schedules = service.list_schedules()
    if not schedules:
        print("No schedules configured")
        return EXIT_SUCCESS

    resolver = CroniterResolver()
    now = utcnow()
    print(f"Schedules ({len(schedules)}):")
    print()
    for schedule in schedules:
        if not schedule["enabled"]:
            next_run = "disabled"
        elif not resolver.is_valid(schedule["cron"]):
            next_run = "invalid cron"
        else:
            next_run = resolver.next_fire_time(schedule["cron"], now).strftime("%Y-%m-%d %H:%M")
        print(
            f"  {schedule['name']:<20}  {schedule['cron']:<14}  {schedule['job_type']:<18}  "
            f"{next_run:<16}  {schedule['description']}"
        )
    return EXIT_SUCCESS


def cmd_schedules_run(args: argparse.Namespace, settings: SchedulerSettings) -> int:
    """
    Persist a PENDING job for a schedule, as if its timer had fired.

    Returns:
        Exit code
    """
    service = build_service(settings)
    try:
        job = asyncio.run(service.run_schedule_now(args.name))
    except ScheduleNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_NOT_FOUND
    except JobValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_STORE_ERROR

    print(f"Job ID: {job.job_id}")
    print(f"Schedule: {args.name}")
    print(f"Type: {job.job_type}")
    print(f"Status: {job.status.value}")
    return EXIT_SUCCESS


def create_parser() -> argparse.ArgumentParser:
    """
    Create argument parser.

    Returns:
        Configured ArgumentParser
    """
    parser = argparse.ArgumentParser(
        prog="newsdigest",
        description="News digest job scheduler",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging"
    )
    parser.add_argument(
        "--db",
        help="SQLite job store path (default: SCHEDULER_DB_PATH or data/scheduler.sqlite)"
    )
    parser.add_argument(
        "--env-file",
        help="Load environment variables from this file (default: .env)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # run command
    subparsers.add_parser("run", help="Run the scheduler until interrupted")

    # status command
    status_parser = subparsers.add_parser("status", help="Show job statistics")
    status_parser.add_argument(
        "-t", "--timeframe",
        default="24h",
        help="Window such as 30m, 24h, 7d or all (default: 24h)"
    )

    # jobs command
    jobs_parser = subparsers.add_parser("jobs", help="Inspect job records")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", help="Job commands")

    list_parser = jobs_subparsers.add_parser("list", help="List jobs, newest first")
    list_parser.add_argument(
        "-s", "--status",
        choices=[status.value for status in JobStatus],
        help="Only jobs in this status"
    )
    list_parser.add_argument(
        "-n", "--limit",
        type=int,
        default=DEFAULT_LIST_LIMIT,
        help=f"Maximum number of jobs to show (default: {DEFAULT_LIST_LIMIT})"
    )

    show_parser = jobs_subparsers.add_parser("show", help="Show one job as JSON")
    show_parser.add_argument("job_id", help="Job ID")

    # submit command
    submit_parser = subparsers.add_parser("submit", help="Submit a job for the next run")
    submit_parser.add_argument("type", help="Job type, e.g. rss_check")
    submit_parser.add_argument("name", help="Human-readable job name")
    submit_parser.add_argument(
        "-p", "--priority",
        choices=[priority.name.lower() for priority in JobPriority],
        default="normal",
        help="Dispatch priority (default: normal)"
    )
    submit_parser.add_argument(
        "--payload",
        help="Handler input as a JSON object"
    )

    # schedules command
    schedules_parser = subparsers.add_parser("schedules", help="Inspect and run schedules")
    schedules_subparsers = schedules_parser.add_subparsers(dest="schedules_command", help="Schedule commands")
    schedules_subparsers.add_parser("list", help="List configured schedules")
    run_schedule_parser = schedules_subparsers.add_parser(
        "run", help="Queue a schedule's job for the next run"
    )
    run_schedule_parser.add_argument("name", help="Schedule name, e.g. daily_digest")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    overrides = {}
    if args.db:
        overrides["db_path"] = args.db
    try:
        settings = load_settings(env_file=args.env_file, **overrides)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    setup_logging(
        log_level="DEBUG" if args.verbose else settings.log_level,
        log_dir=settings.log_dir,
        log_to_file=args.command == "run",
    )

    # Dispatch command
    if args.command == "run":
        return cmd_run(args, settings)
    elif args.command == "status":
        return cmd_status(args, settings)
    elif args.command == "jobs" and args.jobs_command == "list":
        return cmd_jobs_list(args, settings)
    elif args.command == "jobs" and args.jobs_command == "show":
        return cmd_jobs_show(args, settings)
    elif args.command == "submit":
        return cmd_submit(args, settings)
    elif args.command == "schedules" and args.schedules_command == "list":
        return cmd_schedules_list(args, settings)
    elif args.command == "schedules" and args.schedules_command == "run":
        return cmd_schedules_run(args, settings)
    else:
        parser.print_help()
        return EXIT_SUCCESS


if __name__ == "__main__":
    sys.exit(main())

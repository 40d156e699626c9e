"""
Built-in job handlers shipped with the scheduler.

- health_check: probes configured HTTP endpoints
- statistics_report: summarizes job statistics over a timeframe

RSS, AI analysis and email handlers belong to the embedding application
and are registered through SchedulerService.register_handler().
"""

import asyncio
import logging
import time
from datetime import timedelta
from typing import Any, Awaitable, Callable, Iterable, Optional

import httpx

from .entities import Job, utcnow
from .errors import SchedulerError
from .registry import JobHandler


logger = logging.getLogger(__name__)


HEALTH_CHECK_TIMEOUT_SECONDS = 10.0
DEFAULT_REPORT_TIMEFRAME_HOURS = 24

StatisticsSource = Callable[[Optional[timedelta]], Awaitable[dict]]


class HealthCheckFailedError(SchedulerError):
    """Every probed target was unreachable."""


class HealthCheckHandler(JobHandler):
    """
    Probe HTTP endpoints and report per-target status and latency.

    Targets come from the job payload ("urls") or the configured defaults.
    A target answering with any HTTP status is reachable; it is healthy when
    the status is below 400. The job fails only if no target was reachable.
    """

    job_type = "health_check"

    def __init__(
        self,
        urls: Iterable[str] = (),
        timeout: float = HEALTH_CHECK_TIMEOUT_SECONDS,
    ):
        self.urls = list(urls)
        self.timeout = timeout

    async def execute(self, job: Job) -> dict:
        urls = list(job.payload.get("urls") or self.urls)
        if not urls:
            logger.info(f"Health check {job.job_id}: no targets configured")
            return {"status": "healthy", "targets": [], "checked_at": utcnow().isoformat()}

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            targets = await asyncio.gather(*(self._probe(client, url) for url in urls))

        reachable = [t for t in targets if t["reachable"]]
        if not reachable:
            raise HealthCheckFailedError(
                f"All {len(targets)} health check target(s) unreachable"
            )

        healthy = sum(1 for t in targets if t["healthy"])
        status = "healthy" if healthy == len(targets) else "degraded"
        logger.info(f"Health check {job.job_id}: {healthy}/{len(targets)} healthy ({status})")
        return {
            "status": status,
            "targets": targets,
            "checked_at": utcnow().isoformat(),
        }

    async def _probe(self, client: httpx.AsyncClient, url: str) -> dict:
        started = time.perf_counter()
        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            logger.warning(f"Health check target unreachable: {url} ({e})")
            return {
                "url": url,
                "reachable": False,
                "healthy": False,
                "status_code": None,
                "latency_ms": None,
                "error": str(e) or type(e).__name__,
            }

        latency_ms = round((time.perf_counter() - started) * 1000, 1)
        return {
            "url": url,
            "reachable": True,
            "healthy": response.status_code < 400,
            "status_code": response.status_code,
            "latency_ms": latency_ms,
            "error": None,
        }


class StatisticsReportHandler(JobHandler):
    """
    Summarize job statistics for the trailing timeframe.

    The statistics come from a callable, normally
    SchedulerService.get_statistics.
    """

    job_type = "statistics_report"

    def __init__(
        self,
        statistics: StatisticsSource,
        timeframe_hours: float = DEFAULT_REPORT_TIMEFRAME_HOURS,
    ):
        self._statistics = statistics
        self.timeframe_hours = timeframe_hours

    async def execute(self, job: Job) -> dict[str, Any]:
        hours = float(job.payload.get("timeframe_hours", self.timeframe_hours))
        stats = await self._statistics(timedelta(hours=hours))

        report = {
            "timeframe_hours": hours,
            "total": stats["total"],
            "today": stats["today"],
            "by_status": stats["by_status"],
            "success_rate": stats["success_rate"],
            "generated_at": utcnow().isoformat(),
        }
        logger.info(
            f"Statistics report ({hours:g}h): {report['total']} jobs, "
            f"success rate {report['success_rate']}%"
        )
        return report

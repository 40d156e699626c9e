"""
Webhook notification service for job lifecycle events.

Sends HTTP POST notifications when jobs reach subscribed states. Plugged
into the Dispatcher as a listener; delivery failures are logged and never
affect job execution.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

import httpx

from newsdigest import __version__
from newsdigest.scheduler.dispatcher import JobEvent
from newsdigest.scheduler.entities import Job

logger = logging.getLogger(__name__)

# Webhook configuration
WEBHOOK_TIMEOUT_SECONDS = 30
WEBHOOK_MAX_RETRIES = 3
WEBHOOK_RETRY_BASE_DELAY = 1.0  # seconds
WEBHOOK_RETRY_MAX_DELAY = 10.0  # seconds


def build_webhook_payload(job: Job, event: JobEvent) -> dict:
    """
    Build webhook payload from job data.

    Args:
        job: Job instance
        event: Lifecycle event being reported

    Returns:
        Dictionary payload for webhook POST
    """
    snapshot = job.to_dict()
    snapshot["result"] = _jsonable(snapshot.get("result"))
    return {
        "event": event.value,
        "job": snapshot,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def _jsonable(value):
    if value is None or isinstance(value, (str, int, float, bool, list, dict)):
        return value
    return str(value)


async def send_webhook_async(
    payload: dict,
    url: str,
    timeout: float = WEBHOOK_TIMEOUT_SECONDS,
    max_retries: int = WEBHOOK_MAX_RETRIES,
) -> tuple[bool, Optional[str]]:
    """
    Send webhook notification asynchronously with retry logic.

    Args:
        payload: Body built by build_webhook_payload()
        url: Webhook URL to POST to
        timeout: Request timeout in seconds
        max_retries: Maximum number of attempts

    Returns:
        Tuple of (success: bool, error_message: Optional[str])
    """
    job_id = payload["job"]["job_id"]
    last_error: Optional[str] = None

    for attempt in range(max_retries):
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(
                    url,
                    json=payload,
                    headers={
                        "Content-Type": "application/json",
                        "User-Agent": f"NewsDigestScheduler/{__version__}",
                        "X-Job-ID": job_id,
                        "X-Job-Event": payload["event"],
                    },
                )

                if 200 <= response.status_code < 300:
                    logger.info(
                        f"Webhook sent for job {job_id} "
                        f"(attempt {attempt + 1}/{max_retries}, status={response.status_code})"
                    )
                    return True, None

                last_error = f"HTTP {response.status_code}: {response.text[:200]}"
                logger.warning(
                    f"Webhook failed for job {job_id} "
                    f"(attempt {attempt + 1}/{max_retries}): {last_error}"
                )

        except httpx.TimeoutException:
            last_error = f"Timeout after {timeout}s"
            logger.warning(
                f"Webhook timeout for job {job_id} (attempt {attempt + 1}/{max_retries})"
            )

        except httpx.RequestError as e:
            last_error = f"Request error: {e}"
            logger.warning(
                f"Webhook request error for job {job_id} "
                f"(attempt {attempt + 1}/{max_retries}): {e}"
            )

        if attempt < max_retries - 1:
            delay = min(WEBHOOK_RETRY_BASE_DELAY * (2 ** attempt), WEBHOOK_RETRY_MAX_DELAY)
            logger.debug(f"Retrying webhook in {delay}s...")
            await asyncio.sleep(delay)

    logger.error(f"Webhook failed after {max_retries} attempts for job {job_id}: {last_error}")
    return False, last_error


class WebhookNotifier:
    """
    Dispatcher listener that POSTs subscribed job events to a URL.

    The payload is captured when the event fires, so later transitions of
    the same job do not leak into it.
    """

    def __init__(
        self,
        url: str,
        events: Optional[Iterable[str]] = None,
        timeout: float = WEBHOOK_TIMEOUT_SECONDS,
        max_retries: int = WEBHOOK_MAX_RETRIES,
    ):
        self.url = url
        self.events = {JobEvent(event) for event in (events or ("completed", "failed"))}
        self.timeout = timeout
        self.max_retries = max_retries

    def should_send(self, event: JobEvent) -> bool:
        return event in self.events

    def __call__(self, event: JobEvent, job: Job):
        if not self.should_send(event):
            return None
        payload = build_webhook_payload(job, event)
        return self._deliver(payload)

    async def _deliver(self, payload: dict) -> bool:
        success, _ = await send_webhook_async(
            payload,
            self.url,
            timeout=self.timeout,
            max_retries=self.max_retries,
        )
        return success

"""
Job submission schemas.

Validated shape of a submission before a Job exists. Whether the job type
actually has a handler is checked later, at dispatch time.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from .entities import JobPriority


# Job types are registry keys such as "rss_check" or "email_send"
JOB_TYPE_PATTERN = r"^[a-z][a-z0-9_]*$"


class JobSpec(BaseModel):
    """Request to submit a job."""

    name: str = Field(..., min_length=1, max_length=200, description="Human-readable label")
    type: str = Field(
        ...,
        min_length=1,
        max_length=100,
        pattern=JOB_TYPE_PATTERN,
        description="Handler key, e.g. rss_check",
    )
    priority: JobPriority = Field(default=JobPriority.NORMAL, description="Dispatch priority")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Handler input")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Opaque bookkeeping")
    max_retries: Optional[int] = Field(default=None, ge=0, le=100, description="Retry cap")
    timeout: Optional[float] = Field(default=None, gt=0, description="Per-attempt timeout in seconds")
    scheduled_at: Optional[datetime] = Field(
        default=None,
        description="Earliest dispatch time (UTC if naive)",
    )

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("name cannot be blank")
        return value.strip()

    @field_validator("priority", mode="before")
    @classmethod
    def priority_from_name(cls, value: Any) -> Any:
        # Accept "high" / "HIGH" as well as 3
        if isinstance(value, str) and not value.isdigit():
            try:
                return JobPriority[value.upper()]
            except KeyError:
                raise ValueError(f"unknown priority: {value}")
        return value

    @field_validator("scheduled_at")
    @classmethod
    def scheduled_at_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

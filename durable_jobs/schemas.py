"""Input models validated before anything reaches the store."""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from durable_jobs.schedules import cron_trigger, resolve_timezone


class JobOptions(BaseModel):
    """Options accepted when creating a job."""

    model_config = {"extra": "forbid"}

    priority: int = 0
    scheduled_for: Optional[datetime] = None
    delay_ms: int = Field(0, ge=0)
    max_retries: Optional[int] = Field(None, ge=1)
    timeout_seconds: Optional[int] = Field(None, ge=1)
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=255)

    @field_validator("scheduled_for")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class NewJob(JobOptions):
    """One entry of a batch enqueue."""

    queue_name: str = Field("default", min_length=1)
    job_type: str = Field(..., min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)


class QueueOptions(BaseModel):
    """Settings of a queue."""

    model_config = {"extra": "forbid"}

    description: Optional[str] = None
    concurrency_limit: Optional[int] = Field(5, ge=1)
    retry_delay_seconds: int = Field(60, ge=0)
    max_retries: int = Field(3, ge=1)
    timeout_seconds: int = Field(300, ge=1)
    is_paused: bool = False


class QueueUpdate(BaseModel):
    """Partial update of queue settings."""

    model_config = {"extra": "forbid"}

    description: Optional[str] = None
    concurrency_limit: Optional[int] = Field(None, ge=1)
    retry_delay_seconds: Optional[int] = Field(None, ge=0)
    max_retries: Optional[int] = Field(None, ge=1)
    timeout_seconds: Optional[int] = Field(None, ge=1)
    is_paused: Optional[bool] = None


class RecurringJobSpec(BaseModel):
    """Definition of a recurring job.

    Exactly one of ``cron_expression`` and ``interval_seconds`` must be given.
    Cron expressions use the standard five-field crontab syntax and are
    evaluated in ``timezone``.
    """

    model_config = {"extra": "forbid"}

    name: str = Field(..., min_length=1, max_length=255)
    queue_name: str = Field("scheduled", min_length=1)
    job_type: str = Field(..., min_length=1)
    payload_template: Dict[str, Any] = Field(default_factory=dict)
    cron_expression: Optional[str] = None
    interval_seconds: Optional[int] = Field(None, ge=1)
    timezone: str = "UTC"
    is_enabled: bool = True
    max_retries: int = Field(3, ge=1)
    timeout_seconds: int = Field(300, ge=1)
    description: Optional[str] = None

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        resolve_timezone(value)
        return value

    @model_validator(mode="after")
    def _one_schedule(self) -> "RecurringJobSpec":
        if (self.cron_expression is None) == (self.interval_seconds is None):
            raise ValueError(
                "exactly one of cron_expression or interval_seconds is required"
            )
        if self.cron_expression is not None:
            cron_trigger(self.cron_expression, self.timezone)
        return self

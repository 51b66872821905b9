"""Retry and backoff policy applied when a job handler fails."""

import traceback
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from durable_jobs.models import Job, JobStatus, Queue


class RetryDecision:
    """Outcome of a handler failure: the next status and the fields to write."""

    def __init__(self, status: JobStatus, fields: Dict[str, Any]):
        self.status = status
        self.fields = fields

    @property
    def is_terminal(self) -> bool:
        return self.status == JobStatus.FAILED

    @property
    def next_retry_at(self) -> Optional[datetime]:
        return self.fields.get("next_retry_at")

    def __repr__(self) -> str:
        return f"RetryDecision(status={self.status.value}, fields={self.fields!r})"


class RetryPolicy:
    """
    Flat backoff per queue.

    Every failure counts as an attempt. Once ``attempts`` reaches the job's
    ``max_attempts`` the job fails for good; otherwise it goes back to
    ``queued`` and becomes eligible again after the queue's
    ``retry_delay_seconds``.
    """

    def decide(
        self,
        job: Job,
        queue: Queue,
        error: BaseException,
        now: datetime,
        error_stack: Optional[str] = None,
    ) -> RetryDecision:
        attempts = job.attempts + 1
        fields: Dict[str, Any] = {
            "attempts": attempts,
            "error_message": str(error) or type(error).__name__,
            "error_stack": error_stack or format_error_stack(error),
        }

        if attempts >= job.max_attempts:
            fields["next_retry_at"] = None
            return RetryDecision(JobStatus.FAILED, fields)

        fields["next_retry_at"] = now + self.backoff(queue, attempts)
        return RetryDecision(JobStatus.QUEUED, fields)

    def backoff(self, queue: Queue, attempt: int) -> timedelta:
        """Delay before the next attempt; flat, so ``attempt`` is not used."""
        return timedelta(seconds=max(0, queue.retry_delay_seconds))


def format_error_stack(error: BaseException) -> str:
    return "".join(
        traceback.format_exception(type(error), error, error.__traceback__)
    )

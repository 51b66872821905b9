"""Data models for jobs, queues, workers and recurring jobs."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID


class JobStatus(str, Enum):
    """Job status values."""

    QUEUED = "queued"
    DELAYED = "delayed"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    def can_transition_to(self, status: "JobStatus") -> bool:
        """Whether a job in this status may move to ``status``."""
        return status in _TRANSITIONS[self]


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)

CANCELLABLE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.DELAYED})

_TRANSITIONS = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.DELAYED: frozenset(
        {JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.CANCELLED}
    ),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.QUEUED}
    ),
    # Manual retry only
    JobStatus.FAILED: frozenset({JobStatus.QUEUED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class WorkerStatus(str, Enum):
    """Worker status values."""

    ACTIVE = "active"
    STOPPED = "stopped"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Job:
    """Represents a job record."""

    def __init__(
        self,
        id: UUID,
        tenant_id: Optional[str],
        queue_name: str,
        job_type: str,
        status: JobStatus,
        payload: Dict[str, Any],
        priority: int = 0,
        attempts: int = 0,
        max_attempts: int = 3,
        scheduled_for: Optional[datetime] = None,
        delay_ms: int = 0,
        next_retry_at: Optional[datetime] = None,
        timeout_seconds: Optional[int] = None,
        idempotency_key: Optional[str] = None,
        locked_by: Optional[UUID] = None,
        locked_at: Optional[datetime] = None,
        progress: int = 0,
        progress_data: Optional[Dict[str, Any]] = None,
        result: Optional[Any] = None,
        error_message: Optional[str] = None,
        error_stack: Optional[str] = None,
        processing_time_ms: Optional[int] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        failed_at: Optional[datetime] = None,
    ):
        self.id = id
        self.tenant_id = tenant_id
        self.queue_name = queue_name
        self.job_type = job_type
        self.status = JobStatus(status) if isinstance(status, str) else status
        self.payload = payload
        self.priority = priority
        self.attempts = attempts
        self.max_attempts = max_attempts
        self.scheduled_for = scheduled_for
        self.delay_ms = delay_ms
        self.next_retry_at = next_retry_at
        self.timeout_seconds = timeout_seconds
        self.idempotency_key = idempotency_key
        self.locked_by = locked_by
        self.locked_at = locked_at
        self.progress = progress
        self.progress_data = progress_data
        self.result = result
        self.error_message = error_message
        self.error_stack = error_stack
        self.processing_time_ms = processing_time_ms
        self.created_at = created_at
        self.updated_at = updated_at
        self.started_at = started_at
        self.completed_at = completed_at
        self.failed_at = failed_at

    @property
    def is_leased(self) -> bool:
        return self.locked_by is not None

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for JSON serialization."""
        return {
            "id": str(self.id),
            "tenant_id": self.tenant_id,
            "queue_name": self.queue_name,
            "job_type": self.job_type,
            "status": self.status.value,
            "payload": self.payload,
            "priority": self.priority,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "scheduled_for": _iso(self.scheduled_for),
            "delay_ms": self.delay_ms,
            "next_retry_at": _iso(self.next_retry_at),
            "timeout_seconds": self.timeout_seconds,
            "idempotency_key": self.idempotency_key,
            "locked_by": str(self.locked_by) if self.locked_by else None,
            "locked_at": _iso(self.locked_at),
            "progress": self.progress,
            "progress_data": self.progress_data,
            "result": self.result,
            "error_message": self.error_message,
            "error_stack": self.error_stack,
            "processing_time_ms": self.processing_time_ms,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "failed_at": _iso(self.failed_at),
        }

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, queue={self.queue_name}, type={self.job_type}, "
            f"status={self.status.value}, attempts={self.attempts}/{self.max_attempts})"
        )


class Queue:
    """A named lane with its own execution policy."""

    def __init__(
        self,
        name: str,
        concurrency_limit: Optional[int] = 5,
        retry_delay_seconds: int = 60,
        max_retries: int = 3,
        timeout_seconds: int = 300,
        is_paused: bool = False,
        description: Optional[str] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        self.name = name
        self.concurrency_limit = concurrency_limit
        self.retry_delay_seconds = retry_delay_seconds
        self.max_retries = max_retries
        self.timeout_seconds = timeout_seconds
        self.is_paused = is_paused
        self.description = description
        self.created_at = created_at
        self.updated_at = updated_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "concurrency_limit": self.concurrency_limit,
            "retry_delay_seconds": self.retry_delay_seconds,
            "max_retries": self.max_retries,
            "timeout_seconds": self.timeout_seconds,
            "is_paused": self.is_paused,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Worker:
    """A registered worker process."""

    def __init__(
        self,
        id: UUID,
        hostname: str,
        pid: Optional[int],
        queues: List[str],
        status: WorkerStatus = WorkerStatus.ACTIVE,
        current_job_id: Optional[UUID] = None,
        last_heartbeat: Optional[datetime] = None,
        started_at: Optional[datetime] = None,
        stopped_at: Optional[datetime] = None,
    ):
        self.id = id
        self.hostname = hostname
        self.pid = pid
        self.queues = list(queues or [])
        self.status = WorkerStatus(status) if isinstance(status, str) else status
        self.current_job_id = current_job_id
        self.last_heartbeat = last_heartbeat
        self.started_at = started_at
        self.stopped_at = stopped_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "hostname": self.hostname,
            "pid": self.pid,
            "queues": self.queues,
            "status": self.status.value,
            "current_job_id": str(self.current_job_id) if self.current_job_id else None,
            "last_heartbeat": _iso(self.last_heartbeat),
            "started_at": _iso(self.started_at),
            "stopped_at": _iso(self.stopped_at),
        }


class RecurringJob:
    """A template that periodically produces jobs."""

    def __init__(
        self,
        id: UUID,
        name: str,
        queue_name: str,
        job_type: str,
        payload_template: Dict[str, Any],
        cron_expression: Optional[str] = None,
        interval_seconds: Optional[int] = None,
        timezone: str = "UTC",
        is_enabled: bool = True,
        max_retries: int = 3,
        timeout_seconds: int = 300,
        description: Optional[str] = None,
        last_run_at: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        self.id = id
        self.name = name
        self.queue_name = queue_name
        self.job_type = job_type
        self.payload_template = payload_template
        self.cron_expression = cron_expression
        self.interval_seconds = interval_seconds
        self.timezone = timezone
        self.is_enabled = is_enabled
        self.max_retries = max_retries
        self.timeout_seconds = timeout_seconds
        self.description = description
        self.last_run_at = last_run_at
        self.created_at = created_at
        self.updated_at = updated_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "name": self.name,
            "description": self.description,
            "queue_name": self.queue_name,
            "job_type": self.job_type,
            "payload_template": self.payload_template,
            "cron_expression": self.cron_expression,
            "interval_seconds": self.interval_seconds,
            "timezone": self.timezone,
            "is_enabled": self.is_enabled,
            "max_retries": self.max_retries,
            "timeout_seconds": self.timeout_seconds,
            "last_run_at": _iso(self.last_run_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class JobLog:
    """A log line attached to a job."""

    def __init__(
        self,
        id: int,
        job_id: UUID,
        level: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ):
        self.id = id
        self.job_id = job_id
        self.level = level
        self.message = message
        self.details = details
        self.created_at = created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": str(self.job_id),
            "level": self.level,
            "message": self.message,
            "details": self.details,
            "created_at": _iso(self.created_at),
        }


class QueueMetrics:
    """Throughput and latency of one queue over a time bucket."""

    def __init__(
        self,
        queue_name: str,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        jobs_enqueued: int = 0,
        jobs_completed: int = 0,
        jobs_failed: int = 0,
        avg_wait_time_ms: Optional[float] = None,
        max_wait_time_ms: Optional[float] = None,
        avg_processing_time_ms: Optional[float] = None,
        max_processing_time_ms: Optional[float] = None,
    ):
        self.queue_name = queue_name
        self.period_start = period_start
        self.period_end = period_end
        self.jobs_enqueued = jobs_enqueued
        self.jobs_completed = jobs_completed
        self.jobs_failed = jobs_failed
        self.avg_wait_time_ms = avg_wait_time_ms
        self.max_wait_time_ms = max_wait_time_ms
        self.avg_processing_time_ms = avg_processing_time_ms
        self.max_processing_time_ms = max_processing_time_ms

    def to_dict(self) -> Dict[str, Any]:
        return {
            "queue_name": self.queue_name,
            "period_start": _iso(self.period_start),
            "period_end": _iso(self.period_end),
            "jobs_enqueued": self.jobs_enqueued,
            "jobs_completed": self.jobs_completed,
            "jobs_failed": self.jobs_failed,
            "avg_wait_time_ms": self.avg_wait_time_ms,
            "max_wait_time_ms": self.max_wait_time_ms,
            "avg_processing_time_ms": self.avg_processing_time_ms,
            "max_processing_time_ms": self.max_processing_time_ms,
        }


class QueueStats:
    """Current status counts for a queue plus its recent metrics."""

    def __init__(
        self,
        queue: Queue,
        status_counts: Dict[str, int],
        metrics: Optional[QueueMetrics] = None,
    ):
        self.queue = queue
        self.status_counts = {status.value: 0 for status in JobStatus}
        self.status_counts.update(status_counts)
        self.metrics = metrics

    @property
    def queue_name(self) -> str:
        return self.queue.name

    def to_dict(self) -> Dict[str, Any]:
        return {
            "queue": self.queue.to_dict(),
            "status_counts": dict(self.status_counts),
            "metrics": self.metrics.to_dict() if self.metrics else None,
        }


class Dashboard:
    """Snapshot of the whole system: totals, queues, workers and recent jobs."""

    def __init__(
        self,
        queues: List[QueueStats],
        workers: List[Worker],
        metrics: List[QueueMetrics],
        recent_jobs: List[Job],
    ):
        self.queues = queues
        self.workers = workers
        self.metrics = metrics
        self.recent_jobs = recent_jobs

    @property
    def totals(self) -> Dict[str, int]:
        """Job counts per status summed over every queue."""
        totals = {status.value: 0 for status in JobStatus}
        for stats in self.queues:
            for status, count in stats.status_counts.items():
                totals[status] = totals.get(status, 0) + count
        return totals

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totals": self.totals,
            "queues": [stats.to_dict() for stats in self.queues],
            "workers": [worker.to_dict() for worker in self.workers],
            "metrics": [m.to_dict() for m in self.metrics],
            "recent_jobs": [job.to_dict() for job in self.recent_jobs],
        }

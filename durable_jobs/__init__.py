"""Durable, Postgres-backed job queue with workers and recurring schedules."""

from durable_jobs.config import DurableJobsConfig
from durable_jobs.ddl import SCHEMA_DDL
from durable_jobs.errors import (
    DurableJobsError,
    InvalidJobStateError,
    JobNotFoundError,
    JobValidationError,
    LeaseLostError,
    NoHandlerRegisteredError,
    QueueNotFoundError,
    ScheduledJobNotFoundError,
    WorkerAlreadyRunningError,
)
from durable_jobs.metrics import MetricsCollector
from durable_jobs.models import (
    Dashboard,
    Job,
    JobLog,
    JobStatus,
    Queue,
    QueueMetrics,
    QueueStats,
    RecurringJob,
    Worker,
    WorkerStatus,
)
from durable_jobs.registry import JobRegistry, job_registry
from durable_jobs.retry import RetryDecision, RetryPolicy
from durable_jobs.scheduler import RecurringScheduler, run_scheduler_loop
from durable_jobs.service import JobService
from durable_jobs.store import JobStore
from durable_jobs.supervisor import Supervisor, SweepResult
from durable_jobs.worker import ExecutionContext, JobWorker, WorkerState, run_worker_loop
from durable_jobs.worker_main import run_worker

__version__ = "0.1.0"

__all__ = [
    "DurableJobsConfig",
    "SCHEMA_DDL",
    "DurableJobsError",
    "InvalidJobStateError",
    "JobNotFoundError",
    "JobValidationError",
    "LeaseLostError",
    "NoHandlerRegisteredError",
    "QueueNotFoundError",
    "ScheduledJobNotFoundError",
    "WorkerAlreadyRunningError",
    "MetricsCollector",
    "Dashboard",
    "Job",
    "JobLog",
    "JobStatus",
    "Queue",
    "QueueMetrics",
    "QueueStats",
    "RecurringJob",
    "Worker",
    "WorkerStatus",
    "JobRegistry",
    "job_registry",
    "RetryDecision",
    "RetryPolicy",
    "RecurringScheduler",
    "run_scheduler_loop",
    "JobService",
    "JobStore",
    "Supervisor",
    "SweepResult",
    "ExecutionContext",
    "JobWorker",
    "WorkerState",
    "run_worker_loop",
    "run_worker",
]

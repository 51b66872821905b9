"""High-level service layer for job operations."""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID, uuid4

import asyncpg
from pydantic import BaseModel, ValidationError

from durable_jobs.config import DurableJobsConfig
from durable_jobs.errors import InvalidJobStateError, JobValidationError
from durable_jobs.models import (
    Dashboard,
    Job,
    JobLog,
    JobStatus,
    Queue,
    QueueStats,
    RecurringJob,
    Worker,
)
from durable_jobs.retry import RetryPolicy
from durable_jobs.schemas import (
    JobOptions,
    NewJob,
    QueueOptions,
    QueueUpdate,
    RecurringJobSpec,
)
from durable_jobs.store import JobStore, utcnow

MAX_LIST_LIMIT = 1000


def _validate(model: type[BaseModel], **data: Any) -> BaseModel:
    try:
        return model(**data)
    except ValidationError as e:
        raise JobValidationError(str(e)) from e


class JobService:
    """High-level API for job operations."""

    def __init__(
        self,
        config: DurableJobsConfig,
        db_pool: asyncpg.Pool,
        logger: Optional[logging.Logger] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.config = config
        self.store = JobStore(db_pool)
        self.logger = logger or logging.getLogger(__name__)
        self.retry_policy = retry_policy or RetryPolicy()

    # ===== JOBS =====

    async def create_job(
        self,
        tenant_id: Optional[str],
        queue_name: str,
        job_type: str,
        payload: dict[str, Any],
        *,
        priority: int = 0,
        scheduled_for: Optional[datetime] = None,
        delay_ms: int = 0,
        max_retries: Optional[int] = None,
        timeout_seconds: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> UUID:
        """
        Enqueue a new job.

        Args:
            tenant_id: Owning tenant, or None for system jobs
            queue_name: Queue to run on; created with configured defaults if new
            job_type: Registered handler name
            payload: Document passed to the handler verbatim
            priority: Higher runs first
            scheduled_for: Earliest time the job may run
            delay_ms: Delay from now before the job may run
            max_retries: Maximum attempts (defaults to the queue's max_retries)
            timeout_seconds: Execution budget handed to the handler
            idempotency_key: Returns the existing job if already used by this tenant

        Returns:
            UUID: The job ID

        Raises:
            JobValidationError: If any parameter is invalid
        """
        new_job = _validate(
            NewJob,
            queue_name=queue_name,
            job_type=job_type,
            payload=payload,
            priority=priority,
            scheduled_for=scheduled_for,
            delay_ms=delay_ms,
            max_retries=max_retries,
            timeout_seconds=timeout_seconds,
            idempotency_key=idempotency_key,
        )

        queue = await self._queue_for(new_job.queue_name)
        job = await self.store.insert_job(**self._insert_args(uuid4(), tenant_id, new_job, queue))

        self.logger.info(
            f"Enqueued job {job.id} (type={job.job_type}) on queue {job.queue_name} "
            f"for tenant {tenant_id}, status {job.status.value}"
        )
        return job.id

    async def create_jobs(
        self, tenant_id: Optional[str], jobs: list[dict[str, Any]]
    ) -> list[UUID]:
        """Enqueue several jobs atomically. Each entry takes create_job's arguments."""
        new_jobs = [_validate(NewJob, **job) for job in jobs]

        queues: dict[str, Queue] = {}
        for new_job in new_jobs:
            if new_job.queue_name not in queues:
                queues[new_job.queue_name] = await self._queue_for(new_job.queue_name)

        inserted = await self.store.insert_jobs(
            [
                self._insert_args(uuid4(), tenant_id, new_job, queues[new_job.queue_name])
                for new_job in new_jobs
            ]
        )

        self.logger.info(f"Enqueued batch of {len(inserted)} jobs for tenant {tenant_id}")
        return [job.id for job in inserted]

    async def get_job(self, job_id: UUID) -> Job:
        """Get a job by ID."""
        return await self.store.get_job(job_id)

    async def list_jobs(
        self,
        *,
        tenant_id: Optional[str] = None,
        queue_name: Optional[str] = None,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        created_after: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]:
        """List jobs with optional filters, newest first."""
        if not 1 <= limit <= MAX_LIST_LIMIT:
            raise JobValidationError(f"limit must be between 1 and {MAX_LIST_LIMIT}")
        if offset < 0:
            raise JobValidationError("offset must not be negative")
        if status is not None:
            try:
                status = JobStatus(status).value
            except ValueError as e:
                raise JobValidationError(f"Unknown job status: {status}") from e

        return await self.store.list_jobs(
            tenant_id=tenant_id,
            queue_name=queue_name,
            status=status,
            job_type=job_type,
            created_after=created_after,
            limit=limit,
            offset=offset,
        )

    async def retry_job(self, job_id: UUID, reset_attempts: bool = False) -> Job:
        """
        Put a failed job back in its queue.

        With ``reset_attempts`` the attempt counter starts over; without it
        the job must still have attempts left.
        """
        job = await self.store.get_job(job_id)
        if job.status != JobStatus.FAILED:
            raise InvalidJobStateError(job_id, job.status, JobStatus.QUEUED)
        if not reset_attempts and job.attempts >= job.max_attempts:
            raise InvalidJobStateError(
                job_id,
                job.status,
                JobStatus.QUEUED,
                message=(
                    f"Job {job_id} has used all {job.max_attempts} attempts; "
                    f"retry with reset_attempts to run it again"
                ),
            )

        fields: dict[str, Any] = {
            "next_retry_at": None,
            "error_message": None,
            "error_stack": None,
            "failed_at": None,
        }
        if reset_attempts:
            fields["attempts"] = 0

        job = await self.store.update_status(job_id, JobStatus.QUEUED, fields)
        self.logger.info(f"Job {job_id} requeued by manual retry (reset_attempts={reset_attempts})")
        return job

    async def cancel_job(self, job_id: UUID) -> Job:
        """Cancel a job that is still queued or delayed."""
        job = await self.store.cancel_job(job_id)
        self.logger.info(f"Job {job_id} cancelled")
        return job

    async def update_progress(
        self,
        job_id: UUID,
        progress: int,
        data: Optional[dict[str, Any]] = None,
        worker_id: Optional[UUID] = None,
    ) -> Job:
        """
        Record progress (0-100) of a processing job.

        With ``worker_id`` the update only applies while that worker still
        holds the lease.
        """
        return await self.store.update_progress(job_id, progress, data, locked_by=worker_id)

    async def add_job_log(
        self,
        job_id: UUID,
        level: str,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        await self.store.add_job_log(job_id, level, message, details)

    async def get_job_logs(self, job_id: UUID) -> list[JobLog]:
        await self.store.get_job(job_id)
        return await self.store.get_job_logs(job_id)

    async def add_dependency(self, job_id: UUID, depends_on_job_id: UUID) -> None:
        """Hold ``job_id`` back until ``depends_on_job_id`` has completed."""
        if job_id == depends_on_job_id:
            raise JobValidationError("A job cannot depend on itself")

        job = await self.store.get_job(job_id)
        await self.store.get_job(depends_on_job_id)
        if job.status.is_terminal or job.status == JobStatus.PROCESSING:
            raise JobValidationError(
                f"Job {job_id} is {job.status.value}; dependencies only apply to waiting jobs"
            )

        await self.store.add_dependency(job_id, depends_on_job_id)

    async def get_dependencies(self, job_id: UUID) -> list[Job]:
        return await self.store.get_dependencies(job_id)

    # ===== LEASING & COMPLETION =====

    async def lease_next_job(self, queue_name: str, worker_id: UUID) -> Optional[Job]:
        """Lease the next eligible job of a queue, or None."""
        return await self.store.lease_next_job(queue_name, worker_id)

    async def mark_job_completed(
        self,
        job: Job,
        worker_id: UUID,
        result: Any = None,
        processing_time_ms: Optional[int] = None,
    ) -> Job:
        """Mark a leased job as completed."""
        job = await self.store.update_status(
            job.id,
            JobStatus.COMPLETED,
            {"result": result, "processing_time_ms": processing_time_ms},
            locked_by=worker_id,
        )
        self.logger.info(f"Job {job.id} completed in {processing_time_ms}ms")
        return job

    async def mark_job_failed(
        self,
        job: Job,
        worker_id: UUID,
        error: BaseException,
        error_stack: Optional[str] = None,
    ) -> Job:
        """Apply the retry policy to a leased job whose handler failed."""
        queue = await self._queue_for(job.queue_name)
        decision = self.retry_policy.decide(job, queue, error, utcnow(), error_stack)

        updated = await self.store.update_status(
            job.id, decision.status, decision.fields, locked_by=worker_id
        )

        if decision.is_terminal:
            self.logger.error(
                f"Job {job.id} failed permanently after {updated.attempts} attempts: "
                f"{updated.error_message}"
            )
        else:
            self.logger.warning(
                f"Job {job.id} failed (attempt {updated.attempts}/{updated.max_attempts}), "
                f"retrying at {decision.next_retry_at}"
            )
        return updated

    # ===== QUEUES =====

    async def create_queue(self, name: str, **settings: Any) -> Queue:
        options = _validate(QueueOptions, **settings)
        queue = await self.store.create_queue(name, options.model_dump())
        self.logger.info(f"Created queue {name}")
        return queue

    async def get_queue(self, name: str) -> Queue:
        return await self.store.get_queue(name)

    async def list_queues(self) -> list[Queue]:
        return await self.store.list_queues()

    async def update_queue(self, name: str, **changes: Any) -> Queue:
        update = _validate(QueueUpdate, **changes)
        return await self.store.update_queue(name, update.model_dump(exclude_unset=True))

    async def pause_queue(self, name: str) -> Queue:
        queue = await self.store.update_queue(name, {"is_paused": True})
        self.logger.info(f"Queue {name} paused")
        return queue

    async def resume_queue(self, name: str) -> Queue:
        queue = await self.store.update_queue(name, {"is_paused": False})
        self.logger.info(f"Queue {name} resumed")
        return queue

    async def clear_queue(self, name: str) -> int:
        """Delete the queued and delayed jobs of a queue."""
        await self.store.get_queue(name)
        count = await self.store.clear_queue(name)
        self.logger.info(f"Cleared {count} waiting jobs from queue {name}")
        return count

    async def _queue_for(self, queue_name: str) -> Queue:
        return await self.store.get_or_create_queue(
            queue_name, self.config.get_queue_defaults(queue_name)
        )

    # ===== WORKERS =====

    async def register_worker(
        self, worker_id: UUID, hostname: str, pid: Optional[int], queues: list[str]
    ) -> Worker:
        return await self.store.register_worker(worker_id, hostname, pid, queues)

    async def worker_heartbeat(
        self, worker_id: UUID, current_job_id: Optional[UUID] = None
    ) -> None:
        await self.store.worker_heartbeat(worker_id, current_job_id)

    async def stop_worker(self, worker_id: UUID) -> None:
        await self.store.stop_worker(worker_id)

    async def list_workers(self, include_stopped: bool = False) -> list[Worker]:
        return await self.store.list_workers(include_stopped=include_stopped)

    # ===== SUPERVISION =====

    async def requeue_stuck_jobs(self, timeout_seconds: Optional[int] = None) -> int:
        """Requeue processing jobs whose lease is older than the timeout."""
        timeout_seconds = timeout_seconds or self.config.stuck_job_timeout_seconds
        cutoff = utcnow() - timedelta(seconds=timeout_seconds)
        count = await self.store.requeue_stuck_jobs(cutoff)
        if count > 0:
            self.logger.warning(f"Requeued {count} stuck jobs locked before {cutoff}")
        return count

    async def mark_dead_workers(self, timeout_seconds: Optional[int] = None) -> int:
        """Stop active workers silent for longer than the timeout."""
        timeout_seconds = timeout_seconds or self.config.dead_worker_timeout_seconds
        cutoff = utcnow() - timedelta(seconds=timeout_seconds)
        count = await self.store.mark_dead_workers(cutoff)
        if count > 0:
            self.logger.warning(f"Marked {count} workers stopped (no heartbeat since {cutoff})")
        return count

    async def promote_delayed_jobs(self) -> int:
        count = await self.store.promote_delayed_jobs()
        if count > 0:
            self.logger.info(f"Promoted {count} delayed jobs to queued")
        return count

    # ===== STATS =====

    async def get_queue_stats(
        self, queue_name: str, period: timedelta = timedelta(hours=24)
    ) -> QueueStats:
        """Status counts of a queue plus its metrics over ``period``."""
        queue = await self.store.get_queue(queue_name)
        counts = await self.store.count_jobs_by_status(queue_name)
        metrics = await self.store.get_aggregate_metrics(utcnow() - period, queue_name)
        return QueueStats(
            queue=queue,
            status_counts=counts.get(queue_name, {}),
            metrics=metrics[0] if metrics else None,
        )

    async def get_all_queue_stats(
        self, period: timedelta = timedelta(hours=24)
    ) -> list[QueueStats]:
        """Stats of every queue, by name."""
        queues = await self.store.list_queues()
        counts = await self.store.count_jobs_by_status()
        metrics = {
            m.queue_name: m
            for m in await self.store.get_aggregate_metrics(utcnow() - period)
        }
        return [
            QueueStats(
                queue=queue,
                status_counts=counts.get(queue.name, {}),
                metrics=metrics.get(queue.name),
            )
            for queue in queues
        ]

    async def get_dashboard(
        self,
        period: timedelta = timedelta(hours=24),
        recent_window: timedelta = timedelta(hours=1),
        recent_limit: int = 20,
    ) -> Dashboard:
        """
        Overview of the whole system.

        Queue stats and metrics cover ``period``; recent jobs are the newest
        ``recent_limit`` created within ``recent_window``.
        """
        queues = await self.get_all_queue_stats(period)
        workers = await self.store.list_workers()
        recent_jobs = await self.list_jobs(
            created_after=utcnow() - recent_window, limit=recent_limit
        )
        return Dashboard(
            queues=queues,
            workers=workers,
            metrics=[stats.metrics for stats in queues if stats.metrics],
            recent_jobs=recent_jobs,
        )

    async def get_throughput(
        self, queue_name: Optional[str] = None, bucket: str = "hour", periods: int = 24
    ) -> list[dict[str, Any]]:
        """Completed and failed counts per bucket over the last ``periods`` buckets."""
        if periods < 1:
            raise JobValidationError("periods must be at least 1")
        span = {"minute": timedelta(minutes=1), "hour": timedelta(hours=1), "day": timedelta(days=1)}
        if bucket not in span:
            raise JobValidationError(f"bucket must be one of {sorted(span)}")
        since = utcnow() - span[bucket] * periods
        return await self.store.get_throughput(bucket, since, queue_name)

    # ===== SCHEDULED JOBS =====

    async def create_scheduled_job(
        self,
        name: str,
        queue_name: str,
        job_type: str,
        payload_template: Optional[dict[str, Any]] = None,
        **options: Any,
    ) -> RecurringJob:
        """
        Create a recurring job definition.

        ``options`` takes cron_expression or interval_seconds (exactly one),
        plus timezone, is_enabled, max_retries, timeout_seconds and description.
        """
        spec = _validate(
            RecurringJobSpec,
            name=name,
            queue_name=queue_name,
            job_type=job_type,
            payload_template=payload_template or {},
            **options,
        )
        await self._queue_for(spec.queue_name)
        recurring = await self.store.insert_recurring_job(uuid4(), spec.model_dump())
        self.logger.info(f"Created scheduled job {recurring.name} ({recurring.id})")
        return recurring

    async def get_scheduled_job(self, recurring_job_id: UUID) -> RecurringJob:
        return await self.store.get_recurring_job(recurring_job_id)

    async def list_scheduled_jobs(self, enabled_only: bool = False) -> list[RecurringJob]:
        return await self.store.list_recurring_jobs(enabled_only=enabled_only)

    async def update_scheduled_job(self, recurring_job_id: UUID, **changes: Any) -> RecurringJob:
        """Change fields of a definition; the result is validated as a whole."""
        current = await self.store.get_recurring_job(recurring_job_id)
        merged = {
            field: getattr(current, field) for field in RecurringJobSpec.model_fields
        }
        merged.update(changes)
        # Switching schedule kind replaces the other one
        if changes.get("cron_expression") is not None and "interval_seconds" not in changes:
            merged["interval_seconds"] = None
        if changes.get("interval_seconds") is not None and "cron_expression" not in changes:
            merged["cron_expression"] = None
        spec = _validate(RecurringJobSpec, **merged)

        changed = {
            field: value
            for field, value in spec.model_dump().items()
            if field in changes or field in ("cron_expression", "interval_seconds")
        }
        if "queue_name" in changes:
            await self._queue_for(spec.queue_name)
        return await self.store.update_recurring_job(recurring_job_id, changed)

    async def set_scheduled_job_enabled(self, recurring_job_id: UUID, enabled: bool) -> RecurringJob:
        return await self.store.update_recurring_job(recurring_job_id, {"is_enabled": enabled})

    async def delete_scheduled_job(self, recurring_job_id: UUID) -> RecurringJob:
        recurring = await self.store.delete_recurring_job(recurring_job_id)
        self.logger.info(f"Deleted scheduled job {recurring.name} ({recurring.id})")
        return recurring

    async def trigger_scheduled_job(self, recurring_job_id: UUID) -> UUID:
        """Enqueue a job from a definition now, regardless of its schedule."""
        job = await self.store.fire_recurring_job(recurring_job_id, uuid4())
        self.logger.info(f"Triggered scheduled job {recurring_job_id} as job {job.id}")
        return job.id

    # ===== CLEANUP =====

    async def cleanup_old_jobs(self, retention_days: Optional[int] = None) -> int:
        """Delete terminal jobs older than the retention window."""
        if retention_days is None:
            retention_days = self.config.retention_days
        count = await self.store.cleanup_old_jobs(retention_days)
        self.logger.info(f"Cleaned up {count} jobs older than {retention_days} days")
        return count

    def _insert_args(
        self, job_id: UUID, tenant_id: Optional[str], new_job: JobOptions, queue: Queue
    ) -> dict[str, Any]:
        return {
            "id": job_id,
            "tenant_id": tenant_id,
            "queue_name": queue.name,
            "job_type": new_job.job_type,
            "payload": new_job.payload,
            "max_attempts": new_job.max_retries or queue.max_retries,
            "priority": new_job.priority,
            "scheduled_for": new_job.scheduled_for,
            "delay_ms": new_job.delay_ms,
            "timeout_seconds": new_job.timeout_seconds or queue.timeout_seconds,
            "idempotency_key": new_job.idempotency_key,
        }

"""Database store layer for durable jobs."""

import json
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID

import asyncpg

from durable_jobs.errors import (
    InvalidJobStateError,
    JobNotFoundError,
    JobValidationError,
    LeaseLostError,
    QueueNotFoundError,
    ScheduledJobNotFoundError,
)
from durable_jobs.models import (
    CANCELLABLE_STATUSES,
    Job,
    JobLog,
    JobStatus,
    Queue,
    QueueMetrics,
    RecurringJob,
    Worker,
    WorkerStatus,
)

# Fields a caller may write alongside a status change
UPDATABLE_JOB_FIELDS = frozenset(
    {
        "attempts",
        "error_message",
        "error_stack",
        "failed_at",
        "next_retry_at",
        "processing_time_ms",
        "progress",
        "result",
    }
)

QUEUE_FIELDS = frozenset(
    {
        "description",
        "concurrency_limit",
        "retry_delay_seconds",
        "max_retries",
        "timeout_seconds",
        "is_paused",
    }
)

RECURRING_JOB_FIELDS = frozenset(
    {
        "name",
        "description",
        "queue_name",
        "job_type",
        "payload_template",
        "cron_expression",
        "interval_seconds",
        "timezone",
        "max_retries",
        "timeout_seconds",
        "is_enabled",
    }
)

_JSON_FIELDS = frozenset({"result", "payload_template", "progress_data"})

THROUGHPUT_BUCKETS = ("minute", "hour", "day")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dumps(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value)


def _loads(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _rowcount(status: str) -> int:
    # asyncpg returns command tags like "UPDATE 5"
    return int(status.split()[-1]) if status else 0


class JobStore:
    """Database layer for job, queue, worker and recurring job operations."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    # ===== JOBS =====

    async def insert_job(
        self,
        id: UUID,
        tenant_id: Optional[str],
        queue_name: str,
        job_type: str,
        payload: dict[str, Any],
        max_attempts: int,
        priority: int = 0,
        scheduled_for: Optional[datetime] = None,
        delay_ms: int = 0,
        timeout_seconds: Optional[int] = None,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Job:
        """
        Insert a new job.

        The job starts ``delayed`` when it has a future ``scheduled_for`` or a
        positive ``delay_ms``, otherwise ``queued``. When ``idempotency_key``
        matches an existing job of the same tenant, that job is returned and
        nothing is inserted.
        """
        async with self.db_pool.acquire() as conn:
            return await self._insert_job(
                conn,
                id=id,
                tenant_id=tenant_id,
                queue_name=queue_name,
                job_type=job_type,
                payload=payload,
                max_attempts=max_attempts,
                priority=priority,
                scheduled_for=scheduled_for,
                delay_ms=delay_ms,
                timeout_seconds=timeout_seconds,
                idempotency_key=idempotency_key,
                now=now,
            )

    async def insert_jobs(self, jobs: list[dict[str, Any]]) -> list[Job]:
        """Insert several jobs in one transaction; all or none are stored."""
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                return [await self._insert_job(conn, **job) for job in jobs]

    async def _insert_job(
        self,
        conn,
        *,
        id: UUID,
        tenant_id: Optional[str],
        queue_name: str,
        job_type: str,
        payload: dict[str, Any],
        max_attempts: int,
        priority: int = 0,
        scheduled_for: Optional[datetime] = None,
        delay_ms: int = 0,
        timeout_seconds: Optional[int] = None,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Job:
        if max_attempts is None or max_attempts < 1:
            raise JobValidationError(f"max_attempts must be at least 1, got {max_attempts}")
        if delay_ms < 0:
            raise JobValidationError(f"delay_ms must not be negative, got {delay_ms}")

        now = now or utcnow()
        if scheduled_for is None and delay_ms > 0:
            scheduled_for = now + timedelta(milliseconds=delay_ms)

        delayed = delay_ms > 0 or (scheduled_for is not None and scheduled_for > now)
        status = JobStatus.DELAYED if delayed else JobStatus.QUEUED

        row = await conn.fetchrow(
            """
            INSERT INTO jobs (
                id, tenant_id, queue_name, job_type, priority, payload, status,
                scheduled_for, delay_ms, attempts, max_attempts, timeout_seconds,
                idempotency_key, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, 0, $10, $11, $12, $13, $13)
            ON CONFLICT (COALESCE(tenant_id, ''), idempotency_key)
                WHERE idempotency_key IS NOT NULL
                DO NOTHING
            RETURNING *
            """,
            id,
            tenant_id,
            queue_name,
            job_type,
            priority,
            json.dumps(payload),
            status.value,
            scheduled_for,
            delay_ms,
            max_attempts,
            timeout_seconds,
            idempotency_key,
            now,
        )

        if row is None:
            # Idempotency key already used by this tenant
            row = await conn.fetchrow(
                """
                SELECT * FROM jobs
                WHERE COALESCE(tenant_id, '') = COALESCE($1, '')
                  AND idempotency_key = $2
                """,
                tenant_id,
                idempotency_key,
            )

        return self._row_to_job(row)

    async def get_job(self, job_id: UUID) -> Job:
        """Get a job by ID."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM jobs WHERE id = $1", job_id)

        if not row:
            raise JobNotFoundError(job_id)

        return self._row_to_job(row)

    async def list_jobs(
        self,
        tenant_id: Optional[str] = None,
        queue_name: Optional[str] = None,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        created_after: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]:
        """List jobs with optional filters, newest first."""
        query = "SELECT * FROM jobs WHERE 1=1"
        params = []
        param_idx = 1

        if tenant_id:
            query += f" AND tenant_id = ${param_idx}"
            params.append(tenant_id)
            param_idx += 1

        if queue_name:
            query += f" AND queue_name = ${param_idx}"
            params.append(queue_name)
            param_idx += 1

        if status:
            query += f" AND status = ${param_idx}"
            params.append(JobStatus(status).value)
            param_idx += 1

        if job_type:
            query += f" AND job_type = ${param_idx}"
            params.append(job_type)
            param_idx += 1

        if created_after:
            query += f" AND created_at > ${param_idx}"
            params.append(created_after)
            param_idx += 1

        query += f" ORDER BY created_at DESC LIMIT ${param_idx} OFFSET ${param_idx + 1}"
        params.extend([limit, offset])

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(query, *params)

        return [self._row_to_job(row) for row in rows]

    async def update_status(
        self,
        job_id: UUID,
        status: JobStatus,
        fields: Optional[dict[str, Any]] = None,
        locked_by: Optional[UUID] = None,
    ) -> Job:
        """
        Move a job to ``status`` and write ``fields`` with it.

        The transition must be allowed from the job's current status.
        ``processing`` can only be reached through :meth:`lease_next_job`.
        Leaving ``processing`` clears the lease. When ``locked_by`` is given
        the job must currently be leased by that worker.
        """
        status = JobStatus(status)
        fields = dict(fields or {})

        unknown = set(fields) - UPDATABLE_JOB_FIELDS
        if unknown:
            raise JobValidationError(f"Cannot update job fields: {sorted(unknown)}")

        if status == JobStatus.PROCESSING:
            raise InvalidJobStateError(
                job_id,
                None,
                status,
                message=f"Job {job_id} can only become processing through a lease",
            )

        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT * FROM jobs WHERE id = $1 FOR UPDATE", job_id
                )
                if not row:
                    raise JobNotFoundError(job_id)

                current = JobStatus(row["status"])
                if locked_by is not None and row["locked_by"] != locked_by:
                    raise LeaseLostError(job_id, locked_by)
                if not current.can_transition_to(status):
                    raise InvalidJobStateError(job_id, current, status)

                params: list[Any] = [job_id, status.value]
                assignments = ["status = $2", "updated_at = now()"]

                for name, value in fields.items():
                    params.append(_dumps(value) if name in _JSON_FIELDS else value)
                    assignments.append(f"{name} = ${len(params)}")

                if current == JobStatus.PROCESSING:
                    assignments.extend(["locked_by = NULL", "locked_at = NULL"])

                if status == JobStatus.COMPLETED:
                    assignments.extend(["completed_at = now()", "progress = 100"])
                elif status == JobStatus.FAILED:
                    assignments.append("failed_at = now()")
                elif status == JobStatus.CANCELLED:
                    assignments.append("completed_at = now()")

                row = await conn.fetchrow(
                    f"UPDATE jobs SET {', '.join(assignments)} WHERE id = $1 RETURNING *",
                    *params,
                )

        return self._row_to_job(row)

    async def lease_next_job(
        self, queue_name: str, worker_id: UUID, now: Optional[datetime] = None
    ) -> Optional[Job]:
        """
        Atomically lease the next eligible job of a queue to ``worker_id``.

        Eligible jobs are queued or delayed (or failed with a due retry), past
        their ``scheduled_for`` and ``next_retry_at``, below ``max_attempts``
        and with every dependency completed. Highest priority wins, then the
        oldest. FOR UPDATE SKIP LOCKED keeps concurrent workers from ever
        selecting the same row. Returns None when nothing is eligible, the
        queue is paused, or its concurrency limit is reached.
        """
        now = now or utcnow()

        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                queue = await conn.fetchrow(
                    "SELECT is_paused, concurrency_limit FROM job_queues WHERE name = $1",
                    queue_name,
                )
                if queue is not None:
                    if queue["is_paused"]:
                        return None

                    limit = queue["concurrency_limit"]
                    if limit:
                        # Serialize leases on this queue so the count stays exact
                        await conn.execute(
                            "SELECT 1 FROM job_queues WHERE name = $1 FOR UPDATE",
                            queue_name,
                        )
                        processing = await conn.fetchval(
                            """
                            SELECT COUNT(*) FROM jobs
                            WHERE queue_name = $1 AND status = $2
                            """,
                            queue_name,
                            JobStatus.PROCESSING.value,
                        )
                        if processing >= limit:
                            return None

                row = await conn.fetchrow(
                    """
                    WITH candidate AS (
                        SELECT id FROM jobs
                        WHERE queue_name = $1
                          AND (
                                status IN ('queued', 'delayed')
                                OR (status = 'failed' AND next_retry_at IS NOT NULL)
                              )
                          AND (scheduled_for IS NULL OR scheduled_for <= $3)
                          AND (next_retry_at IS NULL OR next_retry_at <= $3)
                          AND attempts < max_attempts
                          AND NOT EXISTS (
                                SELECT 1 FROM job_dependencies d
                                JOIN jobs dep ON dep.id = d.depends_on_job_id
                                WHERE d.job_id = jobs.id
                                  AND dep.status <> 'completed'
                              )
                        ORDER BY priority DESC, created_at ASC
                        LIMIT 1
                        FOR UPDATE SKIP LOCKED
                    )
                    UPDATE jobs
                    SET status = 'processing',
                        locked_by = $2,
                        locked_at = $3,
                        started_at = $3,
                        updated_at = now()
                    FROM candidate
                    WHERE jobs.id = candidate.id
                    RETURNING jobs.*
                    """,
                    queue_name,
                    worker_id,
                    now,
                )

        return self._row_to_job(row) if row else None

    async def update_progress(
        self,
        job_id: UUID,
        progress: int,
        progress_data: Optional[dict[str, Any]] = None,
        locked_by: Optional[UUID] = None,
    ) -> Job:
        """Record progress (0-100) of a processing job, held by ``locked_by`` if given."""
        if not 0 <= progress <= 100:
            raise JobValidationError(f"progress must be between 0 and 100, got {progress}")

        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE jobs
                SET progress = $2,
                    progress_data = COALESCE($3::jsonb, progress_data),
                    updated_at = now()
                WHERE id = $1 AND status = $4
                  AND ($5::uuid IS NULL OR locked_by = $5)
                RETURNING *
                """,
                job_id,
                progress,
                _dumps(progress_data),
                JobStatus.PROCESSING.value,
                locked_by,
            )

        if row is None:
            job = await self.get_job(job_id)
            if locked_by is not None and job.status == JobStatus.PROCESSING:
                raise LeaseLostError(job_id, locked_by)
            raise InvalidJobStateError(
                job_id,
                job.status,
                JobStatus.PROCESSING,
                message=f"Job {job_id} is {job.status.value}; progress needs a processing job",
            )

        return self._row_to_job(row)

    async def cancel_job(self, job_id: UUID) -> Job:
        """Cancel a job that has not been leased yet."""
        job = await self.get_job(job_id)
        if job.status not in CANCELLABLE_STATUSES:
            raise InvalidJobStateError(job_id, job.status, JobStatus.CANCELLED)
        return await self.update_status(job_id, JobStatus.CANCELLED)

    async def cleanup_old_jobs(
        self, retention_days: int, now: Optional[datetime] = None
    ) -> int:
        """
        Delete terminal jobs older than the retention window.

        Job logs and dependency edges of deleted jobs are removed in the same
        transaction. Returns the number of jobs deleted.
        """
        if retention_days < 0:
            raise JobValidationError("retention_days must not be negative")

        cutoff = (now or utcnow()) - timedelta(days=retention_days)

        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    DELETE FROM jobs
                    WHERE status IN ('completed', 'failed', 'cancelled')
                      AND COALESCE(completed_at, failed_at, updated_at) < $1
                    RETURNING id
                    """,
                    cutoff,
                )
                job_ids = [row["id"] for row in rows]

                if job_ids:
                    await conn.execute(
                        "DELETE FROM job_logs WHERE job_id = ANY($1::uuid[])", job_ids
                    )
                    await conn.execute(
                        """
                        DELETE FROM job_dependencies
                        WHERE job_id = ANY($1::uuid[])
                           OR depends_on_job_id = ANY($1::uuid[])
                        """,
                        job_ids,
                    )

        return len(job_ids)

    # ===== JOB LOGS & DEPENDENCIES =====

    async def add_job_log(
        self,
        job_id: UUID,
        level: str,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """Append a log entry to a job."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO job_logs (job_id, level, message, details)
                VALUES ($1, $2, $3, $4)
                """,
                job_id,
                level,
                message,
                _dumps(details),
            )

    async def get_job_logs(self, job_id: UUID) -> list[JobLog]:
        """Get the log entries of a job, oldest first."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM job_logs WHERE job_id = $1 ORDER BY created_at ASC, id ASC",
                job_id,
            )

        return [
            JobLog(
                id=row["id"],
                job_id=row["job_id"],
                level=row["level"],
                message=row["message"],
                details=_loads(row["details"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def add_dependency(self, job_id: UUID, depends_on_job_id: UUID) -> None:
        """Make ``job_id`` wait for ``depends_on_job_id`` to complete."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO job_dependencies (job_id, depends_on_job_id)
                VALUES ($1, $2)
                ON CONFLICT DO NOTHING
                """,
                job_id,
                depends_on_job_id,
            )

    async def get_dependencies(self, job_id: UUID) -> list[Job]:
        """Get the jobs ``job_id`` depends on."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT j.* FROM job_dependencies d
                JOIN jobs j ON j.id = d.depends_on_job_id
                WHERE d.job_id = $1
                ORDER BY j.created_at ASC
                """,
                job_id,
            )

        return [self._row_to_job(row) for row in rows]

    # ===== QUEUES =====

    async def create_queue(self, name: str, settings: dict[str, Any]) -> Queue:
        """Create a queue; raises if it already exists."""
        columns, params = self._queue_columns(name, settings)
        placeholders = ", ".join(f"${i}" for i in range(1, len(params) + 1))

        try:
            async with self.db_pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"INSERT INTO job_queues ({', '.join(columns)}) "
                    f"VALUES ({placeholders}) RETURNING *",
                    *params,
                )
        except asyncpg.UniqueViolationError as e:
            raise JobValidationError(f"Queue {name} already exists") from e

        return self._row_to_queue(row)

    async def get_or_create_queue(self, name: str, defaults: dict[str, Any]) -> Queue:
        """Get a queue, creating it with ``defaults`` if it does not exist."""
        columns, params = self._queue_columns(name, defaults)
        placeholders = ", ".join(f"${i}" for i in range(1, len(params) + 1))

        async with self.db_pool.acquire() as conn:
            await conn.execute(
                f"INSERT INTO job_queues ({', '.join(columns)}) "
                f"VALUES ({placeholders}) ON CONFLICT (name) DO NOTHING",
                *params,
            )
            row = await conn.fetchrow("SELECT * FROM job_queues WHERE name = $1", name)

        return self._row_to_queue(row)

    async def get_queue(self, name: str) -> Queue:
        """Get a queue by name."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM job_queues WHERE name = $1", name)

        if not row:
            raise QueueNotFoundError(name)

        return self._row_to_queue(row)

    async def list_queues(self) -> list[Queue]:
        """List all queues by name."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM job_queues ORDER BY name")

        return [self._row_to_queue(row) for row in rows]

    async def update_queue(self, name: str, changes: dict[str, Any]) -> Queue:
        """Update queue settings."""
        unknown = set(changes) - QUEUE_FIELDS
        if unknown:
            raise JobValidationError(f"Cannot update queue fields: {sorted(unknown)}")
        if not changes:
            return await self.get_queue(name)

        params: list[Any] = [name]
        assignments = []
        for field, value in changes.items():
            params.append(value)
            assignments.append(f"{field} = ${len(params)}")

        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                f"UPDATE job_queues SET {', '.join(assignments)}, updated_at = now() "
                f"WHERE name = $1 RETURNING *",
                *params,
            )

        if not row:
            raise QueueNotFoundError(name)

        return self._row_to_queue(row)

    async def clear_queue(self, name: str) -> int:
        """Delete all jobs of a queue that are still waiting to run."""
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                DELETE FROM jobs
                WHERE queue_name = $1 AND status IN ('queued', 'delayed')
                """,
                name,
            )

        return _rowcount(result)

    async def count_jobs_by_status(
        self, queue_name: Optional[str] = None
    ) -> dict[str, dict[str, int]]:
        """Count jobs per queue and status."""
        query = "SELECT queue_name, status, COUNT(*) AS count FROM jobs"
        params = []
        if queue_name:
            query += " WHERE queue_name = $1"
            params.append(queue_name)
        query += " GROUP BY queue_name, status"

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(query, *params)

        counts: dict[str, dict[str, int]] = {}
        for row in rows:
            counts.setdefault(row["queue_name"], {})[row["status"]] = row["count"]
        return counts

    def _queue_columns(self, name: str, settings: dict[str, Any]):
        unknown = set(settings) - QUEUE_FIELDS
        if unknown:
            raise JobValidationError(f"Unknown queue settings: {sorted(unknown)}")
        columns = ["name"] + list(settings)
        params = [name] + list(settings.values())
        return columns, params

    # ===== WORKERS =====

    async def register_worker(
        self,
        worker_id: UUID,
        hostname: str,
        pid: Optional[int],
        queues: list[str],
        now: Optional[datetime] = None,
    ) -> Worker:
        """Register a running worker process as active."""
        now = now or utcnow()
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO job_workers (
                    id, hostname, pid, queues, status, last_heartbeat, started_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $6)
                RETURNING *
                """,
                worker_id,
                hostname,
                pid,
                queues,
                WorkerStatus.ACTIVE.value,
                now,
            )

        return self._row_to_worker(row)

    async def worker_heartbeat(
        self,
        worker_id: UUID,
        current_job_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Refresh a worker's heartbeat and the job it is executing.

        A worker the supervisor marked stopped while it was busy becomes
        active again.
        """
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE job_workers
                SET last_heartbeat = $2, current_job_id = $3,
                    status = $4, stopped_at = NULL
                WHERE id = $1
                """,
                worker_id,
                now or utcnow(),
                current_job_id,
                WorkerStatus.ACTIVE.value,
            )

    async def stop_worker(self, worker_id: UUID, now: Optional[datetime] = None) -> None:
        """Mark a worker as stopped."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE job_workers
                SET status = $2, stopped_at = $3, current_job_id = NULL
                WHERE id = $1
                """,
                worker_id,
                WorkerStatus.STOPPED.value,
                now or utcnow(),
            )

    async def list_workers(self, include_stopped: bool = False) -> list[Worker]:
        """List workers, active ones only unless ``include_stopped``."""
        query = "SELECT * FROM job_workers"
        params = []
        if not include_stopped:
            query += " WHERE status = $1"
            params.append(WorkerStatus.ACTIVE.value)
        query += " ORDER BY started_at"

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(query, *params)

        return [self._row_to_worker(row) for row in rows]

    # ===== SUPERVISOR =====

    async def requeue_stuck_jobs(self, locked_before: datetime) -> int:
        """Return jobs whose lease started before ``locked_before`` to the queue."""
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE jobs
                SET status = $1,
                    locked_by = NULL,
                    locked_at = NULL,
                    started_at = NULL,
                    updated_at = now()
                WHERE status = $2
                  AND locked_at < $3
                """,
                JobStatus.QUEUED.value,
                JobStatus.PROCESSING.value,
                locked_before,
            )

        return _rowcount(result)

    async def mark_dead_workers(
        self, heartbeat_before: datetime, now: Optional[datetime] = None
    ) -> int:
        """Stop active workers whose last heartbeat is older than ``heartbeat_before``."""
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE job_workers
                SET status = $1, stopped_at = $2
                WHERE status = $3
                  AND last_heartbeat < $4
                """,
                WorkerStatus.STOPPED.value,
                now or utcnow(),
                WorkerStatus.ACTIVE.value,
                heartbeat_before,
            )

        return _rowcount(result)

    async def promote_delayed_jobs(self, now: Optional[datetime] = None) -> int:
        """Move delayed jobs whose time has come to queued."""
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE jobs
                SET status = $1, updated_at = now()
                WHERE status = $2
                  AND (scheduled_for IS NULL OR scheduled_for <= $3)
                """,
                JobStatus.QUEUED.value,
                JobStatus.DELAYED.value,
                now or utcnow(),
            )

        return _rowcount(result)

    # ===== RECURRING JOBS =====

    async def insert_recurring_job(self, id: UUID, definition: dict[str, Any]) -> RecurringJob:
        """Store a recurring job definition."""
        unknown = set(definition) - RECURRING_JOB_FIELDS
        if unknown:
            raise JobValidationError(f"Unknown recurring job fields: {sorted(unknown)}")

        columns = ["id"] + list(definition)
        params = [id] + [
            _dumps(value) if name in _JSON_FIELDS else value
            for name, value in definition.items()
        ]
        placeholders = ", ".join(f"${i}" for i in range(1, len(params) + 1))

        try:
            async with self.db_pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"INSERT INTO recurring_jobs ({', '.join(columns)}) "
                    f"VALUES ({placeholders}) RETURNING *",
                    *params,
                )
        except asyncpg.UniqueViolationError as e:
            raise JobValidationError(
                f"Scheduled job {definition.get('name')} already exists"
            ) from e

        return self._row_to_recurring_job(row)

    async def get_recurring_job(self, recurring_job_id: UUID) -> RecurringJob:
        """Get a recurring job definition by ID."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM recurring_jobs WHERE id = $1", recurring_job_id
            )

        if not row:
            raise ScheduledJobNotFoundError(recurring_job_id)

        return self._row_to_recurring_job(row)

    async def list_recurring_jobs(self, enabled_only: bool = False) -> list[RecurringJob]:
        """List recurring job definitions by name."""
        query = "SELECT * FROM recurring_jobs"
        if enabled_only:
            query += " WHERE is_enabled"
        query += " ORDER BY name"

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(query)

        return [self._row_to_recurring_job(row) for row in rows]

    async def update_recurring_job(
        self, recurring_job_id: UUID, changes: dict[str, Any]
    ) -> RecurringJob:
        """Update fields of a recurring job definition."""
        unknown = set(changes) - RECURRING_JOB_FIELDS
        if unknown:
            raise JobValidationError(f"Cannot update recurring job fields: {sorted(unknown)}")
        if not changes:
            return await self.get_recurring_job(recurring_job_id)

        params: list[Any] = [recurring_job_id]
        assignments = []
        for field, value in changes.items():
            params.append(_dumps(value) if field in _JSON_FIELDS else value)
            assignments.append(f"{field} = ${len(params)}")

        try:
            async with self.db_pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"UPDATE recurring_jobs SET {', '.join(assignments)}, updated_at = now() "
                    f"WHERE id = $1 RETURNING *",
                    *params,
                )
        except asyncpg.UniqueViolationError as e:
            raise JobValidationError(f"Scheduled job {changes.get('name')} already exists") from e

        if not row:
            raise ScheduledJobNotFoundError(recurring_job_id)

        return self._row_to_recurring_job(row)

    async def delete_recurring_job(self, recurring_job_id: UUID) -> RecurringJob:
        """Delete a recurring job definition."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                "DELETE FROM recurring_jobs WHERE id = $1 RETURNING *", recurring_job_id
            )

        if not row:
            raise ScheduledJobNotFoundError(recurring_job_id)

        return self._row_to_recurring_job(row)

    async def fire_due_recurring_jobs(
        self,
        is_due: Callable[[RecurringJob, datetime], bool],
        new_job_id: Callable[[], UUID],
        now: Optional[datetime] = None,
    ) -> list[tuple[RecurringJob, Job]]:
        """
        Enqueue one job for every enabled recurring job that ``is_due``.

        Definitions are locked with SKIP LOCKED so two scheduler processes
        never fire the same definition in the same pass; the new job and the
        ``last_run_at`` update commit together.
        """
        now = now or utcnow()
        fired = []

        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    SELECT * FROM recurring_jobs
                    WHERE is_enabled
                    ORDER BY name
                    FOR UPDATE SKIP LOCKED
                    """
                )
                for row in rows:
                    recurring = self._row_to_recurring_job(row)
                    if not is_due(recurring, now):
                        continue
                    job = await self._enqueue_recurring(conn, recurring, new_job_id(), now)
                    recurring.last_run_at = now
                    fired.append((recurring, job))

        return fired

    async def fire_recurring_job(
        self, recurring_job_id: UUID, job_id: UUID, now: Optional[datetime] = None
    ) -> Job:
        """Enqueue a job from a recurring definition regardless of its schedule."""
        now = now or utcnow()

        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT * FROM recurring_jobs WHERE id = $1 FOR UPDATE",
                    recurring_job_id,
                )
                if not row:
                    raise ScheduledJobNotFoundError(recurring_job_id)

                return await self._enqueue_recurring(
                    conn, self._row_to_recurring_job(row), job_id, now
                )

    async def _enqueue_recurring(
        self, conn, recurring: RecurringJob, job_id: UUID, now: datetime
    ) -> Job:
        job = await self._insert_job(
            conn,
            id=job_id,
            tenant_id=None,
            queue_name=recurring.queue_name,
            job_type=recurring.job_type,
            payload=recurring.payload_template,
            max_attempts=recurring.max_retries,
            timeout_seconds=recurring.timeout_seconds,
            now=now,
        )
        await conn.execute(
            "UPDATE recurring_jobs SET last_run_at = $2, updated_at = now() WHERE id = $1",
            recurring.id,
            now,
        )
        return job

    # ===== METRICS =====

    async def aggregate_metrics(
        self, period_start: datetime, period_end: datetime
    ) -> list[QueueMetrics]:
        """
        Compute per-queue metrics for ``[period_start, period_end)`` and
        upsert them into job_metrics. Wait time is lease start minus enqueue.
        """
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                WITH stats AS (
                    SELECT
                        queue_name,
                        COUNT(*) FILTER (
                            WHERE created_at >= $1 AND created_at < $2
                        ) AS jobs_enqueued,
                        COUNT(*) FILTER (
                            WHERE status = 'completed'
                              AND completed_at >= $1 AND completed_at < $2
                        ) AS jobs_completed,
                        COUNT(*) FILTER (
                            WHERE status = 'failed'
                              AND failed_at >= $1 AND failed_at < $2
                        ) AS jobs_failed,
                        (AVG(EXTRACT(EPOCH FROM (started_at - created_at)) * 1000) FILTER (
                            WHERE started_at >= $1 AND started_at < $2
                        ))::double precision AS avg_wait_time_ms,
                        (MAX(EXTRACT(EPOCH FROM (started_at - created_at)) * 1000) FILTER (
                            WHERE started_at >= $1 AND started_at < $2
                        ))::double precision AS max_wait_time_ms,
                        (AVG(processing_time_ms) FILTER (
                            WHERE status = 'completed'
                              AND completed_at >= $1 AND completed_at < $2
                        ))::double precision AS avg_processing_time_ms,
                        (MAX(processing_time_ms) FILTER (
                            WHERE status = 'completed'
                              AND completed_at >= $1 AND completed_at < $2
                        ))::double precision AS max_processing_time_ms
                    FROM jobs
                    WHERE created_at < $2
                      AND (
                            created_at >= $1
                            OR started_at >= $1
                            OR completed_at >= $1
                            OR failed_at >= $1
                          )
                    GROUP BY queue_name
                )
                INSERT INTO job_metrics (
                    queue_name, period_start, period_end,
                    jobs_enqueued, jobs_completed, jobs_failed,
                    avg_wait_time_ms, max_wait_time_ms,
                    avg_processing_time_ms, max_processing_time_ms
                )
                SELECT
                    queue_name, $1, $2,
                    jobs_enqueued, jobs_completed, jobs_failed,
                    avg_wait_time_ms, max_wait_time_ms,
                    avg_processing_time_ms, max_processing_time_ms
                FROM stats
                ON CONFLICT (queue_name, period_start) DO UPDATE SET
                    period_end = EXCLUDED.period_end,
                    jobs_enqueued = EXCLUDED.jobs_enqueued,
                    jobs_completed = EXCLUDED.jobs_completed,
                    jobs_failed = EXCLUDED.jobs_failed,
                    avg_wait_time_ms = EXCLUDED.avg_wait_time_ms,
                    max_wait_time_ms = EXCLUDED.max_wait_time_ms,
                    avg_processing_time_ms = EXCLUDED.avg_processing_time_ms,
                    max_processing_time_ms = EXCLUDED.max_processing_time_ms
                RETURNING *
                """,
                period_start,
                period_end,
            )

        return [self._row_to_metrics(row) for row in rows]

    async def get_metrics(
        self, since: datetime, queue_name: Optional[str] = None
    ) -> list[QueueMetrics]:
        """Get metric buckets starting after ``since``, newest first."""
        query = "SELECT * FROM job_metrics WHERE period_start >= $1"
        params: list[Any] = [since]
        if queue_name:
            query += " AND queue_name = $2"
            params.append(queue_name)
        query += " ORDER BY period_start DESC, queue_name"

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(query, *params)

        return [self._row_to_metrics(row) for row in rows]

    async def get_aggregate_metrics(
        self, since: datetime, queue_name: Optional[str] = None
    ) -> list[QueueMetrics]:
        """Sum metric buckets since ``since`` into one row per queue."""
        query = """
            SELECT
                queue_name,
                MIN(period_start) AS period_start,
                MAX(period_end) AS period_end,
                SUM(jobs_enqueued)::int AS jobs_enqueued,
                SUM(jobs_completed)::int AS jobs_completed,
                SUM(jobs_failed)::int AS jobs_failed,
                AVG(avg_wait_time_ms) AS avg_wait_time_ms,
                MAX(max_wait_time_ms) AS max_wait_time_ms,
                AVG(avg_processing_time_ms) AS avg_processing_time_ms,
                MAX(max_processing_time_ms) AS max_processing_time_ms
            FROM job_metrics
            WHERE period_start >= $1
        """
        params: list[Any] = [since]
        if queue_name:
            query += " AND queue_name = $2"
            params.append(queue_name)
        query += " GROUP BY queue_name ORDER BY queue_name"

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(query, *params)

        return [self._row_to_metrics(row) for row in rows]

    async def get_throughput(
        self, bucket: str, since: datetime, queue_name: Optional[str] = None
    ) -> list[dict[str, Any]]:
        """Completed/failed counts per ``bucket`` (minute, hour or day)."""
        if bucket not in THROUGHPUT_BUCKETS:
            raise JobValidationError(f"bucket must be one of {THROUGHPUT_BUCKETS}")

        query = """
            SELECT
                date_trunc($1, period_start) AS period,
                queue_name,
                SUM(jobs_completed)::int AS completed,
                SUM(jobs_failed)::int AS failed,
                AVG(avg_processing_time_ms) AS avg_processing_time_ms
            FROM job_metrics
            WHERE period_start >= $2
        """
        params: list[Any] = [bucket, since]
        if queue_name:
            query += " AND queue_name = $3"
            params.append(queue_name)
        query += " GROUP BY period, queue_name ORDER BY period DESC, queue_name"

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(query, *params)

        return [dict(row) for row in rows]

    # ===== ROW CONVERSION =====

    def _row_to_job(self, row: asyncpg.Record) -> Job:
        """Convert a database row to a Job model."""
        return Job(
            id=row["id"],
            tenant_id=row["tenant_id"],
            queue_name=row["queue_name"],
            job_type=row["job_type"],
            status=JobStatus(row["status"]),
            payload=_loads(row["payload"]),
            priority=row["priority"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            scheduled_for=row["scheduled_for"],
            delay_ms=row["delay_ms"],
            next_retry_at=row["next_retry_at"],
            timeout_seconds=row["timeout_seconds"],
            idempotency_key=row["idempotency_key"],
            locked_by=row["locked_by"],
            locked_at=row["locked_at"],
            progress=row["progress"],
            progress_data=_loads(row["progress_data"]),
            result=_loads(row["result"]),
            error_message=row["error_message"],
            error_stack=row["error_stack"],
            processing_time_ms=row["processing_time_ms"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            failed_at=row["failed_at"],
        )

    def _row_to_queue(self, row: asyncpg.Record) -> Queue:
        return Queue(
            name=row["name"],
            description=row["description"],
            concurrency_limit=row["concurrency_limit"],
            retry_delay_seconds=row["retry_delay_seconds"],
            max_retries=row["max_retries"],
            timeout_seconds=row["timeout_seconds"],
            is_paused=row["is_paused"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_worker(self, row: asyncpg.Record) -> Worker:
        return Worker(
            id=row["id"],
            hostname=row["hostname"],
            pid=row["pid"],
            queues=row["queues"],
            status=WorkerStatus(row["status"]),
            current_job_id=row["current_job_id"],
            last_heartbeat=row["last_heartbeat"],
            started_at=row["started_at"],
            stopped_at=row["stopped_at"],
        )

    def _row_to_recurring_job(self, row: asyncpg.Record) -> RecurringJob:
        return RecurringJob(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            queue_name=row["queue_name"],
            job_type=row["job_type"],
            payload_template=_loads(row["payload_template"]),
            cron_expression=row["cron_expression"],
            interval_seconds=row["interval_seconds"],
            timezone=row["timezone"],
            is_enabled=row["is_enabled"],
            max_retries=row["max_retries"],
            timeout_seconds=row["timeout_seconds"],
            last_run_at=row["last_run_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_metrics(self, row: asyncpg.Record) -> QueueMetrics:
        return QueueMetrics(
            queue_name=row["queue_name"],
            period_start=row["period_start"],
            period_end=row["period_end"],
            jobs_enqueued=row["jobs_enqueued"] or 0,
            jobs_completed=row["jobs_completed"] or 0,
            jobs_failed=row["jobs_failed"] or 0,
            avg_wait_time_ms=row["avg_wait_time_ms"],
            max_wait_time_ms=row["max_wait_time_ms"],
            avg_processing_time_ms=row["avg_processing_time_ms"],
            max_processing_time_ms=row["max_processing_time_ms"],
        )

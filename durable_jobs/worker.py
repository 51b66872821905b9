"""Worker logic for durable jobs."""

import asyncio
import logging
import os
import socket
import time
import traceback
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

import asyncpg

from durable_jobs.config import DurableJobsConfig
from durable_jobs.errors import LeaseLostError, WorkerAlreadyRunningError
from durable_jobs.models import Job
from durable_jobs.registry import JobRegistry
from durable_jobs.service import JobService

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


class WorkerState(str, Enum):
    """Lifecycle states of a worker."""

    STARTING = "starting"
    IDLE = "idle"
    LEASING = "leasing"
    EXECUTING = "executing"
    STOPPING = "stopping"
    STOPPED = "stopped"


class ExecutionContext:
    """
    Handed to a job handler alongside the payload.

    Carries the job metadata and lets the handler report progress and
    write log lines attached to the job.
    """

    def __init__(
        self,
        service: JobService,
        job: Job,
        logger: logging.Logger,
        worker_id: Optional[UUID] = None,
    ):
        self.job_id = job.id
        self.worker_id = worker_id or job.locked_by
        self.tenant_id = job.tenant_id
        self.queue_name = job.queue_name
        self.job_type = job.job_type
        self.attempt = job.attempts + 1
        self.timeout_seconds = job.timeout_seconds
        self.logger = logger
        self._service = service

    async def update_progress(self, percent: int, data: Optional[dict[str, Any]] = None) -> None:
        await self._service.update_progress(
            self.job_id, percent, data, worker_id=self.worker_id
        )

    async def log(
        self, level: str, message: str, details: Optional[dict[str, Any]] = None
    ) -> None:
        level = level.lower()
        self.logger.log(_LOG_LEVELS.get(level, logging.INFO), f"[job {self.job_id}] {message}")
        await self._service.add_job_log(self.job_id, level, message, details)


class JobWorker:
    """
    Polls its queues, leases jobs one at a time and runs their handlers.

    Args:
        service: Job service used for every database operation
        registry: Job handler registry
        queues: Names of the queues to poll, in order
        hostname: Reported in the worker row (defaults to the machine name)
        poll_interval_seconds: Idle wait when no queue had work
        error_backoff_seconds: Wait after an unexpected error in a cycle
        logger: Logger instance
        shutdown_event: Optional event that stops the worker when set
    """

    def __init__(
        self,
        service: JobService,
        registry: JobRegistry,
        queues: list[str],
        hostname: Optional[str] = None,
        poll_interval_seconds: Optional[float] = None,
        error_backoff_seconds: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
        shutdown_event: Optional[asyncio.Event] = None,
    ):
        if not queues:
            raise ValueError("A worker needs at least one queue")

        self.service = service
        self.registry = registry
        self.queues = list(queues)
        self.hostname = hostname or socket.gethostname()
        self.poll_interval_seconds = (
            poll_interval_seconds or service.config.poll_interval_seconds
        )
        self.error_backoff_seconds = (
            error_backoff_seconds or service.config.error_backoff_seconds
        )
        self.logger = logger or logging.getLogger(__name__)
        self.worker_id: UUID = uuid4()
        self.state = WorkerState.STOPPED
        self.current_job_id: Optional[UUID] = None
        self._shutdown_event = shutdown_event or asyncio.Event()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Ask the worker to stop after the job it is executing, if any."""
        self._shutdown_event.set()

    async def run(self) -> None:
        """Run until stopped."""
        if self._running:
            raise WorkerAlreadyRunningError(f"Worker {self.worker_id} is already running")
        self._running = True
        self.state = WorkerState.STARTING

        try:
            await self.service.register_worker(
                self.worker_id, self.hostname, os.getpid(), self.queues
            )
            self.logger.info(
                f"Worker {self.worker_id} started on {self.hostname} "
                f"for queues {', '.join(self.queues)}"
            )

            while not self._shutdown_event.is_set():
                try:
                    processed = await self.run_once()
                except Exception as e:
                    self.logger.error(f"Error in worker loop: {str(e)}", exc_info=True)
                    await self._wait(self.error_backoff_seconds)
                    continue

                if processed == 0:
                    self.state = WorkerState.IDLE
                    self.logger.debug("No jobs available")
                    await self._wait(self.poll_interval_seconds)
        finally:
            self.state = WorkerState.STOPPING
            try:
                await self.service.stop_worker(self.worker_id)
            except Exception as e:
                self.logger.error(
                    f"Failed to mark worker {self.worker_id} stopped: {e}", exc_info=True
                )
            self.state = WorkerState.STOPPED
            self._running = False
            self.logger.info(f"Worker {self.worker_id} stopped")

    async def run_once(self) -> int:
        """
        One cycle: heartbeat, then lease and run at most one job per queue.

        Returns:
            int: Number of jobs executed
        """
        await self.service.worker_heartbeat(self.worker_id)

        processed = 0
        for queue_name in self.queues:
            if self._shutdown_event.is_set():
                break
            if await self.process_next(queue_name):
                processed += 1
        return processed

    async def process_next(self, queue_name: str) -> bool:
        """Lease and execute the next job of ``queue_name``, if there is one."""
        self.state = WorkerState.LEASING
        job = await self.service.lease_next_job(queue_name, self.worker_id)
        if job is None:
            return False

        await self.execute(job)
        return True

    async def execute(self, job: Job) -> None:
        """Run the handler of a leased job and record the outcome."""
        self.state = WorkerState.EXECUTING
        self.current_job_id = job.id
        await self.service.worker_heartbeat(self.worker_id, job.id)

        ctx = ExecutionContext(self.service, job, self.logger, self.worker_id)
        self.logger.info(
            f"Executing job {job.id} (type={job.job_type}, attempt={ctx.attempt})"
        )

        try:
            started = time.monotonic()
            try:
                handler = self.registry.resolve(job.job_type)
                result = await handler(job.payload, ctx)
            except Exception as e:
                error_stack = traceback.format_exc()
                self.logger.error(f"Job {job.id} failed: {str(e)}", exc_info=True)
                await self.service.mark_job_failed(job, self.worker_id, e, error_stack)
                await self.service.add_job_log(
                    job.id, "error", str(e) or type(e).__name__, {"attempt": ctx.attempt}
                )
                return

            elapsed_ms = int((time.monotonic() - started) * 1000)
            await self.service.mark_job_completed(job, self.worker_id, result, elapsed_ms)
            await self.service.add_job_log(
                job.id, "info", "Job completed", {"processing_time_ms": elapsed_ms}
            )
        except LeaseLostError as e:
            # The supervisor reclaimed the job while it ran
            self.logger.warning(f"Discarding outcome of job {job.id}: {e}")
        finally:
            self.current_job_id = None
            await self.service.worker_heartbeat(self.worker_id)

    async def _wait(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass


async def run_worker_loop(
    config: DurableJobsConfig,
    db_pool: asyncpg.Pool,
    registry: JobRegistry,
    queues: list[str],
    logger: logging.Logger,
    shutdown_event: asyncio.Event = None,
    hostname: Optional[str] = None,
    poll_interval_seconds: Optional[float] = None,
) -> None:
    """
    Run a worker that processes jobs from the given queues until shutdown.

    Args:
        config: Durable jobs configuration
        db_pool: Database connection pool
        registry: Job handler registry
        queues: Queue names to poll
        logger: Logger instance
        shutdown_event: Optional event to signal shutdown
        hostname: Hostname reported for the worker
        poll_interval_seconds: Overrides the configured poll interval
    """
    job_service = JobService(config, db_pool, logger)
    worker = JobWorker(
        job_service,
        registry,
        queues,
        hostname=hostname,
        poll_interval_seconds=poll_interval_seconds,
        logger=logger,
        shutdown_event=shutdown_event,
    )

    logger.info(f"Starting worker loop for queues {', '.join(queues)}")
    await worker.run()

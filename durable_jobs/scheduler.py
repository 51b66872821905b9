"""Scheduler logic for durable jobs."""

import asyncio
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

import asyncpg

from durable_jobs.config import DurableJobsConfig
from durable_jobs.errors import JobValidationError
from durable_jobs.metrics import MetricsCollector
from durable_jobs.models import Job, RecurringJob
from durable_jobs.schedules import is_due
from durable_jobs.service import JobService
from durable_jobs.store import utcnow
from durable_jobs.supervisor import Supervisor


class RecurringScheduler:
    """Turns due recurring job definitions into jobs."""

    def __init__(self, service: JobService, logger: Optional[logging.Logger] = None):
        self.service = service
        self.logger = logger or logging.getLogger(__name__)

    async def run_pass(self, now: Optional[datetime] = None) -> list[Job]:
        """
        Enqueue one job for every enabled definition that is due at ``now``.

        Definitions are locked for the duration of the pass, so schedulers
        running side by side never fire the same definition twice.
        """
        now = now or utcnow()
        fired = await self.service.store.fire_due_recurring_jobs(self._is_due, uuid4, now)

        for recurring, job in fired:
            self.logger.info(
                f"Scheduled job {recurring.name} fired job {job.id} on queue {job.queue_name}"
            )
        return [job for _, job in fired]

    async def trigger(self, recurring_job_id: UUID) -> UUID:
        """Fire a definition immediately, ignoring its schedule."""
        return await self.service.trigger_scheduled_job(recurring_job_id)

    def _is_due(self, recurring: RecurringJob, now: datetime) -> bool:
        try:
            return is_due(recurring, now)
        except JobValidationError as e:
            self.logger.error(f"Skipping scheduled job {recurring.name}: {e}")
            return False


async def run_scheduler_loop(
    config: DurableJobsConfig,
    db_pool: asyncpg.Pool,
    logger: logging.Logger,
    loop_interval_seconds: Optional[int] = None,
    shutdown_event: asyncio.Event = None,
) -> None:
    """
    Run the scheduler loop: recurring jobs every pass, plus the supervisor
    sweep, metrics aggregation and cleanup on their own intervals.

    Args:
        config: Durable jobs configuration
        db_pool: Database connection pool
        logger: Logger instance
        loop_interval_seconds: Time to sleep between iterations
        shutdown_event: Optional event to signal shutdown
    """
    job_service = JobService(config, db_pool, logger)
    scheduler = RecurringScheduler(job_service, logger)
    supervisor = Supervisor(job_service, logger)
    metrics = MetricsCollector(job_service, logger)
    shutdown_event = shutdown_event or asyncio.Event()
    loop_interval_seconds = loop_interval_seconds or config.scheduler_interval_seconds

    periodic = [
        ("supervisor", config.supervisor_interval_seconds, supervisor.sweep),
        ("metrics", config.metrics_interval_seconds, metrics.collect),
        ("cleanup", config.cleanup_interval_seconds, metrics.cleanup),
    ]
    last_runs: dict[str, datetime] = {}

    logger.info("Starting scheduler loop")

    while not shutdown_event.is_set():
        try:
            await scheduler.run_pass()
        except Exception as e:
            logger.error(f"Error in scheduler pass: {str(e)}", exc_info=True)

        now = utcnow()
        for name, interval, task in periodic:
            last_run = last_runs.get(name)
            if last_run is not None and (now - last_run).total_seconds() < interval:
                continue
            try:
                await task()
                last_runs[name] = now
            except Exception as e:
                logger.error(f"Error in {name} task: {str(e)}", exc_info=True)

        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=loop_interval_seconds)
        except asyncio.TimeoutError:
            pass

    logger.info("Shutdown signal received, exiting scheduler loop")

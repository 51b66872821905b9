"""Periodic recovery of stuck jobs and dead workers."""

import logging
from typing import Optional

from durable_jobs.service import JobService


class SweepResult:
    """Counts of what one supervisor sweep changed."""

    def __init__(self, stuck_jobs: int = 0, dead_workers: int = 0, promoted_jobs: int = 0):
        self.stuck_jobs = stuck_jobs
        self.dead_workers = dead_workers
        self.promoted_jobs = promoted_jobs

    @property
    def total(self) -> int:
        return self.stuck_jobs + self.dead_workers + self.promoted_jobs

    def __repr__(self) -> str:
        return (
            f"SweepResult(stuck_jobs={self.stuck_jobs}, dead_workers={self.dead_workers}, "
            f"promoted_jobs={self.promoted_jobs})"
        )


class Supervisor:
    """
    Reclaims work left behind by crashed or hung workers.

    Each sweep requeues processing jobs whose lease is older than the stuck
    job timeout, stops workers that missed their heartbeat for longer than
    the dead worker timeout, and promotes delayed jobs whose time has come.
    Running a sweep twice in a row changes nothing the second time.
    """

    def __init__(self, service: JobService, logger: Optional[logging.Logger] = None):
        self.service = service
        self.logger = logger or logging.getLogger(__name__)

    async def sweep(self) -> SweepResult:
        config = self.service.config
        result = SweepResult(
            stuck_jobs=await self.service.requeue_stuck_jobs(config.stuck_job_timeout_seconds),
            dead_workers=await self.service.mark_dead_workers(
                config.dead_worker_timeout_seconds
            ),
            promoted_jobs=await self.service.promote_delayed_jobs(),
        )

        if result.total:
            self.logger.info(f"Supervisor sweep: {result}")
        else:
            self.logger.debug("Supervisor sweep found nothing to do")
        return result

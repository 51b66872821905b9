"""Per-queue metrics aggregation and retention cleanup."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from durable_jobs.models import QueueMetrics
from durable_jobs.service import JobService
from durable_jobs.store import utcnow


def bucket_start(now: datetime, bucket_seconds: int) -> datetime:
    """Start of the ``bucket_seconds`` wide bucket containing ``now``, in UTC."""
    epoch = int(now.timestamp())
    return datetime.fromtimestamp(epoch - epoch % bucket_seconds, tz=timezone.utc)


class MetricsCollector:
    """Rolls job rows up into per-queue metric buckets and reads them back."""

    def __init__(self, service: JobService, logger: Optional[logging.Logger] = None):
        self.service = service
        self.logger = logger or logging.getLogger(__name__)

    @property
    def bucket_seconds(self) -> int:
        return self.service.config.metrics_bucket_seconds

    async def aggregate(self, period_start: datetime, period_end: datetime) -> list[QueueMetrics]:
        """Recompute the metrics of every queue for one period."""
        if period_end <= period_start:
            raise ValueError("period_end must be after period_start")
        return await self.service.store.aggregate_metrics(period_start, period_end)

    async def collect(self, now: Optional[datetime] = None) -> list[QueueMetrics]:
        """
        Aggregate the bucket containing ``now`` and the one before it.

        The previous bucket is recomputed so jobs finishing right after a
        bucket boundary are still counted in the bucket they belong to.
        """
        now = now or utcnow()
        size = timedelta(seconds=self.bucket_seconds)
        current = bucket_start(now, self.bucket_seconds)

        metrics = await self.aggregate(current - size, current)
        metrics += await self.aggregate(current, current + size)
        self.logger.debug(f"Aggregated {len(metrics)} metric rows up to {current + size}")
        return metrics

    async def get_queue_metrics(
        self, queue_name: str, since: Optional[datetime] = None
    ) -> list[QueueMetrics]:
        """Metric buckets of one queue, newest first (last 24 hours by default)."""
        since = since or utcnow() - timedelta(hours=24)
        return await self.service.store.get_metrics(since, queue_name)

    async def get_aggregate_metrics(
        self, since: Optional[datetime] = None, queue_name: Optional[str] = None
    ) -> list[QueueMetrics]:
        since = since or utcnow() - timedelta(hours=24)
        return await self.service.store.get_aggregate_metrics(since, queue_name)

    async def get_throughput(
        self, queue_name: Optional[str] = None, bucket: str = "hour", periods: int = 24
    ) -> list[dict[str, Any]]:
        return await self.service.get_throughput(queue_name, bucket, periods)

    async def cleanup(self, retention_days: Optional[int] = None) -> int:
        """Delete terminal jobs past the retention window."""
        return await self.service.cleanup_old_jobs(retention_days)

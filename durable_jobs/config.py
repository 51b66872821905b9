"""Configuration for the durable jobs platform."""

import json
import os
from typing import Any, Dict, Optional

DEFAULT_QUEUE_CONFIG: Dict[str, Any] = {
    "concurrency_limit": 5,
    "retry_delay_seconds": 60,
    "max_retries": 3,
    "timeout_seconds": 300,
}


class DurableJobsConfig:
    """Configuration object for durable jobs."""

    def __init__(
        self,
        db_dsn: str,
        poll_interval_seconds: float = 1.0,
        error_backoff_seconds: float = 5.0,
        stuck_job_timeout_seconds: int = 3600,
        dead_worker_timeout_seconds: int = 600,
        supervisor_interval_seconds: int = 60,
        scheduler_interval_seconds: int = 10,
        metrics_interval_seconds: int = 300,
        metrics_bucket_seconds: int = 3600,
        cleanup_interval_seconds: int = 86400,
        retention_days: int = 30,
        per_queue_config: Optional[Dict[str, Dict[str, Any]]] = None,
        handlers_module: Optional[str] = None,
    ):
        self.db_dsn = db_dsn
        self.poll_interval_seconds = poll_interval_seconds
        self.error_backoff_seconds = error_backoff_seconds
        self.stuck_job_timeout_seconds = stuck_job_timeout_seconds
        self.dead_worker_timeout_seconds = dead_worker_timeout_seconds
        self.supervisor_interval_seconds = supervisor_interval_seconds
        self.scheduler_interval_seconds = scheduler_interval_seconds
        self.metrics_interval_seconds = metrics_interval_seconds
        self.metrics_bucket_seconds = metrics_bucket_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.retention_days = retention_days
        self.per_queue_config = per_queue_config or {}
        self.handlers_module = handlers_module

        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be positive")
        if self.retention_days < 0:
            raise ValueError("retention_days must not be negative")
        if self.metrics_bucket_seconds <= 0:
            raise ValueError("metrics_bucket_seconds must be positive")

    @classmethod
    def from_env(cls) -> "DurableJobsConfig":
        """Create config from environment variables."""
        db_dsn = os.getenv("DURABLE_JOBS_DB_DSN")
        if not db_dsn:
            raise ValueError("DURABLE_JOBS_DB_DSN environment variable is required")

        per_queue_config_str = os.getenv("DURABLE_JOBS_QUEUES")
        per_queue_config = None
        if per_queue_config_str:
            try:
                per_queue_config = json.loads(per_queue_config_str)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON in DURABLE_JOBS_QUEUES: {e}") from e
            if not isinstance(per_queue_config, dict):
                raise ValueError("DURABLE_JOBS_QUEUES must be a JSON object")

        return cls(
            db_dsn=db_dsn,
            poll_interval_seconds=_env_number(
                "DURABLE_JOBS_POLL_INTERVAL_SECONDS", 1.0, float
            ),
            error_backoff_seconds=_env_number(
                "DURABLE_JOBS_ERROR_BACKOFF_SECONDS", 5.0, float
            ),
            stuck_job_timeout_seconds=_env_number(
                "DURABLE_JOBS_STUCK_JOB_TIMEOUT_SECONDS", 3600
            ),
            dead_worker_timeout_seconds=_env_number(
                "DURABLE_JOBS_DEAD_WORKER_TIMEOUT_SECONDS", 600
            ),
            supervisor_interval_seconds=_env_number(
                "DURABLE_JOBS_SUPERVISOR_INTERVAL_SECONDS", 60
            ),
            scheduler_interval_seconds=_env_number(
                "DURABLE_JOBS_SCHEDULER_INTERVAL_SECONDS", 10
            ),
            metrics_interval_seconds=_env_number(
                "DURABLE_JOBS_METRICS_INTERVAL_SECONDS", 300
            ),
            metrics_bucket_seconds=_env_number(
                "DURABLE_JOBS_METRICS_BUCKET_SECONDS", 3600
            ),
            cleanup_interval_seconds=_env_number(
                "DURABLE_JOBS_CLEANUP_INTERVAL_SECONDS", 86400
            ),
            retention_days=_env_number("DURABLE_JOBS_RETENTION_DAYS", 30),
            per_queue_config=per_queue_config,
            handlers_module=os.getenv("DURABLE_JOBS_HANDLERS_MODULE"),
        )

    def get_queue_defaults(self, queue_name: str) -> Dict[str, Any]:
        """Get the settings a new queue is created with."""
        defaults = dict(DEFAULT_QUEUE_CONFIG)
        defaults.update(self.per_queue_config.get(queue_name, {}))
        return defaults


def _env_number(name: str, default, cast=int):
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError as e:
        raise ValueError(f"Invalid value for {name}: {raw!r}") from e

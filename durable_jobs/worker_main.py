"""CLI entrypoint and programmatic interface for worker."""

import argparse
import asyncio
import importlib
import logging
import os
import signal
import sys
from typing import Optional

import asyncpg

from durable_jobs.config import DurableJobsConfig
from durable_jobs.registry import JobRegistry, job_registry
from durable_jobs.worker import run_worker_loop


def setup_logging():
    """Setup logging configuration."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def create_db_pool(config: DurableJobsConfig):
    """Create database connection pool."""
    return await asyncpg.create_pool(config.db_dsn, min_size=2, max_size=10)


def load_handlers(handlers_module: Optional[str], logger: logging.Logger) -> None:
    """Import the module whose import registers the job handlers."""
    if not handlers_module:
        logger.warning(
            "DURABLE_JOBS_HANDLERS_MODULE not set, no handlers will be available"
        )
        return

    try:
        importlib.import_module(handlers_module)
        logger.info(f"Loaded handlers from {handlers_module}")
    except ImportError as e:
        logger.warning(f"Failed to import handlers module {handlers_module}: {e}")


async def run_worker(
    queues: list[str],
    config: Optional[DurableJobsConfig] = None,
    db_pool=None,
    registry: Optional[JobRegistry] = None,
    logger: Optional[logging.Logger] = None,
    shutdown_event: Optional[asyncio.Event] = None,
    hostname: Optional[str] = None,
    poll_interval_seconds: Optional[float] = None,
    handlers_module: Optional[str] = None,
):
    """
    Run the worker programmatically.

    Args:
        queues: Queue names to process (e.g. ['default', 'emails'])
        config: DurableJobsConfig instance. If None, will load from environment.
        db_pool: Database connection pool. If None, will create from config.
        registry: JobRegistry instance. If None, will use global job_registry.
        logger: Logger instance. If None, will create default logger.
        shutdown_event: Optional asyncio.Event for graceful shutdown.
        hostname: Hostname reported for the worker.
        poll_interval_seconds: Overrides the configured poll interval.
        handlers_module: Module path to load handlers from. If None, uses config.handlers_module.

    Example:
        ```python
        from durable_jobs import run_worker, DurableJobsConfig
        import asyncio

        asyncio.run(run_worker(
            queues=["default"],
            config=DurableJobsConfig.from_env(),
            handlers_module="myapp.jobs.handlers",
        ))
        ```
    """
    if config is None:
        config = DurableJobsConfig.from_env()

    if logger is None:
        logger = logging.getLogger(__name__)

    if registry is None:
        registry = job_registry

    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    load_handlers(handlers_module or config.handlers_module, logger)

    db_pool_provided = db_pool is not None
    if db_pool is None:
        db_pool = await create_db_pool(config)

    try:
        await run_worker_loop(
            config=config,
            db_pool=db_pool,
            registry=registry,
            queues=queues,
            logger=logger,
            shutdown_event=shutdown_event,
            hostname=hostname,
            poll_interval_seconds=poll_interval_seconds,
        )
    finally:
        if not db_pool_provided and db_pool:
            await db_pool.close()


def parse_queues(value: str) -> list[str]:
    queues = [name.strip() for name in value.split(",") if name.strip()]
    if not queues:
        raise argparse.ArgumentTypeError("at least one queue name is required")
    return queues


def main():
    """Main entrypoint for worker."""
    setup_logging()
    logger = logging.getLogger(__name__)

    parser = argparse.ArgumentParser(description="Durable Jobs Worker")
    parser.add_argument(
        "--queues",
        type=parse_queues,
        default=["default"],
        help="Comma-separated queue names to process (default: default)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds to wait when no job is available (default: from config)",
    )
    parser.add_argument(
        "--hostname",
        default=None,
        help="Hostname reported for this worker (default: machine name)",
    )
    parser.add_argument(
        "--handlers-module",
        default=None,
        help="Module that registers job handlers (default: DURABLE_JOBS_HANDLERS_MODULE)",
    )

    args = parser.parse_args()

    try:
        config = DurableJobsConfig.from_env()
    except Exception as e:
        logger.error(f"Failed to load config: {e}")
        sys.exit(1)

    async def run():
        """Async main function."""
        shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            logger.info(f"Received signal {signum}, shutting down...")
            shutdown_event.set()

        for signum in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(signum, signal_handler, signum)

        try:
            logger.info(f"Starting worker for queues: {', '.join(args.queues)}...")
            await run_worker(
                queues=args.queues,
                config=config,
                registry=job_registry,
                logger=logger,
                shutdown_event=shutdown_event,
                hostname=args.hostname,
                poll_interval_seconds=args.poll_interval,
                handlers_module=args.handlers_module,
            )
        except Exception as e:
            logger.error(f"Fatal error in worker: {e}", exc_info=True)
            sys.exit(1)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()

"""CLI entrypoint for scheduler."""

import argparse
import asyncio
import logging
import os
import signal
import sys

import asyncpg

from durable_jobs.config import DurableJobsConfig
from durable_jobs.ddl import SCHEMA_DDL
from durable_jobs.scheduler import run_scheduler_loop


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


async def apply_schema(db_pool) -> None:
    """Create the tables and indexes if they do not exist."""
    async with db_pool.acquire() as conn:
        await conn.execute(SCHEMA_DDL)


def main():
    """Main entrypoint for scheduler."""
    setup_logging()
    logger = logging.getLogger(__name__)

    parser = argparse.ArgumentParser(description="Durable Jobs Scheduler")
    parser.add_argument(
        "--apply-schema",
        action="store_true",
        help="Create the database tables before starting",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Seconds between scheduler passes (default: from config)",
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

        db_pool = None
        try:
            logger.info("Creating database connection pool...")
            db_pool = await create_db_pool(config)

            if args.apply_schema:
                logger.info("Applying database schema...")
                await apply_schema(db_pool)

            logger.info("Starting scheduler loop...")
            await run_scheduler_loop(
                config=config,
                db_pool=db_pool,
                logger=logger,
                loop_interval_seconds=args.interval,
                shutdown_event=shutdown_event,
            )
        except Exception as e:
            logger.error(f"Fatal error in scheduler: {e}", exc_info=True)
            sys.exit(1)
        finally:
            if db_pool:
                logger.info("Closing database connection pool...")
                await db_pool.close()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()

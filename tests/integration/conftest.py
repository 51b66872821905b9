"""Fixtures for integration tests against a real PostgreSQL (via testcontainers)."""

import logging

import asyncpg
import pytest
import pytest_asyncio

from durable_jobs.config import DurableJobsConfig
from durable_jobs.ddl import SCHEMA_DDL
from durable_jobs.service import JobService

postgres = pytest.importorskip("testcontainers.postgres")

TABLES = "jobs, job_queues, job_logs, job_dependencies, job_workers, recurring_jobs, job_metrics"


@pytest.fixture(scope="module")
def postgres_container():
    """Create a PostgreSQL test container, skipping when Docker is unavailable."""
    try:
        container = postgres.PostgresContainer("postgres:15")
        container.start()
    except Exception as e:
        pytest.skip(f"Docker is not available: {e}")

    yield container

    container.stop()


@pytest.fixture(scope="module")
def db_dsn(postgres_container):
    """asyncpg-compatible DSN of the container."""
    url = postgres_container.get_connection_url()
    return url.replace("postgresql+psycopg2://", "postgresql://")


@pytest_asyncio.fixture
async def db_pool(db_dsn):
    """Create a database pool on a fresh schema."""
    pool = await asyncpg.create_pool(db_dsn, min_size=2, max_size=10)

    async with pool.acquire() as conn:
        await conn.execute(SCHEMA_DDL)
        await conn.execute(f"TRUNCATE {TABLES}")

    yield pool

    await pool.close()


@pytest.fixture
def config(db_dsn):
    """Create test configuration."""
    return DurableJobsConfig(db_dsn=db_dsn, poll_interval_seconds=0.05)


@pytest.fixture
def service(config, db_pool):
    """Create a JobService on the test database."""
    return JobService(config, db_pool, logging.getLogger("test"))

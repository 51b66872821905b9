"""Unit tests for the worker and scheduler entrypoints."""

import argparse
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from durable_jobs import scheduler_main, worker_main
from durable_jobs.ddl import SCHEMA_DDL


def test_parse_queues():
    """Test parsing a comma-separated queue list."""
    assert worker_main.parse_queues("default, emails,,reports") == ["default", "emails", "reports"]


def test_parse_queues_empty():
    """Test that an empty queue list is rejected."""
    with pytest.raises(argparse.ArgumentTypeError):
        worker_main.parse_queues(" , ")


def test_load_handlers_imports_module():
    """Test that the handlers module is imported."""
    logger = MagicMock()

    with patch("durable_jobs.worker_main.importlib.import_module") as mock_import:
        worker_main.load_handlers("myapp.jobs", logger)

    mock_import.assert_called_once_with("myapp.jobs")
    logger.info.assert_called_once()


def test_load_handlers_import_error_is_logged():
    """Test that a missing handlers module only logs a warning."""
    logger = MagicMock()

    worker_main.load_handlers("durable_jobs_missing_module", logger)

    logger.warning.assert_called_once()


def test_load_handlers_without_module():
    """Test the warning when no module is configured."""
    logger = MagicMock()

    worker_main.load_handlers(None, logger)

    assert "DURABLE_JOBS_HANDLERS_MODULE" in logger.warning.call_args[0][0]


@pytest.mark.asyncio
async def test_run_worker_closes_own_pool(config):
    """Test that run_worker closes a pool it created."""
    pool = MagicMock()
    pool.close = AsyncMock()

    with patch.object(worker_main, "create_db_pool", AsyncMock(return_value=pool)), patch.object(
        worker_main, "run_worker_loop", AsyncMock()
    ) as mock_loop:
        await worker_main.run_worker(["default"], config=config, logger=logging.getLogger("test"))

    assert mock_loop.call_args[1]["queues"] == ["default"]
    pool.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_worker_keeps_given_pool(config, mock_db_pool):
    """Test that run_worker leaves a caller's pool open."""
    mock_db_pool.close = AsyncMock()

    with patch.object(worker_main, "run_worker_loop", AsyncMock()):
        await worker_main.run_worker(["default"], config=config, db_pool=mock_db_pool)

    mock_db_pool.close.assert_not_called()


@pytest.mark.asyncio
async def test_apply_schema(mock_db_pool, mock_conn):
    """Test applying the schema runs the full DDL."""
    await scheduler_main.apply_schema(mock_db_pool)

    mock_conn.execute.assert_awaited_once_with(SCHEMA_DDL)

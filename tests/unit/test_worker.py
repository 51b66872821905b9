"""Unit tests for the worker loop."""

import asyncio
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from durable_jobs.errors import LeaseLostError, WorkerAlreadyRunningError
from durable_jobs.models import JobStatus
from durable_jobs.registry import JobRegistry
from durable_jobs.worker import ExecutionContext, JobWorker, WorkerState


@pytest.fixture
def mock_service(config):
    """A JobService stand-in with async methods."""
    service = MagicMock()
    service.config = config
    for name in (
        "register_worker",
        "worker_heartbeat",
        "stop_worker",
        "lease_next_job",
        "mark_job_completed",
        "mark_job_failed",
        "add_job_log",
        "update_progress",
    ):
        setattr(service, name, AsyncMock())
    service.lease_next_job.return_value = None
    return service


@pytest.fixture
def registry():
    """Registry with a succeeding and a failing handler."""
    registry = JobRegistry()

    @registry.handler("ok")
    async def ok(payload, ctx):
        await ctx.update_progress(50)
        return {"echo": payload}

    @registry.handler("boom")
    async def boom(payload, ctx):
        raise ValueError("Intentional test failure")

    return registry


@pytest.fixture
def worker(mock_service, registry):
    """A worker polling one queue with a short interval."""
    return JobWorker(mock_service, registry, ["default"], hostname="test-host", poll_interval_seconds=0.01)


def test_worker_requires_queues(mock_service, registry):
    """Test that a worker needs at least one queue."""
    with pytest.raises(ValueError):
        JobWorker(mock_service, registry, [])


def test_worker_defaults_from_config(mock_service, registry):
    """Test intervals fall back to configuration."""
    worker = JobWorker(mock_service, registry, ["default"])

    assert worker.poll_interval_seconds == 1.0
    assert worker.error_backoff_seconds == 5.0
    assert worker.state == WorkerState.STOPPED


@pytest.mark.asyncio
async def test_execute_success(worker, mock_service, make_job):
    """Test a successful handler completes the job with its result."""
    job = make_job(job_type="ok", status=JobStatus.PROCESSING, payload={"a": 1})

    await worker.execute(job)

    args = mock_service.mark_job_completed.call_args[0]
    assert args[0] is job
    assert args[1] == worker.worker_id
    assert args[2] == {"echo": {"a": 1}}
    assert args[3] >= 0
    mock_service.update_progress.assert_awaited_once_with(
        job.id, 50, None, worker_id=worker.worker_id
    )
    mock_service.mark_job_failed.assert_not_called()
    assert worker.current_job_id is None


@pytest.mark.asyncio
async def test_execute_failure_goes_through_retry(worker, mock_service, make_job):
    """Test a raising handler is recorded as a failure with its traceback."""
    job = make_job(job_type="boom", status=JobStatus.PROCESSING)

    await worker.execute(job)

    args = mock_service.mark_job_failed.call_args[0]
    assert args[0] is job
    assert isinstance(args[2], ValueError)
    assert "Intentional test failure" in args[3]
    mock_service.mark_job_completed.assert_not_called()


@pytest.mark.asyncio
async def test_execute_failure_recorded_when_job_log_write_fails(worker, mock_service, make_job):
    """Test a failing log write cannot leave the failed job in processing."""
    job = make_job(job_type="boom", status=JobStatus.PROCESSING)
    mock_service.add_job_log.side_effect = ConnectionError("connection reset")

    with pytest.raises(ConnectionError):
        await worker.execute(job)

    mock_service.mark_job_failed.assert_awaited_once()
    assert isinstance(mock_service.mark_job_failed.call_args[0][2], ValueError)
    assert worker.current_job_id is None


@pytest.mark.asyncio
async def test_execute_missing_handler_fails_job(worker, mock_service, make_job):
    """Test a job without a handler fails with a clear message."""
    job = make_job(job_type="unknown", status=JobStatus.PROCESSING)

    await worker.execute(job)

    error = mock_service.mark_job_failed.call_args[0][2]
    assert str(error) == "No handler registered for job type: unknown"


@pytest.mark.asyncio
async def test_execute_sets_heartbeat_job(worker, mock_service, make_job):
    """Test the heartbeat reports the job while it runs and clears it after."""
    job = make_job(job_type="ok", status=JobStatus.PROCESSING)

    await worker.execute(job)

    calls = mock_service.worker_heartbeat.call_args_list
    assert calls[0][0] == (worker.worker_id, job.id)
    assert calls[-1][0] == (worker.worker_id,)


@pytest.mark.asyncio
async def test_execute_lease_lost_is_not_fatal(worker, mock_service, make_job):
    """Test losing the lease while running only discards the outcome."""
    job = make_job(job_type="ok", status=JobStatus.PROCESSING)
    mock_service.mark_job_completed.side_effect = LeaseLostError(job.id, worker.worker_id)

    await worker.execute(job)

    assert worker.current_job_id is None


@pytest.mark.asyncio
async def test_run_once_polls_every_queue(mock_service, registry, make_job):
    """Test a cycle leases from each subscribed queue."""
    worker = JobWorker(mock_service, registry, ["a", "b"], poll_interval_seconds=0.01)
    mock_service.lease_next_job.side_effect = [make_job(job_type="ok", queue_name="a"), None]

    processed = await worker.run_once()

    assert processed == 1
    queues = [call[0][0] for call in mock_service.lease_next_job.call_args_list]
    assert queues == ["a", "b"]


@pytest.mark.asyncio
async def test_run_registers_and_stops(worker, mock_service):
    """Test the lifecycle: register, idle, stop, mark stopped."""
    task = asyncio.create_task(worker.run())
    await asyncio.sleep(0.05)

    assert worker.is_running
    worker.stop()
    await asyncio.wait_for(task, timeout=1)

    mock_service.register_worker.assert_awaited_once()
    args = mock_service.register_worker.call_args[0]
    assert args[0] == worker.worker_id
    assert args[1] == "test-host"
    assert args[3] == ["default"]
    mock_service.stop_worker.assert_awaited_once_with(worker.worker_id)
    assert worker.state == WorkerState.STOPPED
    assert not worker.is_running


@pytest.mark.asyncio
async def test_run_survives_store_errors(mock_service, registry):
    """Test that errors in a cycle are logged and the loop keeps going."""
    worker = JobWorker(
        mock_service, registry, ["default"], poll_interval_seconds=0.01, error_backoff_seconds=0.01
    )
    calls = []

    async def lease(queue_name, worker_id):
        calls.append(queue_name)
        if len(calls) == 1:
            raise ConnectionError("db down")
        return None

    mock_service.lease_next_job.side_effect = lease

    task = asyncio.create_task(worker.run())
    await asyncio.sleep(0.1)
    worker.stop()
    await asyncio.wait_for(task, timeout=1)

    assert len(calls) >= 2
    assert worker.state == WorkerState.STOPPED


@pytest.mark.asyncio
async def test_run_twice_raises(worker):
    """Test a worker cannot be started while running."""
    task = asyncio.create_task(worker.run())
    await asyncio.sleep(0.02)

    with pytest.raises(WorkerAlreadyRunningError):
        await worker.run()

    worker.stop()
    await asyncio.wait_for(task, timeout=1)


@pytest.mark.asyncio
async def test_shutdown_event_stops_worker(mock_service, registry):
    """Test an external shutdown event stops the worker."""
    shutdown_event = asyncio.Event()
    worker = JobWorker(
        mock_service, registry, ["default"], poll_interval_seconds=10, shutdown_event=shutdown_event
    )

    task = asyncio.create_task(worker.run())
    await asyncio.sleep(0.02)
    shutdown_event.set()
    await asyncio.wait_for(task, timeout=1)

    assert worker.state == WorkerState.STOPPED


@pytest.mark.asyncio
async def test_execution_context_log(mock_service, make_job):
    """Test the context writes log lines to the job."""
    job = make_job(attempts=1, timeout_seconds=30)
    logger = MagicMock()
    ctx = ExecutionContext(mock_service, job, logger)

    await ctx.log("WARNING", "slow response", {"ms": 900})

    assert ctx.attempt == 2
    assert ctx.timeout_seconds == 30
    mock_service.add_job_log.assert_awaited_once_with(job.id, "warning", "slow response", {"ms": 900})
    assert logger.log.call_count == 1


def test_worker_ids_are_unique(mock_service, registry):
    """Test each worker gets its own id."""
    a = JobWorker(mock_service, registry, ["default"])
    b = JobWorker(mock_service, registry, ["default"])

    assert a.worker_id != b.worker_id


@pytest.mark.asyncio
async def test_execution_context_progress_defaults_to_lease_holder(mock_service, make_job):
    """Test progress updates are scoped to the worker holding the lease."""
    holder = uuid4()
    job = make_job(status=JobStatus.PROCESSING, locked_by=holder)
    ctx = ExecutionContext(mock_service, job, MagicMock())

    await ctx.update_progress(75, {"rows": 300})

    assert ctx.worker_id == holder
    mock_service.update_progress.assert_awaited_once_with(
        job.id, 75, {"rows": 300}, worker_id=holder
    )

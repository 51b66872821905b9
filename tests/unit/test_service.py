"""Unit tests for service module."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from durable_jobs.errors import InvalidJobStateError, JobValidationError
from durable_jobs.models import JobStatus, QueueMetrics, Worker
from durable_jobs.service import JobService


@pytest.fixture
def service(config, mock_db_pool):
    """Create a JobService instance."""
    return JobService(config, mock_db_pool)


@pytest.mark.asyncio
async def test_create_job_uses_queue_defaults(service, make_job, make_queue):
    """Test that max_retries and timeout default to the queue's settings."""
    queue = make_queue(name="emails", max_retries=7, timeout_seconds=90)
    job = make_job(queue_name="emails")

    with patch.object(service.store, "get_or_create_queue", AsyncMock(return_value=queue)):
        with patch.object(service.store, "insert_job", AsyncMock(return_value=job)) as mock_insert:
            result = await service.create_job("tenant-123", "emails", "send_email", {"to": "x"})

    assert result == job.id
    kwargs = mock_insert.call_args[1]
    assert kwargs["max_attempts"] == 7
    assert kwargs["timeout_seconds"] == 90
    assert kwargs["queue_name"] == "emails"
    assert kwargs["tenant_id"] == "tenant-123"


@pytest.mark.asyncio
async def test_create_job_explicit_options(service, make_job, make_queue):
    """Test that explicit options override queue defaults."""
    with patch.object(service.store, "get_or_create_queue", AsyncMock(return_value=make_queue())):
        with patch.object(
            service.store, "insert_job", AsyncMock(return_value=make_job())
        ) as mock_insert:
            await service.create_job(
                None,
                "default",
                "send_email",
                {},
                priority=10,
                delay_ms=500,
                max_retries=1,
                timeout_seconds=5,
                idempotency_key="abc",
            )

    kwargs = mock_insert.call_args[1]
    assert kwargs["priority"] == 10
    assert kwargs["delay_ms"] == 500
    assert kwargs["max_attempts"] == 1
    assert kwargs["timeout_seconds"] == 5
    assert kwargs["idempotency_key"] == "abc"


@pytest.mark.asyncio
async def test_create_job_creates_unknown_queue_with_config_defaults(
    service, make_job, make_queue
):
    """Test that the queue is created from configured defaults."""
    service.config.per_queue_config = {"reports": {"concurrency_limit": 1}}

    with patch.object(
        service.store, "get_or_create_queue", AsyncMock(return_value=make_queue(name="reports"))
    ) as mock_queue:
        with patch.object(service.store, "insert_job", AsyncMock(return_value=make_job())):
            await service.create_job(None, "reports", "build_report", {})

    name, defaults = mock_queue.call_args[0]
    assert name == "reports"
    assert defaults["concurrency_limit"] == 1


@pytest.mark.asyncio
async def test_create_job_validation_error(service):
    """Test that invalid options raise JobValidationError before any write."""
    with patch.object(service.store, "insert_job", AsyncMock()) as mock_insert:
        with pytest.raises(JobValidationError):
            await service.create_job(None, "default", "send_email", {}, delay_ms=-5)
        with pytest.raises(JobValidationError):
            await service.create_job(None, "default", "", {})

    mock_insert.assert_not_called()


@pytest.mark.asyncio
async def test_create_jobs_batch(service, make_job, make_queue):
    """Test batch enqueue resolves each queue once and inserts together."""
    jobs = [make_job(), make_job()]

    with patch.object(
        service.store, "get_or_create_queue", AsyncMock(return_value=make_queue())
    ) as mock_queue:
        with patch.object(
            service.store, "insert_jobs", AsyncMock(return_value=jobs)
        ) as mock_insert:
            result = await service.create_jobs(
                "tenant-123",
                [
                    {"job_type": "send_email", "payload": {"n": 1}},
                    {"job_type": "send_email", "payload": {"n": 2}, "priority": 3},
                ],
            )

    assert result == [job.id for job in jobs]
    assert mock_queue.call_count == 1
    rows = mock_insert.call_args[0][0]
    assert [row["payload"] for row in rows] == [{"n": 1}, {"n": 2}]
    assert rows[1]["priority"] == 3


@pytest.mark.asyncio
async def test_list_jobs_validates_status(service):
    """Test that an unknown status filter is rejected."""
    with pytest.raises(JobValidationError, match="Unknown job status"):
        await service.list_jobs(status="sleeping")


@pytest.mark.asyncio
async def test_list_jobs_validates_limit(service):
    """Test that the page size is bounded."""
    with pytest.raises(JobValidationError):
        await service.list_jobs(limit=0)
    with pytest.raises(JobValidationError):
        await service.list_jobs(limit=5000)


@pytest.mark.asyncio
async def test_retry_job_with_reset(service, make_job):
    """Test manual retry resetting attempts."""
    job = make_job(status=JobStatus.FAILED, attempts=3, max_attempts=3)

    with patch.object(service.store, "get_job", AsyncMock(return_value=job)):
        with patch.object(
            service.store, "update_status", AsyncMock(return_value=job)
        ) as mock_update:
            await service.retry_job(job.id, reset_attempts=True)

    job_id, status, fields = mock_update.call_args[0]
    assert status == JobStatus.QUEUED
    assert fields["attempts"] == 0
    assert fields["next_retry_at"] is None
    assert fields["error_message"] is None


@pytest.mark.asyncio
async def test_retry_job_exhausted_without_reset(service, make_job):
    """Test that an exhausted job cannot be retried without resetting."""
    job = make_job(status=JobStatus.FAILED, attempts=3, max_attempts=3)

    with patch.object(service.store, "get_job", AsyncMock(return_value=job)):
        with pytest.raises(InvalidJobStateError, match="reset_attempts"):
            await service.retry_job(job.id)


@pytest.mark.asyncio
async def test_retry_job_keeps_attempts_without_reset(service, make_job):
    """Test retry without reset leaves the attempt counter alone."""
    job = make_job(status=JobStatus.FAILED, attempts=1, max_attempts=3)

    with patch.object(service.store, "get_job", AsyncMock(return_value=job)):
        with patch.object(
            service.store, "update_status", AsyncMock(return_value=job)
        ) as mock_update:
            await service.retry_job(job.id)

    assert "attempts" not in mock_update.call_args[0][2]


@pytest.mark.asyncio
async def test_retry_job_only_from_failed(service, make_job):
    """Test that only failed jobs can be retried."""
    job = make_job(status=JobStatus.COMPLETED)

    with patch.object(service.store, "get_job", AsyncMock(return_value=job)):
        with pytest.raises(InvalidJobStateError):
            await service.retry_job(job.id, reset_attempts=True)


@pytest.mark.asyncio
async def test_mark_job_failed_schedules_retry(service, make_job, make_queue):
    """Test a failure with attempts left is requeued with a retry time."""
    worker_id = uuid4()
    job = make_job(status=JobStatus.PROCESSING, attempts=0, locked_by=worker_id)

    with patch.object(service.store, "get_or_create_queue", AsyncMock(return_value=make_queue())):
        with patch.object(
            service.store, "update_status", AsyncMock(return_value=job)
        ) as mock_update:
            await service.mark_job_failed(job, worker_id, ValueError("boom"))

    _, status, fields = mock_update.call_args[0]
    assert status == JobStatus.QUEUED
    assert fields["attempts"] == 1
    assert fields["next_retry_at"] is not None
    assert mock_update.call_args[1]["locked_by"] == worker_id


@pytest.mark.asyncio
async def test_mark_job_failed_exhausted(service, make_job, make_queue):
    """Test the last failure fails the job permanently."""
    worker_id = uuid4()
    job = make_job(status=JobStatus.PROCESSING, attempts=2, max_attempts=3)

    with patch.object(service.store, "get_or_create_queue", AsyncMock(return_value=make_queue())):
        with patch.object(
            service.store, "update_status", AsyncMock(return_value=job)
        ) as mock_update:
            await service.mark_job_failed(job, worker_id, ValueError("boom"))

    assert mock_update.call_args[0][1] == JobStatus.FAILED


@pytest.mark.asyncio
async def test_add_dependency_on_itself(service):
    """Test that a job cannot depend on itself."""
    job_id = uuid4()

    with pytest.raises(JobValidationError):
        await service.add_dependency(job_id, job_id)


@pytest.mark.asyncio
async def test_add_dependency_to_running_job(service, make_job):
    """Test that dependencies cannot be added once a job has started."""
    job = make_job(status=JobStatus.PROCESSING)

    with patch.object(service.store, "get_job", AsyncMock(return_value=job)):
        with pytest.raises(JobValidationError):
            await service.add_dependency(job.id, uuid4())


@pytest.mark.asyncio
async def test_get_queue_stats(service, make_queue):
    """Test combining counts and metrics for a queue."""
    queue = make_queue(name="emails")
    metrics = QueueMetrics("emails", jobs_completed=12)

    with patch.object(service.store, "get_queue", AsyncMock(return_value=queue)):
        with patch.object(
            service.store,
            "count_jobs_by_status",
            AsyncMock(return_value={"emails": {"queued": 2}}),
        ):
            with patch.object(
                service.store, "get_aggregate_metrics", AsyncMock(return_value=[metrics])
            ):
                stats = await service.get_queue_stats("emails")

    assert stats.queue_name == "emails"
    assert stats.status_counts["queued"] == 2
    assert stats.status_counts["completed"] == 0
    assert stats.metrics.jobs_completed == 12


@pytest.mark.asyncio
async def test_get_all_queue_stats(service, make_queue):
    """Test stats for every queue, including ones without jobs."""
    queues = [make_queue(name="default"), make_queue(name="emails")]

    with patch.object(service.store, "list_queues", AsyncMock(return_value=queues)):
        with patch.object(
            service.store,
            "count_jobs_by_status",
            AsyncMock(return_value={"default": {"failed": 1}}),
        ):
            with patch.object(service.store, "get_aggregate_metrics", AsyncMock(return_value=[])):
                stats = await service.get_all_queue_stats(period=timedelta(hours=1))

    assert [s.queue_name for s in stats] == ["default", "emails"]
    assert stats[0].status_counts["failed"] == 1
    assert stats[1].status_counts["failed"] == 0


@pytest.mark.asyncio
async def test_get_dashboard(service, make_queue, make_job):
    """Test the dashboard combines totals, queues, workers, metrics and recent jobs."""
    queues = [make_queue(name="default"), make_queue(name="emails")]
    worker = Worker(uuid4(), "host-1", 42, ["default"])
    recent = [make_job()]
    metrics = QueueMetrics("emails", jobs_completed=5)
    counts = {"default": {"queued": 2, "failed": 1}, "emails": {"queued": 1, "completed": 5}}

    with patch.object(service.store, "list_queues", AsyncMock(return_value=queues)):
        with patch.object(service.store, "count_jobs_by_status", AsyncMock(return_value=counts)):
            with patch.object(
                service.store, "get_aggregate_metrics", AsyncMock(return_value=[metrics])
            ):
                with patch.object(service.store, "list_workers", AsyncMock(return_value=[worker])):
                    with patch.object(
                        service.store, "list_jobs", AsyncMock(return_value=recent)
                    ) as list_jobs:
                        dashboard = await service.get_dashboard()

    assert dashboard.totals["queued"] == 3
    assert dashboard.totals["failed"] == 1
    assert dashboard.totals["completed"] == 5
    assert dashboard.totals["processing"] == 0
    assert [s.queue_name for s in dashboard.queues] == ["default", "emails"]
    assert dashboard.workers == [worker]
    assert dashboard.metrics == [metrics]
    assert dashboard.recent_jobs == recent
    assert list_jobs.call_args.kwargs["limit"] == 20
    assert list_jobs.call_args.kwargs["created_after"] is not None

    data = dashboard.to_dict()
    assert data["totals"]["queued"] == 3
    assert data["workers"][0]["hostname"] == "host-1"
    assert len(data["recent_jobs"]) == 1


@pytest.mark.asyncio
async def test_update_progress_passes_worker(service):
    """Test progress updates carry the lease holder to the store."""
    job_id, worker_id = uuid4(), uuid4()

    with patch.object(service.store, "update_progress", AsyncMock()) as update_progress:
        await service.update_progress(job_id, 40, {"step": 2}, worker_id=worker_id)

    update_progress.assert_awaited_once_with(job_id, 40, {"step": 2}, locked_by=worker_id)


@pytest.mark.asyncio
async def test_create_scheduled_job(service, make_queue, make_recurring_job):
    """Test creating a recurring definition."""
    recurring = make_recurring_job()

    with patch.object(service.store, "get_or_create_queue", AsyncMock(return_value=make_queue())):
        with patch.object(
            service.store, "insert_recurring_job", AsyncMock(return_value=recurring)
        ) as mock_insert:
            result = await service.create_scheduled_job(
                "nightly-report", "scheduled", "build_report", {"kind": "daily"},
                cron_expression="0 2 * * *",
            )

    assert result is recurring
    definition = mock_insert.call_args[0][1]
    assert definition["cron_expression"] == "0 2 * * *"
    assert definition["interval_seconds"] is None


@pytest.mark.asyncio
async def test_create_scheduled_job_invalid_cron(service):
    """Test that an invalid cron expression is rejected."""
    with pytest.raises(JobValidationError):
        await service.create_scheduled_job(
            "bad", "scheduled", "build_report", cron_expression="not cron"
        )


@pytest.mark.asyncio
async def test_update_scheduled_job_switches_schedule(service, make_recurring_job):
    """Test that giving a cron expression replaces the interval."""
    recurring = make_recurring_job(interval_seconds=60)

    with patch.object(service.store, "get_recurring_job", AsyncMock(return_value=recurring)):
        with patch.object(
            service.store, "update_recurring_job", AsyncMock(return_value=recurring)
        ) as mock_update:
            await service.update_scheduled_job(recurring.id, cron_expression="*/5 * * * *")

    changes = mock_update.call_args[0][1]
    assert changes == {"cron_expression": "*/5 * * * *", "interval_seconds": None}


@pytest.mark.asyncio
async def test_trigger_scheduled_job(service, make_job):
    """Test firing a definition on demand."""
    job = make_job()
    recurring_id = uuid4()

    with patch.object(
        service.store, "fire_recurring_job", AsyncMock(return_value=job)
    ) as mock_fire:
        result = await service.trigger_scheduled_job(recurring_id)

    assert result == job.id
    assert mock_fire.call_args[0][0] == recurring_id


@pytest.mark.asyncio
async def test_cleanup_defaults_to_configured_retention(service):
    """Test cleanup uses the configured retention window."""
    with patch.object(service.store, "cleanup_old_jobs", AsyncMock(return_value=3)) as mock_cleanup:
        assert await service.cleanup_old_jobs() == 3

    mock_cleanup.assert_called_once_with(30)


@pytest.mark.asyncio
async def test_requeue_stuck_jobs_uses_timeout(service):
    """Test the stuck job cutoff is based on the configured timeout."""
    with patch.object(
        service.store, "requeue_stuck_jobs", AsyncMock(return_value=0)
    ) as mock_requeue:
        await service.requeue_stuck_jobs()

    assert mock_requeue.call_count == 1


@pytest.mark.asyncio
async def test_get_throughput_validates_bucket(service):
    """Test that unknown throughput buckets are rejected."""
    with pytest.raises(JobValidationError):
        await service.get_throughput(bucket="fortnight")

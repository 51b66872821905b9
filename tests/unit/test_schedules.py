"""Unit tests for recurring schedule evaluation."""

from datetime import datetime, timedelta, timezone

import pytest

from durable_jobs.errors import JobValidationError
from durable_jobs.schedules import cron_trigger, is_due, next_fire_time, resolve_timezone


def test_interval_never_run_is_due(make_recurring_job, now):
    """Test that an interval job that never ran fires right away."""
    recurring = make_recurring_job(interval_seconds=60)

    assert next_fire_time(recurring, now) == now
    assert is_due(recurring, now)


def test_interval_not_yet_due(make_recurring_job, now):
    """Test an interval job within its interval."""
    recurring = make_recurring_job(interval_seconds=60, last_run_at=now - timedelta(seconds=30))

    assert not is_due(recurring, now)


def test_interval_due_after_interval(make_recurring_job, now):
    """Test an interval job once the interval has elapsed."""
    recurring = make_recurring_job(interval_seconds=60, last_run_at=now - timedelta(seconds=60))

    assert is_due(recurring, now)


def test_disabled_job_is_never_due(make_recurring_job, now):
    """Test that disabled definitions never fire."""
    recurring = make_recurring_job(is_enabled=False)

    assert not is_due(recurring, now)


def test_cron_due_after_boundary(make_recurring_job, now):
    """Test an hourly cron created before the hour."""
    recurring = make_recurring_job(
        interval_seconds=None,
        cron_expression="0 * * * *",
        created_at=now - timedelta(minutes=30),
    )

    assert next_fire_time(recurring, now + timedelta(seconds=5)) == now
    assert is_due(recurring, now + timedelta(seconds=5))


def test_cron_not_due_again_after_firing(make_recurring_job, now):
    """Test that an hourly cron waits for the next hour after firing."""
    recurring = make_recurring_job(
        interval_seconds=None,
        cron_expression="0 * * * *",
        created_at=now - timedelta(days=1),
        last_run_at=now + timedelta(seconds=5),
    )

    assert not is_due(recurring, now + timedelta(minutes=30))
    assert is_due(recurring, now + timedelta(hours=1))


def test_cron_uses_definition_timezone(make_recurring_job):
    """Test that the cron expression is evaluated in the definition's timezone."""
    # 09:00 in Berlin is 08:00 UTC in January
    recurring = make_recurring_job(
        interval_seconds=None,
        cron_expression="0 9 * * *",
        timezone="Europe/Berlin",
        last_run_at=datetime(2024, 1, 14, 8, 0, tzinfo=timezone.utc),
    )

    assert not is_due(recurring, datetime(2024, 1, 15, 7, 59, tzinfo=timezone.utc))
    assert is_due(recurring, datetime(2024, 1, 15, 8, 0, tzinfo=timezone.utc))


def test_cron_trigger_rejects_bad_expression():
    """Test that malformed expressions raise JobValidationError."""
    with pytest.raises(JobValidationError):
        cron_trigger("61 * * * *")

    with pytest.raises(JobValidationError):
        cron_trigger("* * *")


def test_resolve_timezone():
    """Test timezone lookup."""
    assert resolve_timezone("UTC") is not None

    with pytest.raises(JobValidationError):
        resolve_timezone("Not/AZone")

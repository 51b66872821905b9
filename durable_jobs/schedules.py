"""Cron and interval schedule evaluation for recurring jobs."""

from datetime import datetime, timedelta, tzinfo
from typing import Optional

from apscheduler.triggers.cron import CronTrigger
from dateutil import tz

from durable_jobs.errors import JobValidationError
from durable_jobs.models import RecurringJob


def resolve_timezone(name: str) -> tzinfo:
    """Look up an IANA timezone name."""
    zone = tz.gettz(name) if name else None
    if zone is None:
        raise JobValidationError(f"Unknown timezone: {name!r}")
    return zone


def cron_trigger(expression: str, timezone: str = "UTC") -> CronTrigger:
    """Build a trigger from a five-field crontab expression."""
    try:
        return CronTrigger.from_crontab(expression, timezone=timezone)
    except (ValueError, LookupError) as e:
        raise JobValidationError(f"Invalid cron expression {expression!r}: {e}") from e


def next_fire_time(recurring: RecurringJob, now: datetime) -> Optional[datetime]:
    """When the definition is next due, counted from its last run."""
    base = recurring.last_run_at or recurring.created_at

    if recurring.cron_expression:
        trigger = cron_trigger(recurring.cron_expression, recurring.timezone)
        return trigger.get_next_fire_time(base, now)

    if recurring.interval_seconds:
        if recurring.last_run_at is None:
            return now
        return recurring.last_run_at + timedelta(seconds=recurring.interval_seconds)

    return None


def is_due(recurring: RecurringJob, now: datetime) -> bool:
    """Whether an enabled recurring job should fire at ``now``."""
    if not recurring.is_enabled:
        return False
    fire_at = next_fire_time(recurring, now)
    return fire_at is not None and fire_at <= now

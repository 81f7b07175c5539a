"""Next-run calculation and due-ness evaluation for schedules."""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta

from scheduler import cron
from scheduler.models import Schedule, ScheduleFrequency

# Cron probing covers one day, one minute at a time
CRON_PROBE_LIMIT = 1440

_FIXED_INTERVALS = {
    ScheduleFrequency.HOURLY: timedelta(hours=1),
    ScheduleFrequency.DAILY:  timedelta(hours=24),
    ScheduleFrequency.WEEKLY: timedelta(days=7),
}

# Minutes since last_run_at after which a schedule without next_run_at is due
FREQUENCY_THRESHOLD_MINUTES = {
    ScheduleFrequency.HOURLY:  60,
    ScheduleFrequency.DAILY:   1440,
    ScheduleFrequency.WEEKLY:  10080,
    ScheduleFrequency.MONTHLY: 43200,
}


def add_month(dt: datetime) -> datetime:
    """Same day and time next month, clamped to the last day of a short month."""
    year, month = (dt.year + 1, 1) if dt.month == 12 else (dt.year, dt.month + 1)
    last_day = calendar.monthrange(year, month)[1]
    return dt.replace(year=year, month=month, day=min(dt.day, last_day))


def next_cron_occurrence(expr: str, from_: datetime) -> datetime:
    """First minute after *from_* matching *expr*, or ``from_ + 24h``."""
    candidate = from_.replace(second=0, microsecond=0)
    for _ in range(CRON_PROBE_LIMIT):
        candidate += timedelta(minutes=1)
        if cron.matches(expr, candidate):
            return candidate
    return from_ + timedelta(hours=24)


def compute_next(
    frequency: ScheduleFrequency,
    cron_expression: str | None,
    from_: datetime,
) -> datetime:
    """Return the next due time strictly after *from_*."""
    if frequency in _FIXED_INTERVALS:
        return from_ + _FIXED_INTERVALS[frequency]
    if frequency == ScheduleFrequency.MONTHLY:
        return add_month(from_)
    if frequency == ScheduleFrequency.CRON and cron_expression:
        return next_cron_occurrence(cron_expression, from_)
    return from_ + timedelta(hours=24)


def compute_next_for(schedule: Schedule, from_: datetime) -> datetime:
    return compute_next(schedule.frequency, schedule.cron_expression, from_)


def is_due(schedule: Schedule, now: datetime) -> bool:
    """Decide whether *schedule* should fire at *now*.

    Order of checks:
      1. ``ends_at`` in the past        → never due
      2. ``next_run_at`` reached        → due
      3. no next_run_at, cron set       → due iff *now*'s minute matches
      4. ``last_run_at`` + threshold    → due once the cadence has elapsed
      5. brand-new schedule             → not due
    """
    if not schedule.is_active:
        return False
    if schedule.ends_at is not None and now >= schedule.ends_at:
        return False
    if schedule.next_run_at is not None:
        # A planned future run suppresses the fallbacks below; otherwise a
        # cron schedule could fire twice within its matching minute.
        return schedule.next_run_at <= now
    if schedule.cron_expression:
        return cron.matches(schedule.cron_expression, now)
    if schedule.last_run_at is not None:
        threshold = FREQUENCY_THRESHOLD_MINUTES.get(schedule.frequency)
        if threshold is None:
            return False
        elapsed = (now - schedule.last_run_at).total_seconds() / 60
        return elapsed >= threshold
    return False

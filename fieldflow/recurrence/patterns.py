# fieldflow/recurrence/patterns.py
"""
Occurrence dates of a recurring series.

Dates are always counted from ``series.start_date`` rather than from the last
generated instance, so the same series yields the same dates no matter when
or how often the generator runs.
"""
from calendar import monthrange
from datetime import date, datetime, time, timedelta
from typing import Iterator, List, Optional

from cronsim import CronSim

from fieldflow.common.recurrence import RecurrencePattern, RecurringSeries

_MONTH_STEPS = {
    RecurrencePattern.MONTHLY: 1,
    RecurrencePattern.QUARTERLY: 3,
    RecurrencePattern.YEARLY: 12,
}


def add_months(anchor: date, months: int, day: int) -> date:
    """``anchor``'s month moved by ``months``, on ``day`` clamped to that month's length."""
    years, month_index = divmod(anchor.month - 1 + months, 12)
    year = anchor.year + years
    month = month_index + 1
    return date(year, month, min(day, monthrange(year, month)[1]))


def _fixed_step(first: date, step_days: int, lower: date) -> Iterator[date]:
    current = first
    if current < lower:
        skipped = -(-(lower - current).days // step_days)
        current += timedelta(days=skipped * step_days)
    while True:
        yield current
        current += timedelta(days=step_days)


def _month_step(series: RecurringSeries, lower: date) -> Iterator[date]:
    step = _MONTH_STEPS[series.pattern] * series.interval
    day = series.day_of_month or series.start_date.day
    base = series.start_date.replace(day=1)
    if add_months(base, 0, day) < series.start_date:
        base = add_months(base, 1, 1)

    months_behind = (lower.year - base.year) * 12 + lower.month - base.month
    k = max(0, months_behind // step)
    while True:
        yield add_months(base, k * step, day)
        k += 1


def _cron(series: RecurringSeries, lower: date) -> Iterator[date]:
    # One occurrence per day however often the expression fires within it.
    start = datetime.combine(lower, time.min) - timedelta(minutes=1)
    last: Optional[date] = None
    for moment in CronSim(series.cron, start):
        day = moment.date()
        if day != last:
            last = day
            yield day


def occurrences(
    series: RecurringSeries,
    start: date,
    end: date,
    limit: Optional[int] = None,
) -> List[date]:
    """Occurrence dates of ``series`` within ``[start, end]``, bounded by the series' own dates."""
    lower = max(start, series.start_date)
    upper = min(end, series.end_date) if series.end_date else end
    if lower > upper:
        return []

    pattern = series.pattern
    if pattern == RecurrencePattern.DAILY:
        candidates = _fixed_step(series.start_date, series.interval, lower)
    elif pattern == RecurrencePattern.WEEKLY:
        weekday = series.day_of_week
        if weekday is None:
            weekday = series.start_date.weekday()
        first = series.start_date + timedelta(days=(weekday - series.start_date.weekday()) % 7)
        candidates = _fixed_step(first, 7 * series.interval, lower)
    elif pattern in _MONTH_STEPS:
        candidates = _month_step(series, lower)
    else:
        candidates = _cron(series, lower)

    dates: List[date] = []
    for candidate in candidates:
        if candidate > upper:
            break
        if candidate < lower:
            continue
        dates.append(candidate)
        if limit is not None and len(dates) >= limit:
            break
    return dates

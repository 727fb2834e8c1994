"""Recurrence calculator — pure business logic.

Computes the next due date of a RecurrencePattern from a reference date.
Weekdays are numbered Sunday=0 .. Saturday=6.

No I/O: this module only transforms data.
"""

from __future__ import annotations

import calendar
import logging
from collections.abc import Collection, Iterator
from datetime import date, datetime, timedelta

from choreminder.data.models import LAST_WEEK, RecurrenceKind, RecurrencePattern

logger = logging.getLogger(__name__)

# (month, day) pairs observed every year
FIXED_HOLIDAYS: frozenset[tuple[int, int]] = frozenset({
    (1, 1),    # New Year's Day
    (7, 4),    # Independence Day
    (12, 25),  # Christmas Day
})


def weekday_sunday_first(d: date) -> int:
    """Python's Monday=0 weekday converted to Sunday=0."""
    return (d.weekday() + 1) % 7


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def add_months(d: datetime, months: int, day: int | None = None) -> datetime:
    """Move `d` forward by `months`, clamping the day to the target month.

    `day` overrides the day of month before clamping (31 in February → 28/29).
    """
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    wanted = day if day is not None else d.day
    return d.replace(year=year, month=month, day=min(wanted, days_in_month(year, month)))


def nth_weekday_of_month(year: int, month: int, week: int, weekday: int) -> int:
    """Day of month of the `week`-th `weekday` (Sunday=0); week -1 means last."""
    if week == LAST_WEEK:
        last_day = days_in_month(year, month)
        last_wd = weekday_sunday_first(date(year, month, last_day))
        return last_day - (last_wd - weekday) % 7
    first_wd = weekday_sunday_first(date(year, month, 1))
    return 1 + (weekday - first_wd) % 7 + (week - 1) * 7


def is_holiday(d: date, extra_holidays: Collection[date] = ()) -> bool:
    return (d.month, d.day) in FIXED_HOLIDAYS or d in extra_holidays


def _skip_holidays(d: datetime, extra_holidays: Collection[date]) -> datetime:
    if not is_holiday(d.date(), extra_holidays):
        return d
    # Recursive in case the next day is also a holiday
    return _skip_holidays(d + timedelta(days=1), extra_holidays)


def next_due_date(
    pattern: RecurrencePattern,
    from_date: datetime,
    extra_holidays: Collection[date] = (),
) -> datetime:
    """Return the next occurrence of `pattern` strictly after `from_date`.

    The time of day of `from_date` is carried over to the result.
    """
    if pattern.kind == RecurrenceKind.DAILY:
        nxt = from_date + timedelta(days=pattern.interval)

    elif pattern.kind == RecurrenceKind.WEEKLY:
        if pattern.days_of_week:
            current = weekday_sunday_first(from_date)
            later = [d for d in pattern.days_of_week if d > current]
            if later:
                delta = later[0] - current
            else:
                delta = 7 - current + pattern.days_of_week[0]
            nxt = from_date + timedelta(days=delta + (pattern.interval - 1) * 7)
        else:
            nxt = from_date + timedelta(days=7 * pattern.interval)

    elif pattern.kind == RecurrenceKind.MONTHLY:
        if pattern.day_of_month is not None:
            nxt = add_months(from_date, pattern.interval, day=pattern.day_of_month)
        elif pattern.week_of_month is not None:
            target = add_months(from_date, pattern.interval, day=1)
            day = nth_weekday_of_month(
                target.year, target.month, pattern.week_of_month, pattern.days_of_week[0],
            )
            nxt = target.replace(day=day)
        else:
            nxt = add_months(from_date, pattern.interval)

    else:  # CUSTOM: interval is a raw day count
        nxt = from_date + timedelta(days=pattern.interval)

    if pattern.skip_holidays:
        nxt = _skip_holidays(nxt, extra_holidays)

    return nxt


def occurrences(
    pattern: RecurrencePattern,
    start: datetime,
    until: datetime,
    extra_holidays: Collection[date] = (),
) -> Iterator[datetime]:
    """Yield successive due dates after `start` up to and including `until`.

    Stops early at the pattern's end_date. max_occurrences is enforced by
    the caller, which knows how many instances already exist.
    """
    current = start
    while True:
        nxt = next_due_date(pattern, current, extra_holidays)
        if nxt > until:
            return
        if pattern.end_date is not None and nxt.date() > pattern.end_date:
            return
        yield nxt
        current = nxt

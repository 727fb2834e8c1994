"""Send-window calculator — pure business logic.

Decides the earliest moment a notification may go out, given quiet hours,
allowed weekdays, a cooldown, and an hourly rate limit. Quiet-hours windows
are half-open ([start, end)) and may wrap past midnight.

No I/O: rate-limit capacity is supplied by the caller as a predicate.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection
from datetime import datetime, time, timedelta

from choreminder.core.recurrence import weekday_sunday_first

logger = logging.getLogger(__name__)

# Enough to cross two weeks of hourly slots before giving up
_MAX_ADJUSTMENTS = 24 * 14


def parse_hhmm(raw: str) -> time:
    """Parse "HH:MM" into a time; raises ValueError on malformed input."""
    hour, minute = (int(p) for p in raw.split(":"))
    return time(hour=hour, minute=minute)


def in_quiet_hours(moment: time, start: time, end: time) -> bool:
    """True when `moment` falls inside [start, end); windows may span midnight."""
    if start == end:
        return False
    if start < end:
        return start <= moment < end
    return moment >= start or moment < end


def adjust_for_quiet_hours(when: datetime, start: time, end: time) -> datetime:
    """Push `when` to the end of the quiet window if it falls inside it."""
    if not in_quiet_hours(when.time(), start, end):
        return when
    window_end = when.replace(hour=end.hour, minute=end.minute, second=0, microsecond=0)
    if window_end <= when:
        # Window wraps past midnight: it ends tomorrow
        window_end += timedelta(days=1)
    return window_end


def next_allowed_day(when: datetime, days_of_week: Collection[int]) -> datetime:
    """Return `when` if its weekday is allowed, else midnight of the next allowed day."""
    if weekday_sunday_first(when) in days_of_week:
        return when
    day = when.replace(hour=0, minute=0, second=0, microsecond=0)
    for _ in range(7):
        day += timedelta(days=1)
        if weekday_sunday_first(day) in days_of_week:
            return day
    raise ValueError(f"No allowed weekday in {sorted(days_of_week)}")


def hour_slot(when: datetime) -> tuple[datetime, datetime]:
    """The clock hour containing `when`, as [start, end)."""
    start = when.replace(minute=0, second=0, microsecond=0)
    return start, start + timedelta(hours=1)


def resolve_send_time(
    candidate: datetime,
    *,
    quiet_hours: tuple[time, time] | None = None,
    days_of_week: Collection[int] | None = None,
    not_before: datetime | None = None,
    has_capacity: Callable[[datetime], bool] | None = None,
) -> datetime:
    """Apply every scheduling constraint until the send time stops moving.

    Args:
        candidate: Initial send time (offset already applied).
        quiet_hours: (start, end) window during which sends are deferred.
        days_of_week: Allowed weekdays (Sunday=0); None allows every day.
        not_before: Earliest permitted time, e.g. the end of a cooldown.
        has_capacity: Predicate telling whether the clock hour containing the
            given time still has rate-limit capacity.

    Returns:
        The adjusted send time, never earlier than `candidate`.
    """
    when = candidate
    for _ in range(_MAX_ADJUSTMENTS):
        before = when
        if not_before is not None and when < not_before:
            when = not_before
        if days_of_week:
            when = next_allowed_day(when, days_of_week)
        if quiet_hours is not None:
            when = adjust_for_quiet_hours(when, *quiet_hours)
        if has_capacity is not None and not has_capacity(when):
            when = hour_slot(when)[1]
        if when == before:
            return when

    logger.warning("Send time did not settle after %d adjustments, using %s", _MAX_ADJUSTMENTS, when)
    return when

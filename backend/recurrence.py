"""
Next-fire-time resolution for reminders.

Everything here is pure calendar arithmetic: given a reminder and the current
instant, work out the next instant the reminder should fire, or None when it
should not fire again. Wall-clock time is kept in the reminder's own timezone,
so a 09:00 daily reminder stays at 09:00 local time across DST changes.
"""

import calendar
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import Frequency, Reminder, as_utc

logger = logging.getLogger(__name__)

MAX_WEEKDAY_PROBES = 7
MAX_MONTH_PROBES = 12


def local_weekday(dt: datetime) -> int:
    """Day of week with 0 = Sunday .. 6 = Saturday."""
    return (dt.weekday() + 1) % 7


def _at(day: date, hour: int, minute: int, tz: ZoneInfo) -> datetime:
    # fold=0: ambiguous wall times resolve to their first occurrence
    return datetime.combine(day, time(hour, minute), tzinfo=tz)


def _first_daily(reminder: Reminder, tz: ZoneInfo, after: datetime, not_before: datetime) -> datetime:
    hour, minute = reminder.time_of_day.hour, reminder.time_of_day.minute
    day = max(after, not_before).astimezone(tz).date()
    candidate = _at(day, hour, minute, tz)
    while candidate <= after or candidate < not_before:
        day += timedelta(days=1)
        candidate = _at(day, hour, minute, tz)
    return candidate


def _next_weekly(reminder: Reminder, tz: ZoneInfo, candidate: datetime) -> Optional[datetime]:
    days = set(reminder.days_of_week)
    if not days:
        return candidate

    hour, minute = reminder.time_of_day.hour, reminder.time_of_day.minute
    day = candidate.date()
    for _ in range(MAX_WEEKDAY_PROBES):
        probe = _at(day, hour, minute, tz)
        if local_weekday(probe) in days:
            return probe
        day += timedelta(days=1)
    return None


def _next_monthly(reminder: Reminder, tz: ZoneInfo, now: datetime, start: datetime) -> Optional[datetime]:
    hour, minute = reminder.time_of_day.hour, reminder.time_of_day.minute
    anchor = start.astimezone(tz).day
    base = max(now, start).astimezone(tz)
    year, month = base.year, base.month
    for _ in range(MAX_MONTH_PROBES + 1):
        # Short months clamp the anchor to their last day
        last_day = calendar.monthrange(year, month)[1]
        candidate = _at(date(year, month, min(anchor, last_day)), hour, minute, tz)
        if candidate > now and candidate >= start:
            return candidate
        month += 1
        if month > 12:
            year, month = year + 1, 1
    return None


def _next_once(reminder: Reminder, tz: ZoneInfo, now: datetime, start: datetime) -> Optional[datetime]:
    if reminder.last_fired_at is not None:
        return None
    candidate = _first_daily(reminder, tz, after=start - timedelta(microseconds=1), not_before=start)
    # Overdue and never fired: fire right away
    if candidate <= now:
        return now
    return candidate


def next_fire_time(reminder: Reminder, now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Compute the next instant (aware, UTC) at which ``reminder`` should fire.

    Returns None when the reminder is inactive, its active window is over, or no
    valid instant can be derived. Malformed recurrence data fails closed.
    """
    if not reminder.is_active:
        return None

    now = as_utc(now) if now is not None else datetime.now(timezone.utc)
    start = as_utc(reminder.start_date)
    end = as_utc(reminder.end_date)

    if end is not None and now > end:
        return None

    try:
        tz = ZoneInfo(reminder.timezone or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Reminder %s has unknown timezone %r", reminder.id, reminder.timezone)
        return None

    try:
        if reminder.frequency == Frequency.ONCE:
            candidate = _next_once(reminder, tz, now, start)
        elif reminder.frequency == Frequency.MONTHLY:
            candidate = _next_monthly(reminder, tz, now, start)
        else:
            candidate = _first_daily(reminder, tz, after=now, not_before=start)
            if reminder.frequency in (Frequency.WEEKLY, Frequency.CUSTOM):
                candidate = _next_weekly(reminder, tz, candidate)
    except (ValueError, OverflowError) as e:
        logger.warning("Could not resolve next fire time for reminder %s: %s", reminder.id, e)
        return None

    if candidate is None:
        return None
    candidate = candidate.astimezone(timezone.utc)
    if end is not None and candidate > end:
        return None
    return candidate

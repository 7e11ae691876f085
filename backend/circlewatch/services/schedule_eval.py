"""Timezone-aware evaluation of check-in windows.

Every function here is pure: the caller supplies ``now`` as an aware
datetime and a schedule (ORM row or anything exposing the same attributes),
and nothing is read from the clock or the database. Minutes-since-midnight
are taken from the local wall clock, so DST transitions shift the UTC
instant of a deadline but never its local time.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

MINUTES_PER_DAY = 24 * 60


def resolve_zone(identifier: str | None) -> ZoneInfo:
    """Return the IANA zone for ``identifier``, falling back to UTC."""

    try:
        return ZoneInfo(identifier or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def is_valid_zone(identifier: str) -> bool:
    try:
        ZoneInfo(identifier)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def _ensure_aware(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def local_now(schedule, now: datetime) -> datetime:
    return _ensure_aware(now).astimezone(resolve_zone(schedule.timezone_identifier))


def local_day(schedule, now: datetime) -> date:
    return local_now(schedule, now).date()


def weekday_index(moment: datetime) -> int:
    """Weekday with Sunday as 0 and Saturday as 6."""
    return (moment.weekday() + 1) % 7


def minutes_since_midnight(moment: datetime) -> int:
    return moment.hour * 60 + moment.minute


def window_start_minutes(schedule) -> int:
    return schedule.window_start_hour * 60 + schedule.window_start_minute


def window_end_minutes(schedule) -> int:
    return schedule.window_end_hour * 60 + schedule.window_end_minute


def deadline_minutes(schedule) -> int:
    return window_end_minutes(schedule) + (schedule.grace_period_minutes or 0)


def latest_deadline_minutes(tick_interval_minutes: int) -> int:
    """Last deadline a tick on the same local day still sees as missed."""

    return MINUTES_PER_DAY - tick_interval_minutes - 1


def is_active_day(schedule, now: datetime) -> bool:
    active = schedule.active_days or []
    return weekday_index(local_now(schedule, now)) in {int(day) for day in active}


def is_window_missed(schedule, now: datetime) -> bool:
    """True once local time is past window end plus the grace period."""

    return minutes_since_midnight(local_now(schedule, now)) > deadline_minutes(schedule)


def is_within_window(schedule, now: datetime) -> bool:
    if not is_active_day(schedule, now):
        return False
    current = minutes_since_midnight(local_now(schedule, now))
    return window_start_minutes(schedule) <= current <= window_end_minutes(schedule)


def is_in_grace_period(schedule, now: datetime) -> bool:
    current = minutes_since_midnight(local_now(schedule, now))
    return window_end_minutes(schedule) < current <= deadline_minutes(schedule)


def is_reminder_due(schedule, now: datetime) -> bool:
    """True inside the lead-time slot that ends at window end."""

    if not schedule.reminder_enabled or not is_active_day(schedule, now):
        return False
    current = minutes_since_midnight(local_now(schedule, now))
    end = window_end_minutes(schedule)
    lead = schedule.reminder_minutes_before or 0
    return end - lead <= current <= end


def missed_deadline(schedule, now: datetime) -> datetime:
    """UTC instant of today's window end plus grace, never later than ``now``.

    A deadline that falls in a spring-forward gap resolves with the
    pre-transition offset and can land after ``now``; it is clamped so the
    escalation clock never starts in the future.
    """

    moment = _ensure_aware(now)
    zone = resolve_zone(schedule.timezone_identifier)
    local_midnight = datetime.combine(local_day(schedule, moment), time(0, 0), tzinfo=zone)
    deadline = (local_midnight + timedelta(minutes=deadline_minutes(schedule))).astimezone(timezone.utc)
    return min(deadline, moment.astimezone(timezone.utc))


def day_bounds_utc(timezone_identifier: str | None, now: datetime) -> tuple[datetime, datetime]:
    """Return the UTC half-open interval covering "today" in the given zone."""

    zone = resolve_zone(timezone_identifier)
    today = _ensure_aware(now).astimezone(zone).date()
    start = datetime.combine(today, time(0, 0), tzinfo=zone)
    end = datetime.combine(today + timedelta(days=1), time(0, 0), tzinfo=zone)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)

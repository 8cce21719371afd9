"""Due-window arithmetic for weekly recurring class sessions.

Classes meet on a fixed weekday at a local wall-clock time in their own
timezone, inside the closed date range of a term. The reminder sweep runs
every few minutes and asks whether the next session is inside one of the
lead-time buckets right now.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum as PyEnum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..core.constants import DEFAULT_TIMEZONE, LOOKAHEAD_DAYS, ONE_DAY_WINDOW, ONE_HOUR_WINDOW
from .notification_ledger import NotificationType

logger = logging.getLogger(__name__)

ISO_DAY_BY_SCHEDULE = {
    "mon": 1,
    "tue": 2,
    "wed": 3,
    "thu": 4,
    "fri": 5,
    "sat": 6,
    "sun": 7,
}


class ReminderKind(str, PyEnum):
    one_day = "1day"
    one_hour = "1hour"

    @property
    def notification_type(self) -> NotificationType:
        if self is ReminderKind.one_day:
            return NotificationType.class_reminder_1day
        return NotificationType.class_reminder_1hour


@dataclass(frozen=True, slots=True)
class DueOccurrence:
    session_date: date
    starts_at: datetime
    minutes_until_start: int
    kind: ReminderKind


def _zone(name: str | None) -> ZoneInfo:
    return ZoneInfo(name or DEFAULT_TIMEZONE)


def _aware(now: datetime | None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def candidate_session_date(
    schedule_day: str,
    tz_name: str,
    term_start: date,
    term_end: date,
    now: datetime | None = None,
) -> date | None:
    """First date in the lookahead whose weekday in ``tz_name`` is the class day."""

    wanted = ISO_DAY_BY_SCHEDULE.get((schedule_day or "").strip().lower()[:3])
    if wanted is None:
        return None
    zone = _zone(tz_name)
    now = _aware(now)
    for offset in range(LOOKAHEAD_DAYS):
        candidate = (now + timedelta(days=offset)).astimezone(zone).date()
        if candidate < term_start or candidate > term_end:
            continue
        midday = datetime.combine(candidate, time(12, 0), tzinfo=zone)
        if midday.isoweekday() == wanted:
            return candidate
    return None


def session_start(session_date: date, start_time: time, tz_name: str) -> datetime:
    local = datetime.combine(session_date, start_time, tzinfo=_zone(tz_name))
    return local.astimezone(timezone.utc)


def minutes_until(start: datetime, now: datetime | None = None) -> int:
    return (_aware(start) - _aware(now)) // timedelta(minutes=1)


def reminder_kind(minutes: int) -> ReminderKind | None:
    # The two buckets never overlap: (0, 60] and [1380, 1440]
    if ONE_HOUR_WINDOW[0] < minutes <= ONE_HOUR_WINDOW[1]:
        return ReminderKind.one_hour
    if ONE_DAY_WINDOW[0] <= minutes <= ONE_DAY_WINDOW[1]:
        return ReminderKind.one_day
    return None


def due_occurrence(
    schedule_day: str,
    start_time: time,
    tz_name: str,
    term_start: date,
    term_end: date,
    now: datetime | None = None,
) -> DueOccurrence | None:
    now = _aware(now)
    try:
        session_date = candidate_session_date(schedule_day, tz_name, term_start, term_end, now)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown class timezone", extra={"timezone": tz_name})
        return None
    if session_date is None:
        return None
    starts_at = session_start(session_date, start_time, tz_name)
    minutes = minutes_until(starts_at, now)
    kind = reminder_kind(minutes)
    if kind is None:
        return None
    return DueOccurrence(
        session_date=session_date,
        starts_at=starts_at,
        minutes_until_start=minutes,
        kind=kind,
    )


def _clock(value: datetime) -> str:
    return value.strftime("%I:%M %p").lstrip("0")


def session_range_for_recipient(
    session_date: date,
    start_time: time,
    end_time: time,
    source_tz: str,
    recipient_tz: str | None,
) -> str:
    """Render a session as e.g. ``Wednesday, January 8, 3:00 PM - 4:00 PM PST``.

    Times are shown in the recipient's zone; an unknown recipient zone falls
    back to the school default.
    """

    try:
        zone = _zone(recipient_tz)
    except (ZoneInfoNotFoundError, ValueError):
        zone = _zone(DEFAULT_TIMEZONE)
    start = session_start(session_date, start_time, source_tz).astimezone(zone)
    end = datetime.combine(session_date, end_time, tzinfo=_zone(source_tz)).astimezone(zone)
    return f"{start:%A}, {start:%B} {start.day}, {_clock(start)} - {_clock(end)} {end:%Z}"


__all__ = [
    "ISO_DAY_BY_SCHEDULE",
    "ReminderKind",
    "DueOccurrence",
    "candidate_session_date",
    "session_start",
    "minutes_until",
    "reminder_kind",
    "due_occurrence",
    "session_range_for_recipient",
]

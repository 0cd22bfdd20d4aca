"""
Local calendar helpers.

All instants handled by the engine are timezone-aware.  Naive datetimes are
taken to be local wall-clock time in the configured zone.  Absolute
arithmetic (intervals, offsets) is done in UTC; only "wall clock" questions
(hour of day, calendar day, "next 08:00") go through the local zone.
"""

import logging
from datetime import date, datetime, time, timedelta

import pytz

logger = logging.getLogger(__name__)

DAY_KEY_FORMAT = "%Y-%m-%d"


def get_timezone(tz_name: str):
    """Resolve an IANA zone name, falling back to UTC for unknown names."""
    try:
        return pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        logger.warning("Unknown timezone %r, falling back to UTC", tz_name)
        return pytz.utc


def localize_wall_time(tz, naive: datetime) -> datetime:
    """
    Attach ``tz`` to a local wall-clock time.

    Spring-forward gap: the wall time does not exist, so it is pushed forward
    by the size of the gap (02:30 → 03:30 for a one-hour gap).
    Fall-back overlap: the wall time exists twice; the earlier one wins.
    """
    try:
        return tz.localize(naive, is_dst=None)
    except pytz.NonExistentTimeError:
        candidates = (tz.localize(naive, is_dst=True), tz.localize(naive, is_dst=False))
        return tz.normalize(max(candidates))
    except pytz.AmbiguousTimeError:
        candidates = (tz.localize(naive, is_dst=True), tz.localize(naive, is_dst=False))
        return min(candidates)


def as_utc(instant: datetime, tz) -> datetime:
    """Absolute UTC instant for an aware datetime or a local wall time."""
    if instant.tzinfo is None:
        instant = localize_wall_time(tz, instant)
    return instant.astimezone(pytz.utc)


def to_local(instant: datetime, tz) -> datetime:
    """Local wall-clock view of an instant."""
    if instant.tzinfo is None:
        return localize_wall_time(tz, instant)
    return instant.astimezone(tz)


def local_wall_time_on(tz, day: date, hour: int, minute: int) -> datetime:
    """UTC instant of ``hour:minute`` local time on ``day``."""
    naive = datetime.combine(day, time(hour, minute))
    return localize_wall_time(tz, naive).astimezone(pytz.utc)


def local_wall_time_occurrences(tz, day: date, hour: int, minute: int) -> list[datetime]:
    """
    Every UTC instant at which the local clock reads ``hour:minute`` on ``day``,
    in order.  Two inside a fall-back overlap, otherwise one.
    """
    naive = datetime.combine(day, time(hour, minute))
    try:
        tz.localize(naive, is_dst=None)
    except pytz.AmbiguousTimeError:
        return sorted(
            tz.localize(naive, is_dst=flag).astimezone(pytz.utc) for flag in (True, False)
        )
    except pytz.NonExistentTimeError:
        pass
    return [local_wall_time_on(tz, day, hour, minute)]


def day_key(instant: datetime, tz) -> str:
    """Local calendar day of an instant, e.g. "2025-10-16"."""
    return to_local(instant, tz).strftime(DAY_KEY_FORMAT)


def parse_day_key(key: str) -> date:
    return datetime.strptime(key, DAY_KEY_FORMAT).date()


def minutes_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier) / timedelta(minutes=1)

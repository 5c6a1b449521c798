"""Wall-clock matching for department report schedules.

Every weekday/time conversion used by the scheduler lives here so it can be tested with
fixed instants and fixed zones, independent of the host clock.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import datetime, time, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

TIME_OF_DAY_PATTERN = re.compile(r"^([0-1][0-9]|2[0-3]):[0-5][0-9]$")

SUNDAY = 0
SATURDAY = 6


class InvalidTimezoneError(ValueError):
    pass


def resolve_timezone(name: str | None) -> ZoneInfo:
    raw_name = (name or "").strip()
    if not raw_name:
        raise InvalidTimezoneError("Time zone is required.")
    try:
        return ZoneInfo(raw_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidTimezoneError(f"Unknown time zone: {raw_name}") from exc


def is_valid_time_of_day(value: str | None) -> bool:
    return isinstance(value, str) and TIME_OF_DAY_PATTERN.match(value) is not None


def parse_time_of_day(value: str) -> tuple[int, int]:
    if not is_valid_time_of_day(value):
        raise ValueError(f"Invalid time of day {value!r}. Use HH:MM.")
    hour_str, minute_str = value.split(":")
    return int(hour_str), int(minute_str)


def normalize_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def local_weekday(now_utc: datetime, tz: ZoneInfo) -> int:
    """Weekday of ``now_utc`` in ``tz`` with 0 = Sunday ... 6 = Saturday."""
    return normalize_utc(now_utc).astimezone(tz).isoweekday() % 7


def start_of_local_day_utc(now_utc: datetime, tz: ZoneInfo) -> datetime:
    local_day = normalize_utc(now_utc).astimezone(tz).date()
    return datetime.combine(local_day, time.min, tzinfo=tz).astimezone(timezone.utc)


def should_fire(
    now_utc: datetime,
    days_of_week: Iterable[int],
    time_of_day: str,
    tz: ZoneInfo,
) -> bool:
    local_now = normalize_utc(now_utc).astimezone(tz)
    if local_now.isoweekday() % 7 not in {int(day) for day in days_of_week}:
        return False
    target_hour, target_minute = parse_time_of_day(time_of_day)
    return local_now.hour == target_hour and local_now.minute == target_minute

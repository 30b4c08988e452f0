"""
Clock/calendar adapter.

Every instant in the system is an integer epoch-millisecond timestamp. This
module is the only place that turns those into local calendar dates,
weekdays and ``HH:MM`` strings, using the single fixed offset from config.
"""

import re
import time
from datetime import date, datetime, timedelta, timezone

from backend import config

TIME_OF_DAY_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

SUNDAY = 0
SATURDAY = 6


def local_tz() -> timezone:
    return timezone(timedelta(hours=config.UTC_OFFSET_HOURS))


def now_ms() -> int:
    return int(time.time() * 1000)


def _local_datetime(timestamp_ms: int) -> datetime:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=local_tz())


def local_date(timestamp_ms: int) -> str:
    return _local_datetime(timestamp_ms).strftime("%Y-%m-%d")


def local_hhmm(timestamp_ms: int) -> str:
    return _local_datetime(timestamp_ms).strftime("%H:%M")


def day_of_week_for_date(date_str: str) -> int:
    """0=Sunday ... 6=Saturday, from the calendar date itself."""
    return (parse_date(date_str).weekday() + 1) % 7


def local_day_of_week(timestamp_ms: int) -> int:
    return (_local_datetime(timestamp_ms).weekday() + 1) % 7


def resolve_local(timestamp_ms: int) -> tuple[str, int, str]:
    """Return (date, day_of_week, HH:MM) for an instant in local time."""
    stamp = _local_datetime(timestamp_ms)
    return stamp.strftime("%Y-%m-%d"), (stamp.weekday() + 1) % 7, stamp.strftime("%H:%M")


def is_weekend(date_str: str) -> bool:
    return day_of_week_for_date(date_str) in (SUNDAY, SATURDAY)


def is_valid_time_of_day(value: str | None) -> bool:
    return bool(value) and TIME_OF_DAY_RE.match(value) is not None


def parse_date(value: str) -> date:
    if not value or not DATE_RE.match(value):
        raise ValueError(f"Invalid date {value!r}. Use YYYY-MM-DD.")
    return date.fromisoformat(value)


def is_valid_date(value: str | None) -> bool:
    try:
        parse_date(value or "")
    except ValueError:
        return False
    return True


def parse_time_for_date(date_str: str, hhmm: str) -> int:
    """Epoch ms of ``hhmm`` local time on ``date_str``."""
    if not is_valid_time_of_day(hhmm):
        raise ValueError(f"Invalid time {hhmm!r}. Use HH:MM (24-hour).")
    hours, minutes = (int(part) for part in hhmm.split(":"))
    day = parse_date(date_str)
    stamp = datetime(day.year, day.month, day.day, hours, minutes, tzinfo=local_tz())
    return int(stamp.timestamp() * 1000)


def iter_dates(start: str, end: str):
    current = parse_date(start)
    last = parse_date(end)
    while current <= last:
        yield current.isoformat()
        current += timedelta(days=1)

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone, tzinfo
from functools import lru_cache
import logging
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from presence.settings import get_settings

logger = logging.getLogger("presence.clock")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_ts(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return utc_now()

    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)

    return ts_utc.astimezone(timezone.utc)


@lru_cache
def attendance_timezone() -> tzinfo:
    raw_name = (get_settings().attendance_timezone or "").strip() or "UTC"
    try:
        return ZoneInfo(raw_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("attendance_timezone_invalid", extra={"timezone": raw_name})
        return timezone.utc


def local_day(ts_utc: datetime, *, tz: tzinfo) -> date:
    return normalize_ts(ts_utc).astimezone(tz).date()


def local_day_bounds_utc(day: date, *, tz: tzinfo) -> tuple[datetime, datetime]:
    local_start = datetime.combine(day, time.min, tzinfo=tz)
    local_end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return local_start.astimezone(timezone.utc), local_end.astimezone(timezone.utc)


def hours_between(later: datetime, earlier: datetime) -> float:
    return (normalize_ts(later) - normalize_ts(earlier)).total_seconds() / 3600

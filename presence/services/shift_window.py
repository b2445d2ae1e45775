from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo

from presence.models import ShiftProfile
from presence.services.clock import normalize_ts

NIGHT_SHIFT_SAME_SHIFT_WINDOW = timedelta(hours=24)


@dataclass(frozen=True, slots=True)
class ShiftWindow:
    start_utc: datetime
    end_utc: datetime
    is_night_shift: bool

    @property
    def duration_hours(self) -> float:
        return (self.end_utc - self.start_utc).total_seconds() / 3600


def _fixed_shift_times(profile: ShiftProfile | None) -> tuple[time, time] | None:
    if profile is None or not profile.has_fixed_shift:
        return None
    return profile.work_start_time, profile.work_end_time  # type: ignore[return-value]


def _wall_clock(value: time) -> time:
    return value.replace(tzinfo=None)


def shift_start_local_day(start: time, end: time, reference_local: datetime) -> date:
    """Calendar day the occurrence containing ``reference_local`` started on.

    For a night shift, a reference after midnight but before the end
    time-of-day belongs to the shift that started the previous evening.
    """
    day = reference_local.date()
    if end < start and reference_local.time() < end:
        return day - timedelta(days=1)
    return day


def shift_end_local_day(start: time, end: time, reference_local: datetime) -> date:
    """Calendar day the occurrence containing ``reference_local`` ends on.

    For a night shift, once the reference is at or past the end time-of-day
    the end lies on the next calendar day.
    """
    day = reference_local.date()
    if end < start and reference_local.time() >= end:
        return day + timedelta(days=1)
    return day


def resolve_shift_window(
    profile: ShiftProfile | None,
    reference_ts_utc: datetime,
    *,
    tz: tzinfo,
) -> ShiftWindow | None:
    times = _fixed_shift_times(profile)
    if times is None:
        return None

    start, end = (_wall_clock(item) for item in times)
    reference_local = normalize_ts(reference_ts_utc).astimezone(tz)
    start_day = shift_start_local_day(start, end, reference_local)
    end_day = shift_end_local_day(start, end, reference_local)
    start_local = datetime.combine(start_day, start, tzinfo=tz)
    end_local = datetime.combine(end_day, end, tzinfo=tz)
    return ShiftWindow(
        start_utc=start_local.astimezone(timezone.utc),
        end_utc=end_local.astimezone(timezone.utc),
        is_night_shift=end < start,
    )


def shift_key(profile: ShiftProfile | None, reference_ts_utc: datetime, *, tz: tzinfo) -> str:
    """Identifier of the shift occurrence ``reference_ts_utc`` belongs to."""
    window = resolve_shift_window(profile, reference_ts_utc, tz=tz)
    if window is None:
        return normalize_ts(reference_ts_utc).astimezone(tz).date().isoformat()
    return window.start_utc.astimezone(tz).date().isoformat()


def is_same_shift(
    first_ts_utc: datetime,
    second_ts_utc: datetime,
    profile: ShiftProfile | None,
    *,
    tz: tzinfo,
) -> bool:
    first = normalize_ts(first_ts_utc)
    second = normalize_ts(second_ts_utc)
    if profile is not None and profile.is_night_shift:
        return abs(first - second) < NIGHT_SHIFT_SAME_SHIFT_WINDOW
    return first.astimezone(tz).date() == second.astimezone(tz).date()


def next_local_midnight(ts_utc: datetime, *, tz: tzinfo) -> datetime:
    local = normalize_ts(ts_utc).astimezone(tz)
    midnight = datetime.combine(local.date() + timedelta(days=1), time.min, tzinfo=tz)
    return midnight.astimezone(timezone.utc)

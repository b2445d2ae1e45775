from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from presence.models import LateLevel
from presence.services.clock import normalize_ts
from presence.services.shift_window import ShiftWindow

# Inclusive upper bound in minutes -> level. Anything above the last bound is SEVERELY_LATE.
LATE_LEVEL_THRESHOLDS: tuple[tuple[int, LateLevel], ...] = (
    (0, LateLevel.ON_TIME),
    (15, LateLevel.SLIGHTLY_LATE),
    (30, LateLevel.LATE),
    (60, LateLevel.VERY_LATE),
)


@dataclass(frozen=True, slots=True)
class Lateness:
    level: LateLevel
    minutes: int


def late_level_for_minutes(minutes: int) -> LateLevel:
    for upper_bound, level in LATE_LEVEL_THRESHOLDS:
        if minutes <= upper_bound:
            return level
    return LateLevel.SEVERELY_LATE


def classify_lateness(checkin_ts_utc: datetime, window: ShiftWindow | None) -> Lateness:
    if window is None:
        return Lateness(level=LateLevel.ON_TIME, minutes=0)

    delta_seconds = (normalize_ts(checkin_ts_utc) - window.start_utc).total_seconds()
    minutes = max(0, round(delta_seconds / 60))
    return Lateness(level=late_level_for_minutes(minutes), minutes=minutes)

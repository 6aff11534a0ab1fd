"""Millisecond timestamps shared by every persisted record."""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Callable

MS_PER_MINUTE = 60_000
MS_PER_HOUR = 3_600_000
MS_PER_DAY = 86_400_000

Clock = Callable[[], float]


def now_ms() -> float:
    """Return the current wall-clock time as epoch milliseconds."""
    return time.time() * 1000


def days_between(earlier: float | None, later: float) -> float:
    if earlier is None:
        return 0.0
    return max(0.0, (later - earlier) / MS_PER_DAY)


def hour_of_day(timestamp_ms: float, utc_offset_hours: int = 0) -> int:
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return (moment + timedelta(hours=utc_offset_hours)).hour


__all__ = [
    "Clock",
    "MS_PER_DAY",
    "MS_PER_HOUR",
    "MS_PER_MINUTE",
    "days_between",
    "hour_of_day",
    "now_ms",
]

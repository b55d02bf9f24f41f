# FILE: app/services/transfusion_calc.py
"""
Drip-rate arithmetic for an infusion. Pure functions, no database access.

All durations are integer milliseconds; timestamps are naive UTC datetimes.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from app.services.transfusion_errors import InvalidRate
from app.utils.timezone import ms_between

MS_PER_MINUTE = 60_000


def planned_duration_ms(pouch_volume_ml: float, drop_factor: float, drop_rate_per_minute: float) -> int:
    """
    total drops = volume * drop factor; minutes = total drops / drop rate.
    """
    if drop_rate_per_minute is None or drop_rate_per_minute <= 0:
        raise InvalidRate("Drop rate must be greater than 0")
    if drop_factor is None or drop_factor <= 0:
        raise InvalidRate("Drop factor must be greater than 0")
    if pouch_volume_ml is None or pouch_volume_ml <= 0:
        raise InvalidRate("Pouch volume must be greater than 0")

    total_drops = pouch_volume_ml * drop_factor
    minutes = total_drops / drop_rate_per_minute
    return int(round(minutes * MS_PER_MINUTE))


def projected_end_time(start_time: datetime, planned_ms: int, pause_duration_ms: int = 0) -> datetime:
    # paused wall-clock time does not count toward completion
    return start_time + timedelta(milliseconds=planned_ms + max(0, pause_duration_ms or 0))


def progress_percentage(elapsed_active_ms: float, planned_ms: float) -> float:
    if not planned_ms or planned_ms <= 0:
        return 0.0
    pct = 100.0 * elapsed_active_ms / planned_ms
    return max(0.0, min(100.0, pct))


def elapsed_active_ms(
    start_time: datetime,
    now: datetime,
    pause_duration_ms: int = 0,
    paused_at: Optional[datetime] = None,
) -> int:
    """Wall clock since start minus closed pauses minus the pause still open."""
    elapsed = ms_between(start_time, now) - (pause_duration_ms or 0)
    if paused_at is not None and now > paused_at:
        elapsed -= ms_between(paused_at, now)
    return max(0, elapsed)


def remaining_ms(elapsed_active: int, planned_ms: int) -> int:
    return max(0, planned_ms - elapsed_active)


def expected_drops(elapsed_active: int, drop_rate_per_minute: float) -> int:
    return int(elapsed_active * drop_rate_per_minute // MS_PER_MINUTE)


def volume_for_drops(drops: int, drop_factor: float) -> float:
    if not drop_factor:
        return 0.0
    return round(drops / drop_factor, 2)


def implied_rate_per_minute(drops: int, elapsed_active: int) -> Optional[float]:
    if not elapsed_active or elapsed_active <= 0:
        return None
    return drops / (elapsed_active / MS_PER_MINUTE)

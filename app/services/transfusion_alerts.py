# FILE: app/services/transfusion_alerts.py
"""
Advisory deviation checks for a running infusion.

The policy only classifies. Persisting an alert is a separate
``record_alert`` call made by whoever asked for the evaluation, and a
breach never stops the transfusion.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from app.services.transfusion_calc import MS_PER_MINUTE, implied_rate_per_minute

OVERRUN = "OVERRUN"
RATE_DEVIATION = "RATE_DEVIATION"

DEFAULT_THRESHOLD_MINUTES = 15
DEFAULT_TOLERANCE_PCT = 20.0
DEFAULT_MIN_SAMPLE_MS = MS_PER_MINUTE


@dataclass(frozen=True)
class AlertEvent:
    alert_type: str
    alert_message: str

    def to_json(self) -> dict:
        return {"alertType": self.alert_type, "alertMessage": self.alert_message}


def is_overrun(elapsed_active_ms: int, planned_ms: int, threshold_minutes: int) -> bool:
    return elapsed_active_ms > planned_ms + threshold_minutes * MS_PER_MINUTE


def evaluate(
    elapsed_active_ms: int,
    planned_ms: int,
    alert_threshold_minutes: Optional[int] = None,
    *,
    drops_administered: Optional[int] = None,
    drop_rate_per_minute: Optional[float] = None,
    tolerance_pct: float = DEFAULT_TOLERANCE_PCT,
    min_sample_ms: int = DEFAULT_MIN_SAMPLE_MS,
    rate_elapsed_ms: Optional[int] = None,
) -> List[AlertEvent]:
    """
    Overrun uses the live elapsed time. The rate check divides drops by the
    elapsed time they were counted at (``rate_elapsed_ms``, e.g. a progress
    snapshot); without it the live elapsed time is used.
    """
    threshold = DEFAULT_THRESHOLD_MINUTES if alert_threshold_minutes is None else alert_threshold_minutes
    events: List[AlertEvent] = []

    if is_overrun(elapsed_active_ms, planned_ms, threshold):
        over_min = (elapsed_active_ms - planned_ms) / MS_PER_MINUTE
        events.append(AlertEvent(
            OVERRUN,
            f"Transfusion running {over_min:.1f} min past planned duration "
            f"(threshold {threshold} min)",
        ))

    sample_ms = elapsed_active_ms if rate_elapsed_ms is None else rate_elapsed_ms

    # too few drops early on give a noisy rate
    if (
        drops_administered is not None
        and drop_rate_per_minute
        and sample_ms >= max(1, min_sample_ms)
    ):
        implied = implied_rate_per_minute(drops_administered, sample_ms)
        if implied is not None:
            deviation_pct = abs(implied - drop_rate_per_minute) * 100.0 / drop_rate_per_minute
            if deviation_pct > tolerance_pct:
                direction = "above" if implied > drop_rate_per_minute else "below"
                events.append(AlertEvent(
                    RATE_DEVIATION,
                    f"Observed {implied:.1f} drops/min is {deviation_pct:.0f}% {direction} "
                    f"configured {drop_rate_per_minute:g} drops/min",
                ))

    return events

"""Time-to-next-tier estimation from the aggregated water-level trend.

Only meaningful for intermediate tiers (Waspada, Siaga 2, Siaga 1):
Normal has nothing to warn about and Bahaya has no tier above it.

Algorithm:
    1. Take the device's aggregated rows from the last 10 minutes plus
       the current row; fewer than 4 points → no prediction.
    2. Ordinary least-squares slope of water level against either
       elapsed minutes (default) or sample index (one step per window).
    3. Slope ≤ 0.01 → flat or falling, no prediction.
    4. Scale by step factors for rain (mm/h) and wind (m/s) of the
       current row: heavy rain and wind speed up real-world rises.
    5. ETA = (threshold of next tier − current level) / adjusted rate.

The index axis assumes every window spans the same wall-clock time; the
elapsed axis does not, and stays correct if device cadence drifts.
"""

from __future__ import annotations

from datetime import timedelta
from typing import List, Optional, Sequence, Tuple

import numpy as np
import structlog

from shared.config import get_settings
from shared.models.alerts import Prediction
from shared.models.telemetry import AggregatedReading, StatusTier
from services.ingestion.classifier import StatusClassifier
from services.ingestion.store import RecordStore

logger = structlog.get_logger(__name__)

# (upper bound exclusive, factor); the last factor applies above every bound
_RAIN_STEPS: Tuple[Tuple[float, float], ...] = ((5.0, 1.0), (20.0, 1.1), (50.0, 1.2))
_RAIN_MAX_FACTOR = 1.35
_WIND_STEPS: Tuple[Tuple[float, float], ...] = ((5.0, 1.0), (10.0, 1.01))
_WIND_MAX_FACTOR = 1.03

AXIS_ELAPSED = "elapsed"
AXIS_INDEX = "index"


def _step_factor(value: float, steps: Sequence[Tuple[float, float]], top: float) -> float:
    for bound, factor in steps:
        if value < bound:
            return factor
    return top


def rain_factor(rain_mm_h: float) -> float:
    """Very light <5, moderate <20, heavy <50, very heavy ≥50 mm/h."""
    return _step_factor(rain_mm_h, _RAIN_STEPS, _RAIN_MAX_FACTOR)


def wind_factor(wind_speed: float) -> float:
    return _step_factor(wind_speed, _WIND_STEPS, _WIND_MAX_FACTOR)


def ols_slope(x: Sequence[float], y: Sequence[float]) -> Optional[float]:
    """Least-squares slope of *y* on *x*; None when *x* has no spread."""
    xs = np.asarray(x, dtype=float)
    ys = np.asarray(y, dtype=float)
    dx = xs - xs.mean()
    denom = float(np.dot(dx, dx))
    if denom == 0.0:
        return None
    return float(np.dot(dx, ys - ys.mean()) / denom)


class TrendPredictor:
    """Estimates minutes until a device reaches its next status tier."""

    def __init__(
        self,
        records: RecordStore,
        classifier: StatusClassifier,
        axis: Optional[str] = None,
        lookback_min: Optional[int] = None,
        min_points: Optional[int] = None,
        min_rise: Optional[float] = None,
        window_minutes: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self._records = records
        self._classifier = classifier
        self._axis = axis or settings.TREND_AXIS
        if self._axis not in (AXIS_ELAPSED, AXIS_INDEX):
            raise ValueError(f"unknown trend axis {self._axis!r}")
        self._lookback = timedelta(
            minutes=lookback_min if lookback_min is not None else settings.TREND_LOOKBACK_MIN
        )
        self._min_points = min_points if min_points is not None else settings.TREND_MIN_POINTS
        self._min_rise = min_rise if min_rise is not None else settings.TREND_MIN_RISE
        self._window_minutes = (
            window_minutes if window_minutes is not None else settings.WINDOW_MINUTES
        )

    def _history(self, device_id: str, current: AggregatedReading) -> List[AggregatedReading]:
        start = current.created_at - self._lookback
        past = self._records.readings_between(device_id, start, current.created_at)
        return [*past, current]

    def _rise_rate_per_minute(self, points: List[AggregatedReading]) -> Optional[float]:
        levels = [p.water_level for p in points]
        if self._axis == AXIS_INDEX:
            slope = ols_slope(range(len(points)), levels)
            if slope is None or slope <= self._min_rise:
                return None
            return slope / self._window_minutes
        t0 = points[0].created_at
        minutes = [(p.created_at - t0).total_seconds() / 60.0 for p in points]
        slope = ols_slope(minutes, levels)
        if slope is None or slope <= self._min_rise:
            return None
        return slope

    def predict(self, device_id: str, current: AggregatedReading) -> Optional[Prediction]:
        """Return a Prediction, or None when no meaningful ETA exists."""
        if current.status in (StatusTier.NORMAL, StatusTier.BAHAYA):
            return None

        next_tier = self._classifier.next_tier(current.status)
        if next_tier is None:
            return None

        points = self._history(device_id, current)
        if len(points) < self._min_points:
            logger.debug("trend_insufficient_history", device=device_id, points=len(points))
            return None

        base_rate = self._rise_rate_per_minute(points)
        if base_rate is None:
            return None

        adjusted = base_rate * rain_factor(current.rain_intensity) * wind_factor(current.wind_speed)

        target = self._classifier.threshold_of(next_tier, device_id=device_id)
        remaining = target - current.water_level
        if remaining <= 0:
            # Mean already past the next threshold; the classifier will
            # catch up on the next window, an ETA of "now" says nothing.
            return None

        estimated = int(round(remaining / adjusted))

        prediction = Prediction(
            device_id=device_id,
            from_status=current.status,
            to_status=next_tier,
            current_water_level=current.water_level,
            target_water_level=target,
            estimated_minutes=estimated,
            adjusted_rise_rate=adjusted,
            created_at=current.created_at,
        )
        logger.info(
            "trend_prediction",
            device=device_id,
            from_status=current.status.value,
            to_status=next_tier.value,
            eta_min=estimated,
            rate_cm_min=round(adjusted, 3),
        )
        return prediction

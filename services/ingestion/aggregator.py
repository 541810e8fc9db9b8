"""Window reduction: one ``AggregatedReading`` per completed window.

    water_level    = mean(water_level_raw)
    rain_intensity = mean(rain_intensity_raw) × rain_unit_factor
    wind_speed     = mean(wind_speed)
    status         = classify(water_level)

The rain unit factor converts the sensor's native unit into mm/h. The
tipping-bucket sensors in the field report mm/s, hence the default of
3600; a deployment whose sensors already report mm/h sets
``RAIN_UNIT_FACTOR=1``.
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
import structlog

from shared.config import get_settings
from shared.exceptions import EmptyWindowError, InvariantViolation
from shared.models.telemetry import AggregatedReading, RawReading
from services.ingestion.classifier import StatusClassifier

logger = structlog.get_logger(__name__)


class Aggregator:
    """Pure reducer; persistence is left to the caller."""

    def __init__(
        self,
        classifier: StatusClassifier,
        rain_unit_factor: Optional[float] = None,
    ) -> None:
        self._classifier = classifier
        self._rain_factor = (
            rain_unit_factor if rain_unit_factor is not None else get_settings().RAIN_UNIT_FACTOR
        )

    @property
    def rain_unit_factor(self) -> float:
        return self._rain_factor

    def aggregate(self, readings: Sequence[RawReading]) -> AggregatedReading:
        """Reduce a non-empty, ordered window to its means.

        Raises:
            EmptyWindowError: if *readings* is empty.
            InvariantViolation: if the window mixes devices.
        """
        if not readings:
            raise EmptyWindowError("cannot aggregate an empty window")

        device_id = readings[0].device_id
        if any(r.device_id != device_id for r in readings):
            raise InvariantViolation(f"window for {device_id} contains readings of other devices")

        levels = np.fromiter((r.water_level_raw for r in readings), dtype=float, count=len(readings))
        rain = np.fromiter((r.rain_intensity_raw for r in readings), dtype=float, count=len(readings))
        wind = np.fromiter((r.wind_speed for r in readings), dtype=float, count=len(readings))

        water_level = float(levels.mean())
        rain_intensity = float(rain.mean()) * self._rain_factor
        wind_speed = float(wind.mean())
        status = self._classifier.classify(water_level, device_id=device_id)

        logger.debug(
            "window_aggregated",
            device=device_id,
            samples=len(readings),
            water_level=round(water_level, 2),
            status=status.value,
        )

        return AggregatedReading(
            device_id=device_id,
            water_level=water_level,
            rain_intensity=rain_intensity,
            wind_speed=wind_speed,
            status=status,
            created_at=readings[-1].received_at,
        )

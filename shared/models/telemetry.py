"""Pydantic v2 schemas for device telemetry.

Covers the device registry entry, raw readings as they arrive from
the field, the per-device latest-status cache entry, and the
aggregated one-row-per-window time series.

Wire format uses the camelCase names the dashboards already speak
(``deviceID``, ``waterLevel`` …); Python code uses snake_case.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class StatusTier(str, Enum):
    """Flood severity tiers, least to most severe.

    ``Siaga 1`` is the more severe of the two Siaga levels.
    """

    NORMAL = "Normal"
    WASPADA = "Waspada"
    SIAGA_2 = "Siaga 2"
    SIAGA_1 = "Siaga 1"
    BAHAYA = "Bahaya"

    @property
    def rank(self) -> int:
        return TIER_ORDER.index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, StatusTier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, StatusTier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, StatusTier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, StatusTier):
            return NotImplemented
        return self.rank >= other.rank


TIER_ORDER: List[StatusTier] = [
    StatusTier.NORMAL,
    StatusTier.WASPADA,
    StatusTier.SIAGA_2,
    StatusTier.SIAGA_1,
    StatusTier.BAHAYA,
]


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class GeoLocation(_CamelModel):
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


class Device(_CamelModel):
    """A monitoring device. Never deleted; goes stale through inactivity."""

    device_id: str = Field(..., alias="deviceID", min_length=1)
    location: Optional[GeoLocation] = None
    last_active_at: datetime = Field(..., alias="lastActiveAt")


class RawReading(_CamelModel):
    """One telemetry sample as received. Lives only in the sliding buffer."""

    device_id: str = Field(..., alias="deviceID")
    water_level_raw: float = Field(..., alias="waterLevelRaw", description="cm")
    rain_intensity_raw: float = Field(
        ..., alias="rainIntensityRaw", description="Sensor unit (mm/s by default)"
    )
    wind_speed: float = Field(..., alias="windSpeed", description="m/s")
    received_at: datetime = Field(..., alias="receivedAt")


class LatestStatus(_CamelModel):
    """Cache entry overwritten on every accepted raw reading.

    Redis hash: ``latest_device_status`` field ``{deviceID}``
    """

    device_id: str = Field(..., alias="deviceID")
    water_level: float = Field(..., alias="waterLevel")
    rain_intensity: float = Field(..., alias="rainIntensity", description="mm/h")
    wind_speed: float = Field(..., alias="windSpeed")
    status: StatusTier
    updated_at: datetime = Field(..., alias="updatedAt")


class AggregatedReading(_CamelModel):
    """Mean of one completed window. Append-only time series."""

    device_id: str = Field(..., alias="deviceID")
    water_level: float = Field(..., alias="waterLevel")
    rain_intensity: float = Field(..., alias="rainIntensity", description="mm/h")
    wind_speed: float = Field(..., alias="windSpeed")
    status: StatusTier
    created_at: datetime = Field(..., alias="createdAt")

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={"examples": [
            {
                "deviceID": "DEV-001",
                "waterLevel": 112.4,
                "rainIntensity": 18.0,
                "windSpeed": 4.2,
                "status": "Siaga 2",
                "createdAt": "2025-11-11T06:31:00Z",
            }
        ]},
    )

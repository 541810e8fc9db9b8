# HydroAlert shared models package

from shared.models.telemetry import (
    AggregatedReading,
    Device,
    GeoLocation,
    LatestStatus,
    RawReading,
    StatusTier,
    TIER_ORDER,
)
from shared.models.alerts import IngestResult, Notification, Prediction

__all__ = [
    "AggregatedReading",
    "Device",
    "GeoLocation",
    "LatestStatus",
    "RawReading",
    "StatusTier",
    "TIER_ORDER",
    "IngestResult",
    "Notification",
    "Prediction",
]

"""Pydantic v2 schemas for alerting outputs.

Notifications are persisted and fanned out to the ``notifications``
channel; predictions are published on the device channel only.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from shared.models.telemetry import StatusTier


class Notification(BaseModel):
    """A deduplicated flood alert for one device."""

    model_config = ConfigDict(populate_by_name=True)

    device_id: str = Field(..., alias="deviceID")
    severity: StatusTier
    water_level: float = Field(..., alias="waterLevel")
    title: str
    message: str
    created_at: datetime = Field(..., alias="createdAt")


class Prediction(BaseModel):
    """Estimated time until the next tier is reached."""

    model_config = ConfigDict(populate_by_name=True)

    device_id: str = Field(..., alias="deviceID")
    from_status: StatusTier = Field(..., alias="fromStatus")
    to_status: StatusTier = Field(..., alias="toStatus")
    current_water_level: float = Field(..., alias="currentWaterLevel")
    target_water_level: float = Field(..., alias="targetWaterLevel")
    estimated_minutes: int = Field(..., ge=0, alias="estimatedMinutes")
    adjusted_rise_rate: float = Field(..., alias="adjustedRiseRate", description="cm/min")
    created_at: datetime = Field(..., alias="createdAt")


class IngestResult(BaseModel):
    """Synchronous answer to one ``ingest`` call."""

    model_config = ConfigDict(populate_by_name=True)

    accepted: bool
    device_id: str = Field(..., alias="deviceID")
    status: Optional[StatusTier] = None
    reason: Optional[str] = None

"""Read-side views for the dashboard, monitoring and history pages."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import structlog

from shared.config import get_settings
from shared.models.telemetry import Device, LatestStatus, StatusTier
from services.ingestion.store import LATEST_STATUS_HASH, DeviceStore, KeyValueStore, RecordStore

logger = structlog.get_logger(__name__)

_MONTHS_ID = (
    "Januari", "Februari", "Maret", "April", "Mei", "Juni",
    "Juli", "Agustus", "September", "Oktober", "November", "Desember",
)


def day_label(ts: datetime, tz: timezone) -> str:
    """``11 November 2025`` in the display timezone."""
    local = ts.astimezone(tz)
    return f"{local.day} {_MONTHS_ID[local.month - 1]} {local.year}"


def load_latest(kv: KeyValueStore) -> Dict[str, LatestStatus]:
    """Decode the latest-status hash, skipping entries that fail to parse."""
    out: Dict[str, LatestStatus] = {}
    for device_id, raw in kv.hgetall(LATEST_STATUS_HASH).items():
        try:
            out[device_id] = LatestStatus.model_validate_json(raw)
        except ValueError as exc:
            logger.warning("latest_status_corrupt", device=device_id, error=str(exc))
    return out


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DashboardView:
    def __init__(
        self,
        kv: KeyValueStore,
        records: RecordStore,
        devices: DeviceStore,
        clock: Callable[[], datetime] = _utcnow,
        status_stale_s: Optional[int] = None,
        device_active_s: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self._kv = kv
        self._records = records
        self._devices = devices
        self._clock = clock
        self._status_stale = timedelta(
            seconds=status_stale_s if status_stale_s is not None else settings.STATUS_STALE_S
        )
        self._device_active = timedelta(
            seconds=device_active_s if device_active_s is not None else settings.DEVICE_ACTIVE_S
        )
        self._tz = timezone(timedelta(hours=settings.DISPLAY_UTC_OFFSET_H))

    def _device_counts(self, devices: List[Device], now: datetime) -> Dict[str, int]:
        active = sum(1 for d in devices if now - d.last_active_at < self._device_active)
        return {"total": len(devices), "active": active}

    def worst_device(self, now: Optional[datetime] = None) -> Optional[LatestStatus]:
        """Most severe fresh entry, by tier then water level; ties keep the first seen."""
        now = now or self._clock()
        fresh = [
            s for s in load_latest(self._kv).values()
            if now - s.updated_at < self._status_stale
        ]
        if not fresh:
            return None
        return max(fresh, key=lambda s: (s.status.rank, s.water_level))

    def summary(self) -> Dict[str, Any]:
        now = self._clock()
        worst = self.worst_device(now)
        notifications = self._records.notifications(newest_first=True, limit=5)
        return {
            "deviceID": worst.device_id if worst else None,
            "water": {
                "level": worst.water_level if worst else 0,
                "status": (worst.status if worst else StatusTier.NORMAL).value,
                "updatedAt": worst.updated_at.isoformat() if worst else None,
            },
            "wind": {"speed": worst.wind_speed if worst else 0},
            "rain": {"intensity": worst.rain_intensity if worst else 0},
            "devices": self._device_counts(self._devices.list_devices(), now),
            "notifications": [n.model_dump(by_alias=True, mode="json") for n in notifications],
        }

    def monitoring(self) -> Dict[str, Any]:
        """Every registered device joined with its latest status, if any."""
        now = self._clock()
        devices = sorted(self._devices.list_devices(), key=lambda d: d.device_id)
        latest = load_latest(self._kv)
        rows = []
        for device in devices:
            status = latest.get(device.device_id)
            rows.append({
                "deviceID": device.device_id,
                "location": device.location.model_dump() if device.location else None,
                "lastActive": device.last_active_at.isoformat(),
                "water": {
                    "level": status.water_level if status else 0,
                    "status": (status.status if status else StatusTier.NORMAL).value,
                    "updatedAt": status.updated_at.isoformat() if status else None,
                },
                "wind": {"speed": status.wind_speed if status else 0},
                "rain": {"intensity": status.rain_intensity if status else 0},
            })
        counts = self._device_counts(devices, now)
        return {
            "stats": {"totalDevices": counts["total"], "activeDevices": counts["active"]},
            "devices": rows,
        }

    def notification_history(
        self,
        device_id: Optional[str] = None,
        severity: Optional[StatusTier] = None,
        newest_first: bool = True,
        limit: Optional[int] = None,
    ) -> Dict[str, Dict[str, Any]]:
        """Notifications grouped by local calendar day, in query order."""
        found = self._records.notifications(
            device_id=device_id, severity=severity, newest_first=newest_first, limit=limit
        )
        grouped: Dict[str, Dict[str, Any]] = {}
        for n in found:
            bucket = grouped.setdefault(day_label(n.created_at, self._tz), {"total": 0, "items": []})
            bucket["items"].append(n.model_dump(by_alias=True, mode="json"))
            bucket["total"] += 1
        return grouped

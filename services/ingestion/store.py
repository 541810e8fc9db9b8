"""Storage interfaces for the ingestion pipeline + in-memory backend.

Three narrow collaborators:

- ``KeyValueStore`` — get/set-with-TTL plus a hash namespace
  (last-accepted raw baselines, latest status per device).
- ``RecordStore``   — append-only aggregated readings and notifications
  with per-device time-range queries ordered by ``created_at``.
- ``DeviceStore``   — device registry with upsert-by-key.

``InMemoryStore`` implements all three for tests and demo mode.
Redis (``redis_cache``) and SQLite (``sqlite_store``) back them in
production.
"""

from __future__ import annotations

import threading
import time
from bisect import insort
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from shared.models.alerts import Notification
from shared.models.telemetry import AggregatedReading, Device, StatusTier

# Key layout shared by every KeyValueStore backend
LATEST_STATUS_HASH = "latest_device_status"


def last_raw_key(device_id: str) -> str:
    return f"last_raw:{device_id}"


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str, ttl_s: Optional[int] = None) -> None: ...

    def delete(self, key: str) -> None: ...

    def hset(self, name: str, field: str, value: str) -> None: ...

    def hget(self, name: str, field: str) -> Optional[str]: ...

    def hgetall(self, name: str) -> Dict[str, str]: ...

    def hdel(self, name: str, field: str) -> None: ...


class RecordStore(Protocol):
    def append_reading(self, reading: AggregatedReading) -> None: ...

    def readings_between(
        self, device_id: str, start: datetime, end: datetime
    ) -> List[AggregatedReading]: ...

    def append_notification(self, notification: Notification) -> None: ...

    def latest_notification(self, device_id: str) -> Optional[Notification]: ...

    def notifications(
        self,
        device_id: Optional[str] = None,
        severity: Optional[StatusTier] = None,
        newest_first: bool = True,
        limit: Optional[int] = None,
    ) -> List[Notification]: ...


class DeviceStore(Protocol):
    def get_device(self, device_id: str) -> Optional[Device]: ...

    def upsert_device(self, device: Device) -> None: ...

    def touch(self, device_id: str, at: datetime) -> None: ...

    def list_devices(self) -> List[Device]: ...


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryStore:
    """Process-local store implementing all three interfaces.

    TTLs are measured with *clock* (monotonic seconds by default).
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._kv: Dict[str, Tuple[str, Optional[float]]] = {}
        self._hashes: Dict[str, Dict[str, str]] = defaultdict(dict)
        self._readings: Dict[str, List[Tuple[datetime, int, AggregatedReading]]] = defaultdict(list)
        self._notifications: List[Notification] = []
        self._devices: Dict[str, Device] = {}
        self._seq = 0

    # ── key-value ────────────────────────────────────────────
    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._kv.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._kv[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_s: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl_s if ttl_s else None
        with self._lock:
            self._kv[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._kv.pop(key, None)

    def hset(self, name: str, field: str, value: str) -> None:
        with self._lock:
            self._hashes[name][field] = value

    def hget(self, name: str, field: str) -> Optional[str]:
        with self._lock:
            return self._hashes.get(name, {}).get(field)

    def hgetall(self, name: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._hashes.get(name, {}))

    def hdel(self, name: str, field: str) -> None:
        with self._lock:
            self._hashes.get(name, {}).pop(field, None)

    # ── records ──────────────────────────────────────────────
    def append_reading(self, reading: AggregatedReading) -> None:
        with self._lock:
            self._seq += 1
            insort(
                self._readings[reading.device_id],
                (reading.created_at, self._seq, reading),
                key=lambda row: (row[0], row[1]),
            )

    def readings_between(
        self, device_id: str, start: datetime, end: datetime
    ) -> List[AggregatedReading]:
        """Rows with ``start <= created_at < end``, oldest first."""
        with self._lock:
            rows = list(self._readings.get(device_id, []))
        return [r for ts, _, r in rows if start <= ts < end]

    def append_notification(self, notification: Notification) -> None:
        with self._lock:
            self._notifications.append(notification)

    def latest_notification(self, device_id: str) -> Optional[Notification]:
        found = self.notifications(device_id=device_id, limit=1)
        return found[0] if found else None

    def notifications(
        self,
        device_id: Optional[str] = None,
        severity: Optional[StatusTier] = None,
        newest_first: bool = True,
        limit: Optional[int] = None,
    ) -> List[Notification]:
        with self._lock:
            # enumerate keeps insertion order as the tiebreak for equal timestamps
            rows = list(enumerate(self._notifications))
        rows = [
            (i, n) for i, n in rows
            if (device_id is None or n.device_id == device_id)
            and (severity is None or n.severity == severity)
        ]
        rows.sort(key=lambda row: (row[1].created_at, row[0]), reverse=newest_first)
        found = [n for _, n in rows]
        return found[:limit] if limit else found

    # ── devices ──────────────────────────────────────────────
    def get_device(self, device_id: str) -> Optional[Device]:
        with self._lock:
            return self._devices.get(device_id)

    def upsert_device(self, device: Device) -> None:
        with self._lock:
            self._devices[device.device_id] = device

    def touch(self, device_id: str, at: datetime) -> None:
        with self._lock:
            device = self._devices.get(device_id)
            if device is not None and at >= device.last_active_at:
                self._devices[device_id] = device.model_copy(update={"last_active_at": at})

    def list_devices(self) -> List[Device]:
        with self._lock:
            return list(self._devices.values())

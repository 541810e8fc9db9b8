"""SQLite-backed ``RecordStore`` + ``DeviceStore``.

Database: ``SQLITE_PATH`` (default ``./data/hydroalert.sqlite``)

Tables:
    ``aggregated_readings`` — one row per completed window
    ``notifications``       — deduplicated alerts
    ``devices``             — registry, upsert by device_id

Timestamps are stored as UTC epoch seconds so that range queries are
plain numeric comparisons. A single connection is shared across
worker threads behind a lock.
"""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import structlog

from shared.exceptions import StoreUnavailable
from shared.models.alerts import Notification
from shared.models.telemetry import AggregatedReading, Device, GeoLocation, StatusTier

logger = structlog.get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS aggregated_readings (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id      TEXT    NOT NULL,
    water_level    REAL    NOT NULL,
    rain_intensity REAL    NOT NULL,
    wind_speed     REAL    NOT NULL,
    status         TEXT    NOT NULL,
    created_at     REAL    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_readings_device_ts
    ON aggregated_readings(device_id, created_at DESC);

CREATE TABLE IF NOT EXISTS notifications (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id   TEXT    NOT NULL,
    severity    TEXT    NOT NULL,
    water_level REAL    NOT NULL,
    title       TEXT    NOT NULL,
    message     TEXT    NOT NULL,
    created_at  REAL    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_notifications_device_ts
    ON notifications(device_id, created_at DESC);

CREATE TABLE IF NOT EXISTS devices (
    device_id      TEXT PRIMARY KEY,
    latitude       REAL,
    longitude      REAL,
    last_active_at REAL NOT NULL
);
"""


def _to_epoch(ts: datetime) -> float:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.timestamp()


def _from_epoch(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class SqliteRecordStore:
    """Append-only record store and device registry on one SQLite file."""

    def __init__(self, db_path: str = "./data/hydroalert.sqlite", timeout_s: float = 5.0) -> None:
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, timeout=timeout_s, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()
        logger.info("sqlite_store_ready", db=db_path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _execute(self, operation: str, sql: str, params: tuple = (), commit: bool = False) -> list:
        try:
            with self._lock:
                cur = self._conn.execute(sql, params)
                rows = cur.fetchall()
                if commit:
                    self._conn.commit()
                return rows
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"sqlite {operation}", exc) from exc

    # ── aggregated readings ─────────────────────────────────
    def append_reading(self, reading: AggregatedReading) -> None:
        self._execute(
            "append_reading",
            "INSERT INTO aggregated_readings "
            "(device_id, water_level, rain_intensity, wind_speed, status, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                reading.device_id,
                reading.water_level,
                reading.rain_intensity,
                reading.wind_speed,
                reading.status.value,
                _to_epoch(reading.created_at),
            ),
            commit=True,
        )

    def readings_between(
        self, device_id: str, start: datetime, end: datetime
    ) -> List[AggregatedReading]:
        rows = self._execute(
            "readings_between",
            "SELECT device_id, water_level, rain_intensity, wind_speed, status, created_at "
            "FROM aggregated_readings "
            "WHERE device_id = ? AND created_at >= ? AND created_at < ? "
            "ORDER BY created_at ASC, id ASC",
            (device_id, _to_epoch(start), _to_epoch(end)),
        )
        return [
            AggregatedReading(
                device_id=r[0],
                water_level=r[1],
                rain_intensity=r[2],
                wind_speed=r[3],
                status=StatusTier(r[4]),
                created_at=_from_epoch(r[5]),
            )
            for r in rows
        ]

    # ── notifications ───────────────────────────────────────
    def append_notification(self, notification: Notification) -> None:
        self._execute(
            "append_notification",
            "INSERT INTO notifications "
            "(device_id, severity, water_level, title, message, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                notification.device_id,
                notification.severity.value,
                notification.water_level,
                notification.title,
                notification.message,
                _to_epoch(notification.created_at),
            ),
            commit=True,
        )

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
        clauses, params = [], []
        if device_id is not None:
            clauses.append("device_id = ?")
            params.append(device_id)
        if severity is not None:
            clauses.append("severity = ?")
            params.append(severity.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        order = "DESC" if newest_first else "ASC"
        sql = (
            "SELECT device_id, severity, water_level, title, message, created_at "
            f"FROM notifications {where} ORDER BY created_at {order}, id {order}"
        )
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))
        rows = self._execute("notifications", sql, tuple(params))
        return [
            Notification(
                device_id=r[0],
                severity=StatusTier(r[1]),
                water_level=r[2],
                title=r[3],
                message=r[4],
                created_at=_from_epoch(r[5]),
            )
            for r in rows
        ]

    # ── devices ─────────────────────────────────────────────
    def get_device(self, device_id: str) -> Optional[Device]:
        rows = self._execute(
            "get_device",
            "SELECT device_id, latitude, longitude, last_active_at FROM devices WHERE device_id = ?",
            (device_id,),
        )
        return self._row_to_device(rows[0]) if rows else None

    def upsert_device(self, device: Device) -> None:
        loc = device.location
        self._execute(
            "upsert_device",
            "INSERT INTO devices (device_id, latitude, longitude, last_active_at) "
            "VALUES (?, ?, ?, ?) "
            "ON CONFLICT(device_id) DO UPDATE SET "
            "latitude = excluded.latitude, longitude = excluded.longitude, "
            "last_active_at = excluded.last_active_at",
            (
                device.device_id,
                loc.latitude if loc else None,
                loc.longitude if loc else None,
                _to_epoch(device.last_active_at),
            ),
            commit=True,
        )

    def touch(self, device_id: str, at: datetime) -> None:
        self._execute(
            "touch",
            "UPDATE devices SET last_active_at = MAX(last_active_at, ?) WHERE device_id = ?",
            (_to_epoch(at), device_id),
            commit=True,
        )

    def list_devices(self) -> List[Device]:
        rows = self._execute(
            "list_devices",
            "SELECT device_id, latitude, longitude, last_active_at FROM devices ORDER BY device_id",
        )
        return [self._row_to_device(r) for r in rows]

    @staticmethod
    def _row_to_device(row: tuple) -> Device:
        location = None
        if row[1] is not None or row[2] is not None:
            location = GeoLocation(latitude=row[1], longitude=row[2])
        return Device(device_id=row[0], location=location, last_active_at=_from_epoch(row[3]))

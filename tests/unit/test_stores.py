"""Tests for the in-memory and SQLite record/device stores."""

from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import T0

from shared.models.telemetry import AggregatedReading, Device, GeoLocation, StatusTier
from services.ingestion.notification_gate import build_notification
from services.ingestion.sqlite_store import SqliteRecordStore
from services.ingestion.store import InMemoryStore


def _row(minute: float, level: float = 100.0, device: str = "DEV-1") -> AggregatedReading:
    return AggregatedReading(
        device_id=device,
        water_level=level,
        rain_intensity=0.0,
        wind_speed=0.0,
        status=StatusTier.SIAGA_2,
        created_at=T0 + timedelta(minutes=minute),
    )


@pytest.fixture(params=["memory", "sqlite"])
def records(request, tmp_path):
    if request.param == "memory":
        yield InMemoryStore()
    else:
        store = SqliteRecordStore(str(tmp_path / "hydroalert.sqlite"))
        yield store
        store.close()


class TestRecordStore:
    def test_readings_between_is_half_open_and_ordered(self, records):
        for minute in (3, 1, 2, 0, 5):
            records.append_reading(_row(minute, level=100 + minute))
        records.append_reading(_row(2, device="DEV-2"))

        found = records.readings_between("DEV-1", T0 + timedelta(minutes=1), T0 + timedelta(minutes=5))
        assert [r.water_level for r in found] == [101, 102, 103]
        assert all(r.device_id == "DEV-1" for r in found)

    def test_latest_notification_per_device(self, records):
        records.append_notification(build_notification("DEV-1", StatusTier.WASPADA, 65, T0))
        records.append_notification(
            build_notification("DEV-1", StatusTier.SIAGA_2, 95, T0 + timedelta(minutes=3))
        )
        records.append_notification(
            build_notification("DEV-2", StatusTier.BAHAYA, 190, T0 + timedelta(minutes=9))
        )
        latest = records.latest_notification("DEV-1")
        assert latest.severity is StatusTier.SIAGA_2
        assert latest.created_at == T0 + timedelta(minutes=3)
        assert records.latest_notification("DEV-404") is None

    def test_notification_filters_and_order(self, records):
        for i, tier in enumerate([StatusTier.WASPADA, StatusTier.SIAGA_2, StatusTier.WASPADA]):
            records.append_notification(
                build_notification("DEV-1", tier, 60 + i, T0 + timedelta(minutes=i))
            )
        waspada = records.notifications(severity=StatusTier.WASPADA)
        assert [n.water_level for n in waspada] == [62, 60]
        oldest = records.notifications(newest_first=False, limit=2)
        assert [n.water_level for n in oldest] == [60, 61]


class TestDeviceStore:
    def test_upsert_and_touch_moves_forward_only(self, records):
        records.upsert_device(
            Device(device_id="DEV-1", location=GeoLocation(latitude=-6.2, longitude=106.8),
                   last_active_at=T0)
        )
        records.touch("DEV-1", T0 + timedelta(minutes=5))
        records.touch("DEV-1", T0 + timedelta(minutes=1))
        device = records.get_device("DEV-1")
        assert device.last_active_at == T0 + timedelta(minutes=5)
        assert device.location.latitude == pytest.approx(-6.2)
        assert [d.device_id for d in records.list_devices()] == ["DEV-1"]

    def test_unknown_device(self, records):
        assert records.get_device("DEV-404") is None


class TestInMemoryKeyValue:
    def test_ttl_expiry(self):
        now = [100.0]
        store = InMemoryStore(clock=lambda: now[0])
        store.set("k", "v", ttl_s=60)
        assert store.get("k") == "v"
        now[0] += 61
        assert store.get("k") is None

    def test_hash_ops(self, store):
        store.hset("h", "a", "1")
        store.hset("h", "b", "2")
        store.hdel("h", "a")
        assert store.hgetall("h") == {"b": "2"}
        assert store.hget("h", "a") is None

"""Tests for the dashboard read views and the stale-status sweeper."""

from __future__ import annotations

from datetime import timedelta, timezone

from conftest import T0, FakeClock

from shared.models.telemetry import Device, LatestStatus, StatusTier
from services.ingestion.dashboard import DashboardView, day_label
from services.ingestion.notification_gate import build_notification
from services.ingestion.store import LATEST_STATUS_HASH, last_raw_key
from services.ingestion.sweeper import StaleStatusSweeper


def _put_latest(store, device_id, level, age_s, status=StatusTier.NORMAL):
    entry = LatestStatus(
        device_id=device_id,
        water_level=level,
        rain_intensity=0.0,
        wind_speed=1.0,
        status=status,
        updated_at=T0 - timedelta(seconds=age_s),
    )
    store.hset(LATEST_STATUS_HASH, device_id, entry.model_dump_json(by_alias=True))


class StaleSnapshotKV:
    """Delegates to *store* but lists a frozen copy of the status hash."""

    def __init__(self, store, snapshot):
        self._store = store
        self._snapshot = snapshot

    def hgetall(self, name):
        return dict(self._snapshot)

    def __getattr__(self, name):
        return getattr(self._store, name)


def _view(store, clock=None):
    return DashboardView(store, store, store, clock=clock or FakeClock(),
                         status_stale_s=300, device_active_s=300)


class TestDashboardSummary:
    def test_worst_is_highest_fresh_level(self, store):
        _put_latest(store, "DEV-1", 80.0, age_s=10, status=StatusTier.WASPADA)
        _put_latest(store, "DEV-2", 130.0, age_s=20, status=StatusTier.SIAGA_1)
        _put_latest(store, "DEV-3", 200.0, age_s=600, status=StatusTier.BAHAYA)  # stale

        summary = _view(store).summary()
        assert summary["deviceID"] == "DEV-2"
        assert summary["water"]["level"] == 130.0
        assert summary["water"]["status"] == "Siaga 1"

    def test_tier_outranks_raw_level(self, store):
        # A deep-channel device at 200 cm is still Normal on its own table
        _put_latest(store, "DEV-DEEP", 200.0, age_s=10, status=StatusTier.NORMAL)
        _put_latest(store, "DEV-SHALLOW", 130.0, age_s=10, status=StatusTier.SIAGA_1)
        _put_latest(store, "DEV-RIVAL", 125.0, age_s=10, status=StatusTier.SIAGA_1)

        assert _view(store).worst_device(T0).device_id == "DEV-SHALLOW"

    def test_empty_dashboard_defaults(self, store):
        summary = _view(store).summary()
        assert summary["deviceID"] is None
        assert summary["water"] == {"level": 0, "status": "Normal", "updatedAt": None}
        assert summary["devices"] == {"total": 0, "active": 0}
        assert summary["notifications"] == []

    def test_device_counts_and_recent_notifications(self, store):
        store.upsert_device(Device(device_id="DEV-1", last_active_at=T0 - timedelta(seconds=30)))
        store.upsert_device(Device(device_id="DEV-2", last_active_at=T0 - timedelta(hours=2)))
        for i in range(7):
            store.append_notification(
                build_notification("DEV-1", StatusTier.WASPADA, 60 + i, T0 - timedelta(minutes=i))
            )
        summary = _view(store).summary()
        assert summary["devices"] == {"total": 2, "active": 1}
        assert len(summary["notifications"]) == 5
        assert summary["notifications"][0]["waterLevel"] == 60

    def test_corrupt_entry_is_skipped(self, store):
        store.hset(LATEST_STATUS_HASH, "DEV-X", "{not json")
        _put_latest(store, "DEV-1", 70.0, age_s=5)
        assert _view(store).summary()["deviceID"] == "DEV-1"


class TestMonitoring:
    def test_joins_devices_with_latest(self, store):
        store.upsert_device(Device(device_id="DEV-2", last_active_at=T0))
        store.upsert_device(Device(device_id="DEV-1", last_active_at=T0))
        _put_latest(store, "DEV-1", 95.0, age_s=0, status=StatusTier.SIAGA_2)

        data = _view(store).monitoring()
        assert data["stats"] == {"totalDevices": 2, "activeDevices": 2}
        assert [d["deviceID"] for d in data["devices"]] == ["DEV-1", "DEV-2"]
        assert data["devices"][0]["water"]["status"] == "Siaga 2"
        assert data["devices"][1]["water"]["level"] == 0


class TestNotificationHistory:
    def test_grouped_by_local_day(self, store):
        # 18:00 UTC is already the next day in WIB (UTC+7)
        store.append_notification(build_notification("DEV-1", StatusTier.WASPADA, 61,
                                                      T0.replace(hour=10)))
        store.append_notification(build_notification("DEV-1", StatusTier.SIAGA_2, 95,
                                                      T0.replace(hour=18)))
        store.append_notification(build_notification("DEV-2", StatusTier.WASPADA, 62,
                                                      T0.replace(hour=11)))

        history = _view(store).notification_history()
        assert list(history) == ["12 November 2025", "11 November 2025"]
        assert history["11 November 2025"]["total"] == 2

        only_dev2 = _view(store).notification_history(device_id="DEV-2")
        assert only_dev2["11 November 2025"]["items"][0]["deviceID"] == "DEV-2"

    def test_day_label_indonesian_month(self):
        assert day_label(T0.replace(month=8, day=17), timezone.utc) == "17 Agustus 2025"


class TestStaleStatusSweeper:
    def test_purges_only_stale_devices(self, store):
        _put_latest(store, "DEV-OLD", 100.0, age_s=16 * 60)
        _put_latest(store, "DEV-NEW", 100.0, age_s=60)
        store.set(last_raw_key("DEV-OLD"), "{}")
        store.set(last_raw_key("DEV-NEW"), "{}")

        sweeper = StaleStatusSweeper(store, stale_after_s=900, interval_s=600, clock=FakeClock())
        assert sweeper.sweep_once() == 1
        assert set(store.hgetall(LATEST_STATUS_HASH)) == {"DEV-NEW"}
        assert store.get(last_raw_key("DEV-OLD")) is None
        assert store.get(last_raw_key("DEV-NEW")) == "{}"

    def test_entry_refreshed_after_snapshot_is_kept(self, store):
        _put_latest(store, "DEV-1", 100.0, age_s=16 * 60)
        snapshot = store.hgetall(LATEST_STATUS_HASH)
        # A reading lands between the sweeper's snapshot and its delete
        _put_latest(store, "DEV-1", 101.0, age_s=5)
        store.set(last_raw_key("DEV-1"), "{}")

        kv = StaleSnapshotKV(store, snapshot)
        sweeper = StaleStatusSweeper(kv, stale_after_s=900, interval_s=600, clock=FakeClock())
        assert sweeper.sweep_once() == 0
        assert "DEV-1" in store.hgetall(LATEST_STATUS_HASH)
        assert store.get(last_raw_key("DEV-1")) == "{}"

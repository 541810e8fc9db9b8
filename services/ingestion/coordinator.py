"""Per-reading orchestration of the ingestion pipeline.

For every raw reading::

    1. resolve / auto-create the Device
    2. NoiseFilter           — a rejection returns immediately
    3. touch Device, overwrite LatestStatus, move the noise baseline
    ─── everything above runs under the device lock, synchronously ───
    4. publish the live update (device channel + dashboard)
    5. SlidingBuffer.push
    6. on a full window: aggregate → persist → gate → notify → predict

Steps 4-6 are queued on the device's serial lane of a
``KeyedSerialExecutor`` *before* the device lock is released, so work
for one device runs in arrival order while devices proceed in
parallel. The caller only ever waits for steps 1-3.
"""

from __future__ import annotations

import math
import threading
from collections import Counter, deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Optional, Tuple

import structlog

from shared.broadcaster import (
    DASHBOARD_TOPIC,
    NOTIFICATIONS_TOPIC,
    Broadcaster,
    build_broadcaster,
    device_topic,
)
from shared.config import Settings, get_settings
from shared.exceptions import StoreUnavailable
from shared.models.alerts import IngestResult, Notification
from shared.models.telemetry import (
    AggregatedReading,
    Device,
    GeoLocation,
    LatestStatus,
    RawReading,
)
from shared.notifier import Notifier, build_notifier
from services.ingestion.aggregator import Aggregator
from services.ingestion.buffer import SlidingBuffer, WindowReady
from services.ingestion.classifier import StatusClassifier
from services.ingestion.keyed_executor import KeyedLocks, KeyedSerialExecutor
from services.ingestion.noise_filter import NoiseFilter, Rejected
from services.ingestion.notification_gate import Emit, NotificationGate, format_notifier_message
from services.ingestion.store import (
    LATEST_STATUS_HASH,
    DeviceStore,
    InMemoryStore,
    KeyValueStore,
    RecordStore,
)
from services.ingestion.trend import TrendPredictor

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def water_level_from_distance(distance_cm: float, mount_height_cm: float) -> float:
    """Ultrasonic geometry: the sensor hangs *mount_height_cm* above the bed."""
    return max(mount_height_cm - distance_cm, 0.0)


def _event(name: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {"event": name, "data": data}


class IngestionCoordinator:
    """Wires the pipeline stages together around per-device serialisation.

    All collaborators are injected; ``build_coordinator`` assembles the
    production set from settings.
    """

    def __init__(
        self,
        *,
        kv: KeyValueStore,
        records: RecordStore,
        devices: DeviceStore,
        broadcaster: Broadcaster,
        notifier: Notifier,
        classifier: StatusClassifier,
        noise_filter: NoiseFilter,
        buffer: SlidingBuffer,
        aggregator: Aggregator,
        predictor: TrendPredictor,
        gate: NotificationGate,
        executor: Optional[KeyedSerialExecutor] = None,
        clock: Callable[[], datetime] = _utcnow,
        mount_height_cm: Optional[float] = None,
        retry_queue_max: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self.kv = kv
        self.records = records
        self.devices = devices
        self.broadcaster = broadcaster
        self.notifier = notifier
        self.classifier = classifier
        self.noise_filter = noise_filter
        self.buffer = buffer
        self.aggregator = aggregator
        self.predictor = predictor
        self.gate = gate
        self._executor = executor or KeyedSerialExecutor(max_workers=settings.INGEST_WORKERS)
        self._clock = clock
        self._mount_height = (
            mount_height_cm if mount_height_cm is not None else settings.SENSOR_MOUNT_HEIGHT_CM
        )
        self._retry_max = retry_queue_max if retry_queue_max is not None else settings.RETRY_QUEUE_MAX

        self._locks = KeyedLocks()
        self._retry: Dict[str, Deque[AggregatedReading]] = {}
        self._stats: Counter = Counter()
        self._stats_lock = threading.Lock()

    # ── helpers ──────────────────────────────────────────────

    def _count(self, name: str, n: int = 1) -> None:
        with self._stats_lock:
            self._stats[name] += n

    def _now(self, now: Optional[datetime]) -> datetime:
        ts = now or self._clock()
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return ts

    def _water_level(self, raw: float) -> float:
        if self._mount_height > 0:
            return water_level_from_distance(raw, self._mount_height)
        return raw

    def _ensure_device(self, device_id: str, now: datetime) -> Tuple[Device, bool]:
        device = self.devices.get_device(device_id)
        if device is not None:
            return device, False
        device = Device(device_id=device_id, last_active_at=now)
        self.devices.upsert_device(device)
        logger.info("device_auto_registered", device=device_id)
        return device, True

    def _read_prior(self, device_id: str) -> Optional[LatestStatus]:
        prior_raw = self.kv.hget(LATEST_STATUS_HASH, device_id)
        if not prior_raw:
            return None
        try:
            return LatestStatus.model_validate_json(prior_raw)
        except ValueError as exc:
            logger.warning("latest_status_corrupt", device=device_id, error=str(exc))
            return None

    def _write_latest(self, latest: LatestStatus) -> LatestStatus:
        prior = self._read_prior(latest.device_id)
        if prior is not None and prior.updated_at > latest.updated_at:
            # Late arrival: keep the values, never move the clock back
            latest = latest.model_copy(update={"updated_at": prior.updated_at})
        self.kv.hset(LATEST_STATUS_HASH, latest.device_id, latest.model_dump_json(by_alias=True))
        return latest

    # ── public API ───────────────────────────────────────────

    def register_device(
        self,
        device_id: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[Device, bool]:
        """Create a device if unknown. Returns ``(device, created)``."""
        ts = self._now(now)
        with self._locks.get(device_id):
            existing = self.devices.get_device(device_id)
            if existing is not None:
                return existing, False
            location = None
            if latitude is not None or longitude is not None:
                location = GeoLocation(latitude=latitude, longitude=longitude)
            device = Device(device_id=device_id, location=location, last_active_at=ts)
            self.devices.upsert_device(device)
        logger.info("device_registered", device=device_id)
        return device, True

    def ingest(
        self,
        device_id: str,
        water_level_raw: float,
        rain_intensity: float,
        wind_speed: float,
        now: Optional[datetime] = None,
    ) -> IngestResult:
        """Accept or reject one raw reading.

        Raises:
            StoreUnavailable: a store call in the synchronous part failed.
        """
        ts = self._now(now)
        if not all(math.isfinite(v) for v in (water_level_raw, rain_intensity, wind_speed)):
            self._count("rejected")
            logger.warning(
                "non_finite_reading_rejected",
                device=device_id,
                water_level=water_level_raw,
                rain_intensity=rain_intensity,
                wind_speed=wind_speed,
            )
            return IngestResult(
                accepted=False, device_id=device_id, reason="Possible sensor fault: non-finite value"
            )
        water_level = self._water_level(water_level_raw)

        with self._locks.get(device_id):
            self._ensure_device(device_id, ts)

            outcome = self.noise_filter.check(device_id, water_level, ts)
            if isinstance(outcome, Rejected):
                self._count("rejected")
                return IngestResult(accepted=False, device_id=device_id, reason=outcome.reason)

            self.devices.touch(device_id, ts)
            status = self.classifier.classify(water_level, device_id=device_id)
            latest = self._write_latest(
                LatestStatus(
                    device_id=device_id,
                    water_level=water_level,
                    rain_intensity=rain_intensity * self.aggregator.rain_unit_factor,
                    wind_speed=wind_speed,
                    status=status,
                    updated_at=ts,
                )
            )
            # Baseline moves only once the reading is fully stored
            self.noise_filter.commit(device_id, water_level, ts)
            raw = RawReading(
                device_id=device_id,
                water_level_raw=water_level,
                rain_intensity_raw=rain_intensity,
                wind_speed=wind_speed,
                received_at=ts,
            )
            self._executor.submit(device_id, self._process_accepted, latest, raw)

        self._count("accepted")
        return IngestResult(accepted=True, device_id=device_id, status=status)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for all queued background work. False on timeout."""
        return self._executor.wait_idle(timeout)

    def close(self) -> None:
        """Drain background work, then release broadcaster, notifier and store."""
        self._executor.shutdown(wait=True)
        for resource in (self.broadcaster, self.notifier, self.records):
            closer = getattr(resource, "close", None)
            if closer is not None:
                closer()

    @property
    def locks(self) -> KeyedLocks:
        return self._locks

    @property
    def clock(self) -> Callable[[], datetime]:
        return self._clock

    @property
    def stats(self) -> Dict[str, int]:
        with self._stats_lock:
            out = dict(self._stats)
        out["suppressed"] = self.gate.suppressed_count
        out["retry_pending"] = sum(len(q) for q in list(self._retry.values()))
        return out

    # ── background: one device lane ──────────────────────────

    def _process_accepted(self, latest: LatestStatus, raw: RawReading) -> None:
        payload = latest.model_dump(by_alias=True, mode="json")
        self.broadcaster.publish(device_topic(latest.device_id), _event("sensor_update", payload))
        self.broadcaster.publish(DASHBOARD_TOPIC, _event("dashboard_update", payload))

        pushed = self.buffer.push(raw.device_id, raw)
        if isinstance(pushed, WindowReady):
            self._process_window(pushed)

    def _process_window(self, window: WindowReady) -> None:
        aggregated = self.aggregator.aggregate(window.readings)
        device_id = aggregated.device_id
        self._count("windows")
        self._persist_reading(aggregated)

        try:
            decision = self.gate.evaluate(
                device_id, aggregated.status, aggregated.water_level, aggregated.created_at
            )
        except StoreUnavailable as exc:
            logger.warning("gate_skipped_store_unavailable", device=device_id, error=str(exc))
        else:
            if isinstance(decision, Emit):
                self._dispatch_notification(decision.notification, decision.reason)

        try:
            prediction = self.predictor.predict(device_id, aggregated)
        except StoreUnavailable as exc:
            logger.warning("prediction_skipped_store_unavailable", device=device_id, error=str(exc))
            return
        if prediction is not None:
            self._count("predictions")
            self.broadcaster.publish(
                device_topic(device_id),
                _event("prediction", prediction.model_dump(by_alias=True, mode="json")),
            )

    def _persist_reading(self, reading: AggregatedReading) -> None:
        """Append the row; on failure park it, oldest rows first next time."""
        queue = self._retry.setdefault(reading.device_id, deque())
        while queue:
            try:
                self.records.append_reading(queue[0])
            except StoreUnavailable:
                break
            queue.popleft()
            self._count("retried")

        if queue:
            self._park(queue, reading)
            return
        try:
            self.records.append_reading(reading)
        except StoreUnavailable as exc:
            logger.warning("reading_persist_failed", device=reading.device_id, error=str(exc))
            self._park(queue, reading)

    def _park(self, queue: Deque[AggregatedReading], reading: AggregatedReading) -> None:
        if len(queue) >= self._retry_max:
            dropped = queue.popleft()
            self._count("retry_dropped")
            logger.error(
                "retry_queue_overflow",
                device=reading.device_id,
                dropped_created_at=dropped.created_at.isoformat(),
            )
        queue.append(reading)

    def _dispatch_notification(self, notification: Notification, reason: str) -> None:
        try:
            self.records.append_notification(notification)
        except StoreUnavailable as exc:
            # Delivery proceeds without the history row
            logger.error("notification_persist_failed", device=notification.device_id, error=str(exc))
        self._count("notifications")
        logger.info(
            "notification_emitted",
            device=notification.device_id,
            severity=notification.severity.value,
            reason=reason,
        )
        self.notifier.notify(format_notifier_message(notification))
        self.broadcaster.publish(
            NOTIFICATIONS_TOPIC,
            _event("new_notification", notification.model_dump(by_alias=True, mode="json")),
        )


def build_coordinator(settings: Optional[Settings] = None) -> IngestionCoordinator:
    """Assemble the pipeline from ``STORE_BACKEND`` and friends."""
    settings = settings or get_settings()

    if settings.STORE_BACKEND == "memory":
        store = InMemoryStore()
        kv: KeyValueStore = store
        records: RecordStore = store
        devices: DeviceStore = store
    elif settings.STORE_BACKEND == "redis":
        from services.ingestion.redis_cache import RedisKeyValueStore
        from services.ingestion.sqlite_store import SqliteRecordStore

        kv = RedisKeyValueStore(settings.REDIS_URL, settings.REDIS_SOCKET_TIMEOUT_S)
        sqlite = SqliteRecordStore(settings.SQLITE_PATH)
        records = sqlite
        devices = sqlite
    else:
        raise ValueError(f"unknown STORE_BACKEND {settings.STORE_BACKEND!r}")

    classifier = StatusClassifier.from_yaml(settings.THRESHOLDS_PATH)
    coordinator = IngestionCoordinator(
        kv=kv,
        records=records,
        devices=devices,
        broadcaster=build_broadcaster(settings),
        notifier=build_notifier(settings),
        classifier=classifier,
        noise_filter=NoiseFilter(kv),
        buffer=SlidingBuffer(settings.WINDOW_SIZE),
        aggregator=Aggregator(classifier),
        predictor=TrendPredictor(records, classifier),
        gate=NotificationGate(records),
        executor=KeyedSerialExecutor(max_workers=settings.INGEST_WORKERS),
    )
    logger.info(
        "coordinator_ready",
        store=settings.STORE_BACKEND,
        broadcast=settings.BROADCAST_BACKEND,
        notifier=settings.NOTIFIER_BACKEND,
        window=settings.WINDOW_SIZE,
    )
    return coordinator

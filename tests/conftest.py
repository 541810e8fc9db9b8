"""Shared fixtures for the HydroAlert test suite.

Everything runs against the in-memory adapters with an explicit clock;
no Redis, Kafka or Telegram is needed.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from shared.broadcaster import InMemoryBroadcaster
from services.ingestion.aggregator import Aggregator
from services.ingestion.buffer import SlidingBuffer
from services.ingestion.classifier import StatusClassifier
from services.ingestion.coordinator import IngestionCoordinator
from services.ingestion.keyed_executor import KeyedSerialExecutor
from services.ingestion.noise_filter import AbsoluteJumpPolicy, NoiseFilter
from services.ingestion.notification_gate import NotificationGate
from services.ingestion.store import InMemoryStore
from services.ingestion.trend import TrendPredictor

T0 = datetime(2025, 11, 11, 6, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class RecordingNotifier:
    def __init__(self) -> None:
        self.messages: List[str] = []

    def notify(self, message: str) -> None:
        self.messages.append(message)


# ── Fixtures ─────────────────────────────────────────────────────────────

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def classifier():
    return StatusClassifier()


@pytest.fixture
def broadcaster():
    return InMemoryBroadcaster()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_coordinator(store, classifier, broadcaster, notifier, clock):
    """Factory: ``make_coordinator(window=4, records=..., kv=...)``."""
    built: List[IngestionCoordinator] = []

    def _make(window: int = 4, records=None, kv=None, **kwargs) -> IngestionCoordinator:
        records = records or store
        kv = kv or store
        coord = IngestionCoordinator(
            kv=kv,
            records=records,
            devices=store,
            broadcaster=broadcaster,
            notifier=notifier,
            classifier=classifier,
            noise_filter=NoiseFilter(
                kv, AbsoluteJumpPolicy(max_jump_cm=100, min_interval_s=30), baseline_ttl_s=60
            ),
            buffer=SlidingBuffer(window),
            aggregator=Aggregator(classifier, rain_unit_factor=3600),
            predictor=TrendPredictor(
                records, classifier, axis="elapsed", lookback_min=10, min_points=4, min_rise=0.01
            ),
            gate=NotificationGate(records, cooldown_s=1800, significant_rise_cm=20),
            executor=KeyedSerialExecutor(max_workers=4),
            clock=clock,
            mount_height_cm=kwargs.pop("mount_height_cm", 0),
            retry_queue_max=kwargs.pop("retry_queue_max", 60),
        )
        built.append(coord)
        return coord

    yield _make
    for coord in built:
        coord.flush(timeout=5)
        coord.close()

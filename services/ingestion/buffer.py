"""Per-device count-based window of raw readings.

Each device accumulates raw readings in arrival order. When the
buffer reaches ``capacity`` the whole window is swapped out for an
empty list under the device lock and returned to exactly one caller
as ``WindowReady``; any reading pushed afterwards starts the next
window.

Window duration = capacity × device sampling cadence. With the
default 12 samples at ~5 s per sample a window covers ~1 minute, so
rise rates computed per window are roughly cm/minute. Deployments
with a different cadence set ``WINDOW_MINUTES`` accordingly.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Union

import structlog

from shared.models.telemetry import RawReading
from services.ingestion.keyed_executor import KeyedLocks

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class WindowReady:
    readings: List[RawReading]


@dataclass(frozen=True)
class WindowPending:
    size: int


PushResult = Union[WindowReady, WindowPending]


class SlidingBuffer:
    """Bounded FIFO per device with exactly-once window hand-off."""

    def __init__(self, capacity: int = 12) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._locks = KeyedLocks()
        self._buffers: Dict[str, List[RawReading]] = {}

    @property
    def capacity(self) -> int:
        return self._capacity

    def push(self, device_id: str, reading: RawReading) -> PushResult:
        """Append *reading*; hand the window off when it fills."""
        with self._locks.get(device_id):
            buf = self._buffers.setdefault(device_id, [])
            buf.append(reading)
            if len(buf) < self._capacity:
                return WindowPending(size=len(buf))
            # Claim: swap in a fresh list so later pushes start a new window
            self._buffers[device_id] = []

        logger.debug("window_ready", device=device_id, size=len(buf))
        return WindowReady(readings=buf)

    def size(self, device_id: str) -> int:
        with self._locks.get(device_id):
            return len(self._buffers.get(device_id, ()))


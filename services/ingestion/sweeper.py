"""Periodic purge of devices that went quiet.

Every ``SWEEP_INTERVAL_S`` (10 min) the sweeper drops the latest-status
entry and the last-accepted baseline of every device whose status has
not been refreshed for ``SWEEP_STALE_S`` (15 min). Device records and
history are untouched.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog

from shared.config import get_settings
from shared.exceptions import StoreUnavailable
from shared.models.telemetry import LatestStatus
from services.ingestion.dashboard import load_latest
from services.ingestion.keyed_executor import KeyedLocks
from services.ingestion.store import LATEST_STATUS_HASH, KeyValueStore, last_raw_key

logger = structlog.get_logger(__name__)


class StaleStatusSweeper:
    def __init__(
        self,
        kv: KeyValueStore,
        stale_after_s: Optional[int] = None,
        interval_s: Optional[int] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        locks: Optional[KeyedLocks] = None,
    ) -> None:
        settings = get_settings()
        self._kv = kv
        self._stale_after = timedelta(
            seconds=stale_after_s if stale_after_s is not None else settings.SWEEP_STALE_S
        )
        self._interval_s = interval_s if interval_s is not None else settings.SWEEP_INTERVAL_S
        self._clock = clock
        self._locks = locks or KeyedLocks()

    def _still_stale(self, device_id: str, now: datetime) -> bool:
        raw = self._kv.hget(LATEST_STATUS_HASH, device_id)
        if not raw:
            return False
        try:
            status = LatestStatus.model_validate_json(raw)
        except ValueError:
            return True
        return now - status.updated_at > self._stale_after

    def sweep_once(self) -> int:
        """Delete stale entries now. Returns how many devices were purged.

        Candidates come from a snapshot; each one is re-read under its
        device lock so a reading that lands in between is kept.
        """
        now = self._clock()
        purged = 0
        for device_id, status in load_latest(self._kv).items():
            if now - status.updated_at <= self._stale_after:
                continue
            with self._locks.get(device_id):
                if not self._still_stale(device_id, now):
                    continue
                self._kv.hdel(LATEST_STATUS_HASH, device_id)
                self._kv.delete(last_raw_key(device_id))
            purged += 1
        logger.info("stale_sweep_done", purged=purged)
        return purged

    async def run(self) -> None:
        """Sweep forever; cancel the task to stop."""
        logger.info("stale_sweeper_started", interval_s=self._interval_s)
        while True:
            await asyncio.sleep(self._interval_s)
            try:
                await asyncio.to_thread(self.sweep_once)
            except StoreUnavailable as exc:
                logger.warning("stale_sweep_failed", error=str(exc))

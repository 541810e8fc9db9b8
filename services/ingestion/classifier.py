"""Water-level → flood status classification.

Thresholds come from a YAML table (see ``config/thresholds.yaml``)
with a deployment-wide default and optional per-device overrides,
since different rivers have very different depths. The default may be
partial (missing tiers keep the built-in values); a per-device table
replaces the default outright and must list all four tiers. The file is
watched by modification time and re-read on change.

Classification walks the tiers from most to least severe; the first
tier whose threshold is met wins, otherwise ``Normal``::

    classifier = StatusClassifier.from_yaml("config/thresholds.yaml")
    classifier.classify(95.0)   # → StatusTier.SIAGA_2
"""

from __future__ import annotations

import os
import threading
import time
from typing import Dict, Mapping, Optional

import structlog
import yaml

from shared.models.telemetry import StatusTier, TIER_ORDER

logger = structlog.get_logger(__name__)

DEFAULT_THRESHOLDS: Dict[StatusTier, float] = {
    StatusTier.WASPADA: 60.0,
    StatusTier.SIAGA_2: 90.0,
    StatusTier.SIAGA_1: 120.0,
    StatusTier.BAHAYA: 180.0,
}

_RELOAD_CHECK_INTERVAL_S = 5.0


def _parse_table(raw: Mapping, base: Mapping[StatusTier, float]) -> Dict[StatusTier, float]:
    """Turn ``{"Siaga 1": 120, …}`` into a validated tier table."""
    table = dict(base)
    for name, value in (raw or {}).items():
        tier = StatusTier(name)
        if tier is StatusTier.NORMAL:
            raise ValueError("Normal has no threshold; it is the fall-through tier")
        table[tier] = float(value)

    previous = float("-inf")
    for tier in TIER_ORDER[1:]:
        if tier not in table:
            raise ValueError(f"missing threshold for {tier.value}")
        if table[tier] < previous:
            raise ValueError(
                f"threshold for {tier.value} ({table[tier]}) is below the tier beneath it"
            )
        previous = table[tier]
    return table


class StatusClassifier:
    """Maps a water level to a ``StatusTier`` using configurable thresholds."""

    def __init__(
        self,
        thresholds: Optional[Mapping] = None,
        device_overrides: Optional[Mapping[str, Mapping]] = None,
        path: Optional[str] = None,
    ) -> None:
        self._path = path
        self._mtime: Optional[float] = None
        self._last_check = 0.0
        self._lock = threading.Lock()
        self._default: Dict[StatusTier, float] = _parse_table(thresholds or {}, DEFAULT_THRESHOLDS)
        self._devices: Dict[str, Dict[StatusTier, float]] = {
            device_id: _parse_table(raw, {})
            for device_id, raw in (device_overrides or {}).items()
        }
        if path is not None:
            self._load(path)

    @classmethod
    def from_yaml(cls, path: str) -> "StatusClassifier":
        """Create a classifier that tracks the YAML file at *path*."""
        return cls(path=path)

    # ── hot reload ───────────────────────────────────────────

    def _load(self, path: str) -> None:
        with open(path) as f:
            config = yaml.safe_load(f) or {}
        default = _parse_table(config.get("default") or {}, DEFAULT_THRESHOLDS)
        devices = {
            str(device_id): _parse_table(raw, {})
            for device_id, raw in (config.get("devices") or {}).items()
        }
        self._default, self._devices = default, devices
        self._mtime = os.path.getmtime(path)
        logger.info(
            "thresholds_loaded",
            path=path,
            default={t.value: v for t, v in default.items()},
            device_overrides=len(devices),
        )

    def reload_if_changed(self, force: bool = False) -> bool:
        """Re-read the YAML table if its mtime moved. Returns True on reload.

        A broken edit keeps the previous table in place.
        """
        if self._path is None:
            return False
        now = time.monotonic()
        if not force and now - self._last_check < _RELOAD_CHECK_INTERVAL_S:
            return False
        with self._lock:
            self._last_check = now
            try:
                mtime = os.path.getmtime(self._path)
            except OSError as exc:
                logger.warning("thresholds_file_unreadable", path=self._path, error=str(exc))
                return False
            if not force and mtime == self._mtime:
                return False
            try:
                self._load(self._path)
            except (OSError, ValueError, yaml.YAMLError) as exc:
                logger.error("thresholds_reload_failed", path=self._path, error=str(exc))
                return False
        return True

    # ── public API ───────────────────────────────────────────

    def table_for(self, device_id: Optional[str] = None) -> Dict[StatusTier, float]:
        self.reload_if_changed()
        if device_id is not None and device_id in self._devices:
            return self._devices[device_id]
        return self._default

    def classify(self, water_level: float, device_id: Optional[str] = None) -> StatusTier:
        """Return the most severe tier whose threshold *water_level* meets.

        Total over all floats: negatives and NaN fall through to Normal.
        """
        table = self.table_for(device_id)
        for tier in reversed(TIER_ORDER[1:]):
            if water_level >= table[tier]:
                return tier
        return StatusTier.NORMAL

    def threshold_of(self, tier: StatusTier, device_id: Optional[str] = None) -> Optional[float]:
        """Lower bound of *tier*, or None for Normal."""
        if tier is StatusTier.NORMAL:
            return None
        return self.table_for(device_id)[tier]

    @staticmethod
    def next_tier(tier: StatusTier) -> Optional[StatusTier]:
        """The tier strictly above *tier*, or None at the top."""
        idx = TIER_ORDER.index(tier)
        if idx >= len(TIER_ORDER) - 1:
            return None
        return TIER_ORDER[idx + 1]

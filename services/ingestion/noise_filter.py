"""Per-device spike rejection for raw water-level readings.

Compares each raw reading with the last *accepted* raw reading of the
same device. Two policies, one chosen per deployment:

    absolute  — reject if |Δ| > max_jump_cm AND elapsed < min_interval_s
                (a single spurious spike; slow real rises pass)
    relative  — reject if |Δ| > noise_floor_cm AND |Δ| > factor × last
                (noise that scales with the signal; no time dimension)

Accepted readings become the new baseline, stored with a TTL so a long
silence does not leave a stale baseline that would suppress a genuine
jump later. Rejected readings change nothing.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

import structlog

from shared.config import Settings, get_settings
from services.ingestion.store import KeyValueStore, last_raw_key

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Accepted:
    baseline: Optional[float] = None


@dataclass(frozen=True)
class Rejected:
    reason: str
    jump_cm: float
    elapsed_s: float


NoiseOutcome = Union[Accepted, Rejected]


@dataclass(frozen=True)
class AbsoluteJumpPolicy:
    max_jump_cm: float = 100.0
    min_interval_s: float = 30.0

    def check(self, current: float, last: float, elapsed_s: float) -> Optional[str]:
        jump = abs(current - last)
        if jump > self.max_jump_cm and elapsed_s < self.min_interval_s:
            return (
                f"Possible sensor fault: jumped {jump:.1f}cm in {elapsed_s:.0f}s "
                f"(limit {self.max_jump_cm:.0f}cm per {self.min_interval_s:.0f}s)"
            )
        return None


@dataclass(frozen=True)
class RelativeJumpPolicy:
    noise_floor_cm: float = 10.0
    relative_factor: float = 0.5

    def check(self, current: float, last: float, elapsed_s: float) -> Optional[str]:
        jump = abs(current - last)
        if jump > self.noise_floor_cm and jump > self.relative_factor * abs(last):
            return (
                f"Possible sensor fault: jumped {jump:.1f}cm from {last:.1f}cm "
                f"(>{self.relative_factor:.0%} of last reading)"
            )
        return None


NoisePolicy = Union[AbsoluteJumpPolicy, RelativeJumpPolicy]


def policy_from_settings(settings: Settings) -> NoisePolicy:
    """Build the configured policy (``NOISE_POLICY``)."""
    if settings.NOISE_POLICY == "absolute":
        return AbsoluteJumpPolicy(
            max_jump_cm=settings.NOISE_MAX_JUMP_CM,
            min_interval_s=settings.NOISE_MIN_INTERVAL_S,
        )
    if settings.NOISE_POLICY == "relative":
        return RelativeJumpPolicy(
            noise_floor_cm=settings.NOISE_FLOOR_CM,
            relative_factor=settings.NOISE_RELATIVE_FACTOR,
        )
    raise ValueError(f"unknown NOISE_POLICY {settings.NOISE_POLICY!r}")


class NoiseFilter:
    """Accept/reject raw readings against the device's last accepted value.

    Not internally synchronised: callers hold the per-device lock so the
    check and the baseline update happen as one step.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        policy: Optional[NoisePolicy] = None,
        baseline_ttl_s: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self._kv = kv
        self._policy = policy or policy_from_settings(settings)
        self._ttl_s = baseline_ttl_s if baseline_ttl_s is not None else settings.NOISE_BASELINE_TTL_S

    @property
    def policy(self) -> NoisePolicy:
        return self._policy

    def _baseline(self, device_id: str, now: datetime) -> Optional[tuple]:
        raw = self._kv.get(last_raw_key(device_id))
        if raw is None:
            return None
        data = json.loads(raw)
        at = datetime.fromisoformat(data["at"])
        # The store's TTL runs on wall-clock time; readings carry their own
        # timestamps, so expiry is re-checked against the reading clock.
        if self._ttl_s and (now - at).total_seconds() > self._ttl_s:
            return None
        return float(data["waterLevel"]), at

    def check(self, device_id: str, water_level: float, now: datetime) -> NoiseOutcome:
        """Judge one reading against the baseline without storing anything."""
        baseline = self._baseline(device_id, now)

        if baseline is not None:
            last, at = baseline
            elapsed = max((now - at).total_seconds(), 0.0)
            reason = self._policy.check(water_level, last, elapsed)
            if reason is not None:
                logger.warning(
                    "noise_rejected",
                    device=device_id,
                    current=water_level,
                    last=last,
                    elapsed_s=round(elapsed, 1),
                )
                return Rejected(reason=reason, jump_cm=abs(water_level - last), elapsed_s=elapsed)
        return Accepted(baseline=baseline[0] if baseline else None)

    def commit(self, device_id: str, water_level: float, now: datetime) -> None:
        """Make an accepted reading the device's new baseline."""
        self._kv.set(
            last_raw_key(device_id),
            json.dumps({"waterLevel": water_level, "at": now.isoformat()}),
            ttl_s=self._ttl_s or None,
        )

    def accept(self, device_id: str, water_level: float, now: datetime) -> NoiseOutcome:
        """``check`` then, on acceptance, ``commit``."""
        outcome = self.check(device_id, water_level, now)
        if isinstance(outcome, Accepted):
            self.commit(device_id, water_level, now)
        return outcome

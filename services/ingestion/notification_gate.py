"""Alert deduplication for aggregated, non-normal readings.

A new notification is emitted when ANY of these hold, judged against
the device's most recent persisted notification:

    1. there is none;
    2. its severity differs from the current status;
    3. it is older than the cooldown (default 30 min);
    4. the water level has risen at least ``significant_rise_cm`` above
       the level it recorded — a fast rise is never silenced by a
       recent alert of the same tier.

Otherwise the reading is suppressed with no side effect apart from a
debug log line and an in-process counter.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional, Union

import structlog

from shared.config import get_settings
from shared.models.alerts import Notification
from shared.models.telemetry import StatusTier
from services.ingestion.store import RecordStore

logger = structlog.get_logger(__name__)

# Per-tier alert text (Bahasa Indonesia, as delivered to residents)
_TITLES: Dict[StatusTier, str] = {
    StatusTier.WASPADA: "Waspada: Potensi Banjir Terdeteksi",
    StatusTier.SIAGA_2: "Siaga 2: Ketinggian Air Mencapai Tingkat Siaga",
    StatusTier.SIAGA_1: "Siaga 1: Ketinggian Air Terus Meningkat",
    StatusTier.BAHAYA: "BAHAYA: BANJIR TERDETEKSI!",
}

_MESSAGES: Dict[StatusTier, str] = {
    StatusTier.WASPADA: "Ketinggian air {level}cm. Persiapkan barang berharga untuk evakuasi.",
    StatusTier.SIAGA_2: (
        "Ketinggian air di device dengan ID: {device_id} mencapai {level}cm. "
        "Mohon pantau area sekitar."
    ),
    StatusTier.SIAGA_1: (
        "Ketinggian air di device dengan ID: {device_id} mencapai {level}cm. "
        "Bersiap untuk evakuasi."
    ),
    StatusTier.BAHAYA: (
        "DARURAT! Ketinggian air {level}cm. Segera evakuasi ke tempat yang lebih tinggi!"
    ),
}


@dataclass(frozen=True)
class Emit:
    notification: Notification
    reason: str


@dataclass(frozen=True)
class Suppress:
    reason: str


GateDecision = Union[Emit, Suppress]


def build_notification(
    device_id: str, status: StatusTier, water_level: float, now: datetime
) -> Notification:
    level = f"{water_level:.1f}".rstrip("0").rstrip(".")
    title = _TITLES.get(status, "Peringatan Sensor")
    message = _MESSAGES.get(status, "Status sensor: {status} ({level}cm)").format(
        device_id=device_id, level=level, status=status.value
    )
    return Notification(
        device_id=device_id,
        severity=status,
        water_level=water_level,
        title=title,
        message=message,
        created_at=now,
    )


def format_notifier_message(notification: Notification) -> str:
    """Plain-text body for the outbound notifier (Telegram)."""
    level = f"{notification.water_level:.1f}".rstrip("0").rstrip(".")
    return (
        "[PEMBERITAHUAN]\n"
        f"Device ID: {notification.device_id}\n"
        f"Status: {notification.severity.value}\n"
        "\n"
        f"{notification.title}\n"
        "\n"
        f"{notification.message}\n"
        "\n"
        f"Ketinggian Air: {level}cm\n"
        f"Waktu: {notification.created_at.strftime('%d/%m/%Y %H:%M:%S %Z').strip()}"
    )


class NotificationGate:
    """Decides whether an aggregated reading warrants a new alert."""

    def __init__(
        self,
        records: RecordStore,
        cooldown_s: Optional[int] = None,
        significant_rise_cm: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self._records = records
        self._cooldown = timedelta(
            seconds=cooldown_s if cooldown_s is not None else settings.ALERT_COOLDOWN_S
        )
        self._significant_rise = (
            significant_rise_cm if significant_rise_cm is not None else settings.SIGNIFICANT_RISE_CM
        )
        self._counter_lock = threading.Lock()
        self.suppressed_count = 0

    def _emit_reason(
        self, prior: Optional[Notification], status: StatusTier, water_level: float, now: datetime
    ) -> Optional[str]:
        if prior is None:
            return "first_alert"
        if prior.severity != status:
            return "severity_changed"
        if now - prior.created_at >= self._cooldown:
            return "cooldown_elapsed"
        if water_level - prior.water_level >= self._significant_rise:
            return "significant_rise"
        return None

    def evaluate(
        self, device_id: str, status: StatusTier, water_level: float, now: datetime
    ) -> GateDecision:
        """Decide; builds but does not persist the notification."""
        if status is StatusTier.NORMAL:
            return Suppress(reason="normal")

        prior = self._records.latest_notification(device_id)
        reason = self._emit_reason(prior, status, water_level, now)
        if reason is None:
            with self._counter_lock:
                self.suppressed_count += 1
            logger.debug(
                "notification_suppressed",
                device=device_id,
                status=status.value,
                water_level=round(water_level, 2),
                prior_level=round(prior.water_level, 2),
            )
            return Suppress(reason="cooldown")

        return Emit(
            notification=build_notification(device_id, status, water_level, now),
            reason=reason,
        )

"""Centralised configuration for the HydroAlert services.

Loads values from environment variables (via ``python-dotenv``)
so that the ingestion service, its adapters and the tests share
the same config surface area.

Flood-status thresholds are NOT environment variables: they live in
a YAML table (``THRESHOLDS_PATH``) that can be edited per deployment
without a restart. See ``services.ingestion.classifier``.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)

_DEFAULT_THRESHOLDS = Path(__file__).resolve().parent.parent / "config" / "thresholds.yaml"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class Settings:
    """Simple settings object — reads from env vars with sensible defaults."""

    # ── Backends ─────────────────────────────────────────────
    STORE_BACKEND: str = os.getenv("STORE_BACKEND", "memory")          # memory | redis
    BROADCAST_BACKEND: str = os.getenv("BROADCAST_BACKEND", "memory")  # memory | redis | kafka
    NOTIFIER_BACKEND: str = os.getenv("NOTIFIER_BACKEND", "log")       # log | telegram

    # ── Redis / SQLite ───────────────────────────────────────
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    REDIS_SOCKET_TIMEOUT_S: float = float(os.getenv("REDIS_SOCKET_TIMEOUT_S", "2.0"))
    SQLITE_PATH: str = os.getenv("SQLITE_PATH", "./data/hydroalert.sqlite")

    # ── Kafka ────────────────────────────────────────────────
    KAFKA_BOOTSTRAP_SERVERS: str = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
    KAFKA_TOPIC_PREFIX: str = os.getenv("KAFKA_TOPIC_PREFIX", "hydroalert")

    # ── Telegram ─────────────────────────────────────────────
    TELEGRAM_BOT_TOKEN: str = os.getenv("TELEGRAM_BOT_TOKEN", "")
    TELEGRAM_CHAT_ID: str = os.getenv("TELEGRAM_CHAT_ID", "")
    TELEGRAM_TIMEOUT_S: float = float(os.getenv("TELEGRAM_TIMEOUT_S", "10.0"))

    # ── Classification ───────────────────────────────────────
    THRESHOLDS_PATH: str = os.getenv("THRESHOLDS_PATH", str(_DEFAULT_THRESHOLDS))
    # Ultrasonic sensors report distance to the water surface; when set,
    # water level = mount height - distance. 0 disables the conversion.
    SENSOR_MOUNT_HEIGHT_CM: float = float(os.getenv("SENSOR_MOUNT_HEIGHT_CM", "0"))

    # ── Noise filter ─────────────────────────────────────────
    NOISE_POLICY: str = os.getenv("NOISE_POLICY", "absolute")  # absolute | relative
    NOISE_MAX_JUMP_CM: float = float(os.getenv("NOISE_MAX_JUMP_CM", "100"))
    NOISE_MIN_INTERVAL_S: float = float(os.getenv("NOISE_MIN_INTERVAL_S", "30"))
    NOISE_FLOOR_CM: float = float(os.getenv("NOISE_FLOOR_CM", "10"))
    NOISE_RELATIVE_FACTOR: float = float(os.getenv("NOISE_RELATIVE_FACTOR", "0.5"))
    NOISE_BASELINE_TTL_S: int = int(os.getenv("NOISE_BASELINE_TTL_S", "60"))

    # ── Windowing / aggregation ──────────────────────────────
    WINDOW_SIZE: int = int(os.getenv("WINDOW_SIZE", "12"))        # 12 × ~5 s ≈ 1 min
    WINDOW_MINUTES: float = float(os.getenv("WINDOW_MINUTES", "1.0"))
    RAIN_UNIT_FACTOR: float = float(os.getenv("RAIN_UNIT_FACTOR", "3600"))  # mm/s → mm/h

    # ── Trend prediction ─────────────────────────────────────
    TREND_AXIS: str = os.getenv("TREND_AXIS", "elapsed")  # elapsed | index
    TREND_LOOKBACK_MIN: int = int(os.getenv("TREND_LOOKBACK_MIN", "10"))
    TREND_MIN_POINTS: int = int(os.getenv("TREND_MIN_POINTS", "4"))
    TREND_MIN_RISE: float = float(os.getenv("TREND_MIN_RISE", "0.01"))

    # ── Alerting ─────────────────────────────────────────────
    ALERT_COOLDOWN_S: int = int(os.getenv("ALERT_COOLDOWN_S", "1800"))  # 30 min
    SIGNIFICANT_RISE_CM: float = float(os.getenv("SIGNIFICANT_RISE_CM", "20"))

    # ── Staleness ────────────────────────────────────────────
    STATUS_STALE_S: int = int(os.getenv("STATUS_STALE_S", "300"))       # dashboard worst-case
    DEVICE_ACTIVE_S: int = int(os.getenv("DEVICE_ACTIVE_S", "300"))
    SWEEP_STALE_S: int = int(os.getenv("SWEEP_STALE_S", "900"))         # 15 min
    SWEEP_INTERVAL_S: int = int(os.getenv("SWEEP_INTERVAL_S", "600"))   # 10 min

    # ── Presentation ─────────────────────────────────────────
    DISPLAY_UTC_OFFSET_H: float = float(os.getenv("DISPLAY_UTC_OFFSET_H", "7"))  # WIB

    # ── General ──────────────────────────────────────────────
    INGEST_WORKERS: int = int(os.getenv("INGEST_WORKERS", "8"))
    RETRY_QUEUE_MAX: int = int(os.getenv("RETRY_QUEUE_MAX", "60"))
    SERVICE_HOST: str = os.getenv("SERVICE_HOST", "0.0.0.0")
    SERVICE_PORT: int = int(os.getenv("SERVICE_PORT", "5000"))
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT: str = os.getenv("LOG_FORMAT", "console")  # console | json
    DEMO_MODE: bool = _env_bool("DEMO_MODE", "false")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a singleton Settings instance."""
    return Settings()

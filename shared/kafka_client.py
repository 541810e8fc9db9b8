"""Kafka producer helper used by the Kafka broadcaster backend.

Wraps ``confluent-kafka`` so the broadcaster does not have to deal
with connection config, JSON serialisation or delivery callbacks.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

import structlog

from shared.config import get_settings

logger = structlog.get_logger(__name__)


class KafkaProducerClient:
    """Thin wrapper around confluent_kafka.Producer with JSON serialisation."""

    def __init__(self, client_id: str = "hydroalert-producer") -> None:
        from confluent_kafka import Producer  # lazy import

        settings = get_settings()
        self._producer = Producer(
            {
                "bootstrap.servers": settings.KAFKA_BOOTSTRAP_SERVERS,
                "client.id": client_id,
                "acks": "1",
                "linger.ms": 5,
                "message.timeout.ms": 10000,
            }
        )
        logger.info("kafka_producer_init", bootstrap=settings.KAFKA_BOOTSTRAP_SERVERS)

    # ── delivery callback ────────────────────────────────────
    @staticmethod
    def _delivery_report(err: Any, msg: Any) -> None:
        """Called once per produced message to indicate delivery result."""
        if err is not None:
            logger.error("kafka_delivery_failed", error=str(err))
        else:
            logger.debug(
                "kafka_delivered",
                topic=msg.topic(),
                partition=msg.partition(),
                offset=msg.offset(),
            )

    # ── public API ───────────────────────────────────────────
    def produce(self, topic: str, value: Dict[str, Any], key: Optional[str] = None) -> None:
        """Serialise *value* as JSON and produce to *topic* without blocking."""
        self._producer.produce(
            topic=topic,
            key=key.encode("utf-8") if key else None,
            value=json.dumps(value, default=str).encode("utf-8"),
            callback=self._delivery_report,
        )
        self._producer.poll(0)

    def flush(self, timeout: float = 5.0) -> None:
        """Block until all buffered messages are delivered."""
        self._producer.flush(timeout)

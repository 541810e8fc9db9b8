"""Publish/subscribe fan-out for live dashboard updates.

Channels:
    ``device.{deviceID}`` — raw-reading live updates, predictions
    ``dashboard``         — one update per accepted reading, all devices
    ``notifications``     — the alert feed

Payloads are ``{"event": <name>, "data": {...}}``. Every backend's
``publish`` is fire-and-forget: failures are logged, never raised, so
a slow or broken transport cannot fail an ingestion write.

Backends:
    InMemoryBroadcaster — asyncio-queue subscribers (feeds the SSE stream)
    RedisBroadcaster    — Redis PUBLISH, one channel per topic
    KafkaBroadcaster    — one Kafka topic per channel, keyed by device
"""

from __future__ import annotations

import asyncio
import json
import threading
from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Optional, Protocol, Tuple

import structlog

from shared.config import Settings, get_settings

logger = structlog.get_logger(__name__)

DASHBOARD_TOPIC = "dashboard"
NOTIFICATIONS_TOPIC = "notifications"


def device_topic(device_id: str) -> str:
    return f"device.{device_id}"


class Broadcaster(Protocol):
    def publish(self, topic: str, payload: Dict[str, Any]) -> None: ...


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class Subscription:
    """One SSE client: an asyncio queue bound to the loop it was created on."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        topics: Optional[Iterable[str]] = None,
        maxsize: int = 100,
    ) -> None:
        self.loop = loop
        self.topics = set(topics) if topics else None
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def wants(self, topic: str) -> bool:
        return not self.closed and (self.topics is None or topic in self.topics)

    def _offer(self, message: Tuple[str, Dict[str, Any]]) -> None:
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            # Slow consumer: cut it loose rather than buffer without bound
            self.closed = True
            logger.warning("subscriber_dropped_queue_full", topics=sorted(self.topics or []))


class InMemoryBroadcaster:
    """Process-local fan-out. Thread-safe; never blocks the publisher."""

    def __init__(self, history: int = 500) -> None:
        self._lock = threading.Lock()
        self._subs: List[Subscription] = []
        self.recent: Deque[Tuple[str, Dict[str, Any]]] = deque(maxlen=history)

    def subscribe(
        self, topics: Optional[Iterable[str]] = None, maxsize: int = 100
    ) -> Subscription:
        """Register a subscriber on the running event loop."""
        sub = Subscription(asyncio.get_running_loop(), topics, maxsize)
        with self._lock:
            self._subs.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        sub.closed = True
        with self._lock:
            if sub in self._subs:
                self._subs.remove(sub)

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        message = (topic, payload)
        with self._lock:
            self.recent.append(message)
            self._subs = [s for s in self._subs if not s.closed]
            targets = [s for s in self._subs if s.wants(topic)]
        for sub in targets:
            try:
                sub.loop.call_soon_threadsafe(sub._offer, message)
            except RuntimeError:
                # Loop already closed: the client went away
                sub.closed = True

    def messages(self, topic: Optional[str] = None) -> List[Tuple[str, Dict[str, Any]]]:
        """Recently published messages, optionally for a single topic."""
        with self._lock:
            return [m for m in self.recent if topic is None or m[0] == topic]

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subs)


# ---------------------------------------------------------------------------
# Redis pub/sub
# ---------------------------------------------------------------------------


class RedisBroadcaster:
    """Publishes JSON payloads with Redis ``PUBLISH``."""

    def __init__(self, url: str, channel_prefix: str = "hydroalert", client: Any = None) -> None:
        import redis

        self._redis_error = redis.RedisError
        self._client = client or redis.Redis.from_url(url, decode_responses=True)
        self._prefix = channel_prefix
        logger.info("redis_broadcaster_init", url=url.split("@")[-1])

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        channel = f"{self._prefix}:{topic}"
        try:
            self._client.publish(channel, json.dumps(payload, default=str))
        except self._redis_error as exc:
            logger.warning("broadcast_failed", backend="redis", topic=topic, error=str(exc))

    def close(self) -> None:
        self._client.close()


# ---------------------------------------------------------------------------
# Kafka
# ---------------------------------------------------------------------------


class KafkaBroadcaster:
    """Produces each channel to its own Kafka topic ``{prefix}.{topic}``."""

    def __init__(self, topic_prefix: str = "hydroalert") -> None:
        from shared.kafka_client import KafkaProducerClient

        self._producer = KafkaProducerClient(client_id="hydroalert-broadcaster")
        self._prefix = topic_prefix

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        data = payload.get("data") or {}
        try:
            self._producer.produce(
                topic=f"{self._prefix}.{topic}",
                key=data.get("deviceID"),
                value=payload,
            )
        except Exception as exc:
            logger.warning("broadcast_failed", backend="kafka", topic=topic, error=str(exc))

    def close(self) -> None:
        """Deliver whatever the producer still has buffered."""
        self._producer.flush()


def build_broadcaster(settings: Optional[Settings] = None) -> Broadcaster:
    """Instantiate the backend named by ``BROADCAST_BACKEND``."""
    settings = settings or get_settings()
    backend = settings.BROADCAST_BACKEND
    if backend == "memory":
        return InMemoryBroadcaster()
    if backend == "redis":
        return RedisBroadcaster(settings.REDIS_URL)
    if backend == "kafka":
        return KafkaBroadcaster(settings.KAFKA_TOPIC_PREFIX)
    raise ValueError(f"unknown BROADCAST_BACKEND {backend!r}")

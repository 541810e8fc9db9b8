"""Tests for the broadcaster, notifier and Redis adapters (no servers)."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest
import redis

from shared.broadcaster import (
    DASHBOARD_TOPIC,
    InMemoryBroadcaster,
    KafkaBroadcaster,
    RedisBroadcaster,
    device_topic,
)
from shared.exceptions import StoreUnavailable
from shared.notifier import LogNotifier, TelegramNotifier
from services.ingestion.redis_cache import RedisKeyValueStore


# ── Broadcaster ──────────────────────────────────────────────────────────

class TestInMemoryBroadcaster:
    def test_subscriber_receives_only_its_topics(self):
        bus = InMemoryBroadcaster()

        async def scenario():
            sub = bus.subscribe([DASHBOARD_TOPIC])
            bus.publish(device_topic("DEV-1"), {"event": "sensor_update", "data": {}})
            bus.publish(DASHBOARD_TOPIC, {"event": "dashboard_update", "data": {"deviceID": "DEV-1"}})
            topic, payload = await asyncio.wait_for(sub.queue.get(), timeout=1)
            await asyncio.sleep(0)
            return topic, payload, sub.queue.empty()

        topic, payload, drained = asyncio.run(scenario())
        assert topic == DASHBOARD_TOPIC
        assert payload["data"]["deviceID"] == "DEV-1"
        assert drained

    def test_slow_subscriber_is_dropped(self):
        bus = InMemoryBroadcaster()

        async def scenario():
            sub = bus.subscribe(maxsize=1)
            bus.publish("dashboard", {"event": "a", "data": {}})
            bus.publish("dashboard", {"event": "b", "data": {}})
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            return sub

        sub = asyncio.run(scenario())
        assert sub.closed
        bus.publish("dashboard", {"event": "c", "data": {}})
        assert bus.subscriber_count == 0

    def test_publish_without_subscribers_is_recorded(self):
        bus = InMemoryBroadcaster(history=2)
        for i in range(3):
            bus.publish("notifications", {"event": "new_notification", "data": {"i": i}})
        assert [p["data"]["i"] for _, p in bus.messages("notifications")] == [1, 2]


class _BrokenRedis:
    def __getattr__(self, name):
        def _fail(*args, **kwargs):
            raise redis.ConnectionError("connection refused")
        return _fail


class _RecordingRedis:
    def __init__(self):
        self.published = []

    def publish(self, channel, message):
        self.published.append((channel, message))


class TestRedisBroadcaster:
    def test_publishes_json_on_prefixed_channel(self):
        client = _RecordingRedis()
        RedisBroadcaster("redis://x", client=client).publish("dashboard", {"event": "e", "data": {"a": 1}})
        channel, message = client.published[0]
        assert channel == "hydroalert:dashboard"
        assert json.loads(message) == {"event": "e", "data": {"a": 1}}

    def test_failure_is_swallowed(self):
        RedisBroadcaster("redis://x", client=_BrokenRedis()).publish("dashboard", {"event": "e"})


# ── Redis key-value store ────────────────────────────────────────────────

class TestRedisKeyValueStore:
    @pytest.mark.parametrize(
        "call",
        [
            lambda s: s.get("k"),
            lambda s: s.set("k", "v", ttl_s=60),
            lambda s: s.hset("h", "f", "v"),
            lambda s: s.hgetall("h"),
            lambda s: s.hdel("h", "f"),
        ],
    )
    def test_errors_become_store_unavailable(self, call):
        store = RedisKeyValueStore(client=_BrokenRedis())
        with pytest.raises(StoreUnavailable):
            call(store)

    def test_ping_reports_false_when_down(self):
        assert RedisKeyValueStore(client=_BrokenRedis()).ping() is False


# ── Notifier ─────────────────────────────────────────────────────────────

class TestTelegramNotifier:
    def _notifier(self, handler):
        client = httpx.Client(transport=httpx.MockTransport(handler))
        return TelegramNotifier("TOKEN", "-100123", client=client)

    def test_sends_message(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        notifier = self._notifier(handler)
        assert notifier.notify_sync("[PEMBERITAHUAN] test") is True
        notifier.close()

        assert seen[0].url.path == "/botTOKEN/sendMessage"
        body = json.loads(seen[0].content)
        assert body["chat_id"] == "-100123"
        assert body["text"] == "[PEMBERITAHUAN] test"

    def test_http_error_is_logged_not_raised(self):
        notifier = self._notifier(lambda request: httpx.Response(502, text="bad gateway"))
        assert notifier.notify_sync("x") is False
        notifier.close()

    def test_transport_error_is_logged_not_raised(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        notifier = self._notifier(handler)
        notifier.notify("x")
        notifier.close()

    def test_requires_credentials(self):
        with pytest.raises(ValueError):
            TelegramNotifier("", "")

    def test_log_notifier(self):
        LogNotifier().notify("hello")


class _FakeProducer:
    def __init__(self, client_id="x"):
        self.produced = []
        self.fail = False
        self.flushed = 0

    def produce(self, topic, value, key=None):
        if self.fail:
            raise BufferError("queue full")
        self.produced.append((topic, key, value))

    def flush(self, timeout=5.0):
        self.flushed += 1


class TestKafkaBroadcaster:
    def test_topic_and_key(self, monkeypatch):
        import shared.kafka_client

        monkeypatch.setattr(shared.kafka_client, "KafkaProducerClient", _FakeProducer)
        bus = KafkaBroadcaster(topic_prefix="hydroalert")
        bus.publish("device.DEV-1", {"event": "prediction", "data": {"deviceID": "DEV-1"}})
        topic, key, value = bus._producer.produced[0]
        assert topic == "hydroalert.device.DEV-1"
        assert key == "DEV-1"
        assert value["event"] == "prediction"

    def test_producer_error_is_swallowed(self, monkeypatch):
        import shared.kafka_client

        monkeypatch.setattr(shared.kafka_client, "KafkaProducerClient", _FakeProducer)
        bus = KafkaBroadcaster()
        bus._producer.fail = True
        bus.publish("dashboard", {"event": "dashboard_update", "data": {}})

    def test_close_flushes_producer(self, monkeypatch):
        import shared.kafka_client

        monkeypatch.setattr(shared.kafka_client, "KafkaProducerClient", _FakeProducer)
        bus = KafkaBroadcaster()
        bus.publish("dashboard", {"event": "dashboard_update", "data": {"deviceID": "DEV-1"}})
        bus.close()
        assert bus._producer.flushed == 1

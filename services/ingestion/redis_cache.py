"""Redis-backed ``KeyValueStore``.

Key layout::

    last_raw:{deviceID}              → JSON baseline, EX = baseline TTL
    latest_device_status (hash)      → field deviceID → JSON LatestStatus

Every ``redis.RedisError`` is surfaced as ``StoreUnavailable`` so the
coordinator can map it to a "temporarily unavailable" answer.
"""

from __future__ import annotations

from typing import Dict, Optional

import redis
import structlog

from shared.exceptions import StoreUnavailable

logger = structlog.get_logger(__name__)


class RedisKeyValueStore:
    """Thin wrapper around ``redis.Redis`` with error translation."""

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        socket_timeout_s: float = 2.0,
        client: Optional[redis.Redis] = None,
    ) -> None:
        self._client = client or redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout_s,
            socket_connect_timeout=socket_timeout_s,
        )
        logger.info("redis_store_init", url=url.split("@")[-1])

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError as exc:
            logger.warning("redis_ping_failed", error=str(exc))
            return False

    def get(self, key: str) -> Optional[str]:
        try:
            return self._client.get(key)
        except redis.RedisError as exc:
            raise StoreUnavailable(f"redis GET {key}", exc) from exc

    def set(self, key: str, value: str, ttl_s: Optional[int] = None) -> None:
        try:
            if ttl_s:
                self._client.setex(key, ttl_s, value)
            else:
                self._client.set(key, value)
        except redis.RedisError as exc:
            raise StoreUnavailable(f"redis SET {key}", exc) from exc

    def delete(self, key: str) -> None:
        try:
            self._client.delete(key)
        except redis.RedisError as exc:
            raise StoreUnavailable(f"redis DEL {key}", exc) from exc

    def hset(self, name: str, field: str, value: str) -> None:
        try:
            self._client.hset(name, field, value)
        except redis.RedisError as exc:
            raise StoreUnavailable(f"redis HSET {name}", exc) from exc

    def hget(self, name: str, field: str) -> Optional[str]:
        try:
            return self._client.hget(name, field)
        except redis.RedisError as exc:
            raise StoreUnavailable(f"redis HGET {name}", exc) from exc

    def hgetall(self, name: str) -> Dict[str, str]:
        try:
            return self._client.hgetall(name)
        except redis.RedisError as exc:
            raise StoreUnavailable(f"redis HGETALL {name}", exc) from exc

    def hdel(self, name: str, field: str) -> None:
        try:
            self._client.hdel(name, field)
        except redis.RedisError as exc:
            raise StoreUnavailable(f"redis HDEL {name}", exc) from exc

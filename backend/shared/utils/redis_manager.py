"""
Redis connection manager for the match logger.
Provides the async connection pool, the durable offline queue, and the
server-push channel helpers.
"""
from __future__ import annotations

import json
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.asyncio import Redis
from redis.asyncio.client import PubSub

from shared.config import Settings, get_settings
from shared.models.domain import MatchEvent
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Key namespaces ──────────────────────────────────────────────────────
OFFLINE_QUEUE_KEY = "queue:match:{match_id}:events"
PUSH_CHANNEL = "fanout:match:{match_id}:logger"


def _fmt(template: str, **kwargs: Any) -> str:
    return template.format(**kwargs)


class RedisManager:
    """Manages the async Redis connection pool and pub/sub helpers."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._pool: Optional[Redis] = None

    async def connect(self) -> None:
        """Initialize the connection pool."""
        self._pool = aioredis.from_url(
            self._settings.redis_url_str,
            max_connections=self._settings.redis_max_connections,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_keepalive=True,
            retry_on_timeout=True,
        )
        await self._pool.ping()
        logger.info("redis_connected", url=self._settings.redis_url_safe_log)

    async def disconnect(self) -> None:
        """Graceful shutdown."""
        if self._pool:
            await self._pool.aclose()
            self._pool = None
            logger.info("redis_disconnected")

    @property
    def client(self) -> Redis:
        if self._pool is None:
            raise RuntimeError("RedisManager not connected. Call connect() first.")
        return self._pool

    # ── Server push ─────────────────────────────────────────────────────
    async def publish_push(self, match_id: str, payload: str) -> int:
        """Publish a server-push message for one match."""
        channel = _fmt(PUSH_CHANNEL, match_id=match_id)
        return await self.client.publish(channel, payload)

    async def subscribe_push(self, match_id: str) -> PubSub:
        """Subscribe to the server-push channel of one match."""
        pubsub = self.client.pubsub()
        await pubsub.subscribe(_fmt(PUSH_CHANNEL, match_id=match_id))
        return pubsub


class OfflineQueue:
    """
    Durable queue of unconfirmed events, one hash per match keyed by client_id.
    Events written offline survive a restart and are resent with the same identity.
    """

    def __init__(self, redis: RedisManager, ttl_s: int | None = None) -> None:
        self._redis = redis
        self._ttl_s = ttl_s or get_settings().offline_queue_ttl_s

    async def put(self, event: MatchEvent) -> None:
        key = _fmt(OFFLINE_QUEUE_KEY, match_id=event.match_id)
        pipe = self._redis.client.pipeline(transaction=True)
        pipe.hset(key, event.client_id, event.model_dump_json())
        pipe.expire(key, self._ttl_s)
        await pipe.execute()

    async def remove(self, match_id: str, client_id: str) -> None:
        key = _fmt(OFFLINE_QUEUE_KEY, match_id=match_id)
        await self._redis.client.hdel(key, client_id)

    async def load(self, match_id: str) -> list[MatchEvent]:
        """Restore queued events. Corrupt entries are dropped from the queue."""
        key = _fmt(OFFLINE_QUEUE_KEY, match_id=match_id)
        raw: dict[str, str] = await self._redis.client.hgetall(key)
        events: list[MatchEvent] = []
        corrupt: list[str] = []
        for client_id, payload in raw.items():
            try:
                events.append(MatchEvent.model_validate(json.loads(payload)))
            except ValueError:
                corrupt.append(client_id)
        if corrupt:
            logger.warning("offline_queue_corrupt_entries", match_id=match_id, count=len(corrupt))
            await self._redis.client.hdel(key, *corrupt)
        return events

    async def clear(self, match_id: str) -> None:
        await self._redis.client.delete(_fmt(OFFLINE_QUEUE_KEY, match_id=match_id))

    async def size(self, match_id: str) -> int:
        return int(await self._redis.client.hlen(_fmt(OFFLINE_QUEUE_KEY, match_id=match_id)))

"""
Server-push bridge: Redis pub/sub channel of one match -> session handler.

Messages on `fanout:match:{match_id}:logger` are JSON PushMessage envelopes
(ack, undo_ack, event_created, event_deleted, timeline_refresh_requested).
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from shared.models.domain import PushMessage
from shared.utils.logging import get_logger
from shared.utils.redis_manager import RedisManager

logger = get_logger(__name__)

PushHandler = Callable[[PushMessage], Awaitable[None]]


def decode_push(data: object) -> Optional[PushMessage]:
    raw = data.decode() if isinstance(data, bytes) else data
    if not isinstance(raw, str):
        return None
    try:
        return PushMessage.model_validate_json(raw)
    except PydanticValidationError:
        logger.warning("push_message_invalid", size=len(raw))
        return None


class PushBridge:
    def __init__(self, redis: RedisManager, match_id: str, handler: PushHandler) -> None:
        self._redis = redis
        self._match_id = match_id
        self._handler = handler
        self._shutdown = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        self._shutdown.clear()
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        self._shutdown.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def run(self) -> None:
        pubsub = await self._redis.subscribe_push(self._match_id)
        logger.info("push_bridge_started", match_id=self._match_id)
        try:
            while not self._shutdown.is_set():
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=0.5)
                if not message or message.get("type") != "message":
                    continue
                push = decode_push(message.get("data"))
                if push is None:
                    continue
                try:
                    await self._handler(push)
                except Exception:
                    logger.exception("push_handler_failed", push_type=push.type.value)
        finally:
            await pubsub.unsubscribe()
            await pubsub.aclose()
            logger.info("push_bridge_stopped", match_id=self._match_id)

"""
Wires one LoggerSession to its HTTP backend, Redis offline queue, push
bridge and tick loop. Shared by the headless service and the operator API.
"""
from __future__ import annotations

import asyncio
from typing import Optional

from shared.config import Settings, get_settings
from shared.errors import TransportError
from shared.utils.http_client import LoggerHTTPClient
from shared.utils.logging import bind_match_context, get_logger
from shared.utils.redis_manager import OfflineQueue, RedisManager

from session.context import LoggerSession
from session.ticker import StatusListener, run_tick_loop
from transport.http import HTTPEventChannel, HTTPMatchService, HTTPSubstitutionValidator
from transport.push import PushBridge

logger = get_logger(__name__)


class SessionRuntime:
    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.http = LoggerHTTPClient(
            self.settings.api_base_url,
            self.settings.api_token,
            self.settings.request_timeout_s,
            self.settings.max_retries,
        )
        needs_redis = self.settings.offline_queue_enabled or self.settings.push_bridge_enabled
        self.redis: Optional[RedisManager] = RedisManager(self.settings) if needs_redis else None
        self.session: Optional[LoggerSession] = None
        self.bridge: Optional[PushBridge] = None
        self._tick_task: Optional[asyncio.Task[None]] = None

    def build_session(self) -> LoggerSession:
        queue = None
        if self.redis is not None and self.settings.offline_queue_enabled:
            queue = OfflineQueue(self.redis, self.settings.offline_queue_ttl_s)
        return LoggerSession(
            self.settings.match_id,
            HTTPEventChannel(self.http),
            HTTPMatchService(self.http, self.settings.events_page_size),
            HTTPSubstitutionValidator(self.http),
            offline_queue=queue,
            settings=self.settings,
        )

    async def start(self, on_status: Optional[StatusListener] = None) -> LoggerSession:
        if not self.settings.match_id:
            raise ValueError("ML_MATCH_ID is required")
        bind_match_context(self.settings.match_id)
        await self.http.start()
        if self.redis is not None:
            await self.redis.connect()

        session = self.build_session()
        self.session = session
        try:
            await session.hydrate()
        except TransportError as e:
            # The tick loop keeps retrying; events recorded meanwhile are queued
            logger.warning("initial_hydrate_failed", error=e.message)

        if self.redis is not None and self.settings.push_bridge_enabled:
            self.bridge = PushBridge(self.redis, self.settings.match_id, session.handle_message)
            await self.bridge.start()

        self._tick_task = asyncio.create_task(run_tick_loop(session, on_status=on_status))
        logger.info("session_runtime_started", match_id=self.settings.match_id)
        return session

    async def stop(self) -> None:
        if self._tick_task:
            self._tick_task.cancel()
            try:
                await self._tick_task
            except asyncio.CancelledError:
                pass
            self._tick_task = None
        if self.bridge:
            await self.bridge.stop()
            self.bridge = None
        if self.redis is not None:
            await self.redis.disconnect()
        await self.http.close()
        logger.info("session_runtime_stopped")

"""
Session heartbeat. One tick per interval drives ack expiry, drift checks and
the coalesced status recompute. While disconnected it also attempts to
reconnect, at most once per resync cooldown. Errors are logged and the loop
keeps going.
"""
from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional

from shared.errors import TransportError
from shared.models.domain import SessionStatus
from shared.utils.logging import get_logger

from session.context import LoggerSession

logger = get_logger(__name__)

StatusListener = Callable[[SessionStatus], Awaitable[None]]


async def try_reconnect(session: LoggerSession) -> bool:
    try:
        await session.on_reconnected()
    except TransportError as e:
        logger.info("reconnect_failed", error=e.message)
        return False
    logger.info("reconnected", queued=session.engine.queued_count)
    return True


async def run_tick_loop(
    session: LoggerSession,
    interval_s: float | None = None,
    on_status: Optional[StatusListener] = None,
) -> None:
    interval = interval_s if interval_s is not None else session.settings.tick_interval_s
    reconnect_every = session.settings.resync_cooldown_s
    last_reconnect: Optional[float] = None
    logger.info("tick_loop_started", match_id=session.match_id, interval_s=interval)
    while True:
        try:
            if not session.connection.is_connected:
                now = time.monotonic()
                if last_reconnect is None or now - last_reconnect >= reconnect_every:
                    last_reconnect = now
                    await try_reconnect(session)
            result = await session.tick()
            if result["expired"]:
                logger.info("acks_expired", count=len(result["expired"]))
            status = result["status"]
            if status is not None and on_status is not None:
                await on_status(status)
        except Exception as e:
            logger.exception("tick_failed", error=str(e))
        await asyncio.sleep(interval)

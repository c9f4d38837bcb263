"""
WebSocket status fan-out for operator consoles.

Each connected console receives the current SessionStatus on connect and a
fresh one whenever the tick loop recomputes. Clients only need to send
{"op": "ping"} to keep the connection alive.
"""
from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from shared.models.domain import SessionStatus
from shared.utils.logging import get_logger
from shared.utils.metrics import STATUS_SUBSCRIBERS

logger = get_logger(__name__)

RECEIVE_TIMEOUT_S = 60.0


@dataclass
class StatusConnection:
    ws: WebSocket
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    remote_addr: str = ""


class StatusBroadcaster:
    def __init__(self) -> None:
        self._connections: dict[str, StatusConnection] = {}
        self._last: Optional[SessionStatus] = None
        self._shutdown = asyncio.Event()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def broadcast(self, status: SessionStatus) -> None:
        self._last = status
        message = {"type": "status", "data": status.model_dump(mode="json")}
        for conn in list(self._connections.values()):
            await self._send(conn, message)

    async def handle_connection(self, ws: WebSocket) -> None:
        await ws.accept()
        conn = StatusConnection(
            ws=ws,
            remote_addr=f"{ws.client.host}:{ws.client.port}" if ws.client else "unknown",
        )
        self._connections[conn.connection_id] = conn
        STATUS_SUBSCRIBERS.set(len(self._connections))
        logger.info("ws_connected", connection_id=conn.connection_id, remote_addr=conn.remote_addr)

        if self._last is not None:
            await self._send(conn, {"type": "status", "data": self._last.model_dump(mode="json"), "replay": True})

        try:
            while not self._shutdown.is_set():
                try:
                    raw = await asyncio.wait_for(ws.receive_text(), timeout=RECEIVE_TIMEOUT_S)
                except asyncio.TimeoutError:
                    continue
                await self._handle_message(conn, raw)
        except WebSocketDisconnect:
            pass
        except Exception as exc:
            logger.warning("ws_connection_error", connection_id=conn.connection_id, error=str(exc))
        finally:
            self._connections.pop(conn.connection_id, None)
            STATUS_SUBSCRIBERS.set(len(self._connections))
            logger.info("ws_disconnected", connection_id=conn.connection_id)

    async def _handle_message(self, conn: StatusConnection, raw: str) -> None:
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError:
            await self._send(conn, {"type": "error", "error": {"code": "invalid_json"}})
            return
        if isinstance(msg, dict) and msg.get("op") == "ping":
            await self._send(conn, {"type": "pong"})

    async def stop(self) -> None:
        self._shutdown.set()
        for conn in list(self._connections.values()):
            try:
                if conn.ws.client_state == WebSocketState.CONNECTED:
                    await conn.ws.close(code=1001, reason="server_shutdown")
            except Exception as exc:
                logger.debug("ws_close_error", connection_id=conn.connection_id, error=str(exc))
        self._connections.clear()
        STATUS_SUBSCRIBERS.set(0)

    async def _send(self, conn: StatusConnection, message: dict[str, Any]) -> None:
        try:
            if conn.ws.client_state == WebSocketState.CONNECTED:
                await conn.ws.send_text(json.dumps(message, default=str))
        except Exception as exc:
            logger.debug("ws_send_error", connection_id=conn.connection_id, error=str(exc))

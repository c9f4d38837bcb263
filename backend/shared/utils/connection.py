"""
Connection status tracking for the backend channel.

States:
  CONNECTED: sends go out immediately
  DISCONNECTED: sends are queued locally, ack-dependent undo is refused
  RECONNECTING: a reconnect attempt is in progress; behaves as disconnected
"""
from __future__ import annotations

import time
from typing import Any, Callable, Optional

from shared.models.enums import ConnectionStatus
from shared.utils.logging import get_logger

logger = get_logger(__name__)

Listener = Callable[[ConnectionStatus, ConnectionStatus], None]


class ConnectionMonitor:
    """
    Single source of truth for connection status.
    Listeners are invoked synchronously on every status change.
    """

    def __init__(self, initial: ConnectionStatus = ConnectionStatus.DISCONNECTED) -> None:
        self._status = initial
        self._changed_at = time.monotonic()
        self._consecutive_failures = 0
        self._listeners: list[Listener] = []

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        return self._status == ConnectionStatus.CONNECTED

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "status": self._status.value,
            "since_s": round(time.monotonic() - self._changed_at, 1),
            "consecutive_failures": self._consecutive_failures,
        }

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def mark_connected(self) -> None:
        self._consecutive_failures = 0
        self._set(ConnectionStatus.CONNECTED)

    def mark_disconnected(self, reason: Optional[str] = None) -> None:
        self._consecutive_failures += 1
        if self._status != ConnectionStatus.DISCONNECTED:
            logger.warning("connection_lost", reason=reason, failures=self._consecutive_failures)
        self._set(ConnectionStatus.DISCONNECTED)

    def mark_reconnecting(self) -> None:
        self._set(ConnectionStatus.RECONNECTING)

    def _set(self, status: ConnectionStatus) -> None:
        previous = self._status
        if previous == status:
            return
        self._status = status
        self._changed_at = time.monotonic()
        logger.info("connection_status_changed", previous=previous.value, status=status.value)
        for listener in self._listeners:
            listener(previous, status)

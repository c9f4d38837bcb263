"""
Dependency injection for the operator API.
Provides the live LoggerSession and the status broadcaster to route handlers.
"""
from __future__ import annotations

from session.context import LoggerSession

from api.ws.manager import StatusBroadcaster

# Module-level singletons, initialized at startup
_session: LoggerSession | None = None
_broadcaster: StatusBroadcaster | None = None


def init_dependencies(session: LoggerSession, broadcaster: StatusBroadcaster | None = None) -> None:
    """Initialize module-level singletons. Called once at startup."""
    global _session, _broadcaster
    _session = session
    _broadcaster = broadcaster


def get_session() -> LoggerSession:
    """FastAPI dependency: returns the active LoggerSession."""
    if _session is None:
        raise RuntimeError("LoggerSession not initialized; call init_dependencies first")
    return _session


def get_broadcaster() -> StatusBroadcaster:
    if _broadcaster is None:
        raise RuntimeError("StatusBroadcaster not initialized; call init_dependencies first")
    return _broadcaster


def reset_dependencies() -> None:
    """Drop the singletons on shutdown."""
    global _session, _broadcaster
    _session = None
    _broadcaster = None

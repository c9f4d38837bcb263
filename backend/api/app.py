"""
FastAPI application factory for the operator API.

Creates the app with:
- Session command routes
- Status WebSocket endpoint
- Middleware stack
- Health check endpoints
- Lifespan management (session runtime startup/shutdown)
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Awaitable, Callable

from fastapi import FastAPI, WebSocket

from shared.config import get_settings
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import start_metrics_server

from api.dependencies import get_broadcaster, get_session, init_dependencies, reset_dependencies
from api.middleware import setup_middleware
from api.routes.session import router as session_router
from api.ws.manager import StatusBroadcaster
from session.runtime import SessionRuntime

logger = get_logger(__name__)

_CONNECT_RETRY_ATTEMPTS = 5
_CONNECT_RETRY_BASE_DELAY_S = 1.0


async def _connect_with_retry(connect_fn: Callable[[], Awaitable[Any]], name: str) -> Any:
    """Call async connect_fn(); retry with exponential backoff on failure."""
    for attempt in range(1, _CONNECT_RETRY_ATTEMPTS + 1):
        try:
            return await connect_fn()
        except Exception as exc:
            if attempt == _CONNECT_RETRY_ATTEMPTS:
                raise
            delay = _CONNECT_RETRY_BASE_DELAY_S * (2 ** (attempt - 1))
            logger.warning(
                "connect_retry",
                name=name,
                attempt=attempt,
                max_attempts=_CONNECT_RETRY_ATTEMPTS,
                delay_s=delay,
                error=str(exc),
            )
            await asyncio.sleep(delay)
    return None


@asynccontextmanager
async def _noop_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """No-op lifespan for testing without the backend or Redis."""
    yield


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Start the session runtime (HTTP backend, Redis, push bridge, tick loop)
    and hand the live session to the route dependencies.
    """
    settings = get_settings()
    setup_logging("api")
    start_metrics_server(settings.metrics_port)

    broadcaster = StatusBroadcaster()
    runtime = SessionRuntime(settings)

    async def start_runtime() -> Any:
        try:
            return await runtime.start(on_status=broadcaster.broadcast)
        except Exception:
            await runtime.stop()
            raise

    session = await _connect_with_retry(start_runtime, "session_runtime")
    init_dependencies(session, broadcaster)

    logger.info("api_service_started", host=settings.api_host, port=settings.api_port)

    yield

    await broadcaster.stop()
    await runtime.stop()
    reset_dependencies()
    logger.info("api_service_stopped")


def create_app(*, use_lifespan: bool = True) -> FastAPI:
    """Create and configure the FastAPI application. Set use_lifespan=False for tests."""
    app = FastAPI(
        title="Match Logger API",
        description="Operator commands for live match logging",
        version="1.0.0",
        lifespan=lifespan if use_lifespan else _noop_lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    setup_middleware(app)
    app.include_router(session_router)

    @app.get("/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "api"}

    @app.get("/ready", tags=["system"])
    async def readiness() -> dict[str, Any]:
        """Readiness probe: a hydrated session with a live backend connection."""
        try:
            session = get_session()
        except RuntimeError:
            return {"status": "starting", "connection": None}
        connected = session.connection.is_connected
        return {
            "status": "ok" if connected else "degraded",
            "connection": session.connection.stats,
            "hydrated": session.match is not None,
        }

    @app.websocket("/v1/session/ws")
    async def status_websocket(ws: WebSocket) -> None:
        """Pushes SessionStatus snapshots; clients may send {"op": "ping"}."""
        try:
            broadcaster = get_broadcaster()
        except RuntimeError:
            await ws.close(code=1013, reason="service_unavailable")
            return
        await broadcaster.handle_connection(ws)

    return app


# For running with uvicorn directly
app = create_app()


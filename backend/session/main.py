"""
Headless logger session entrypoint.
Hydrates the configured match, bridges server push and runs the tick loop
until SIGTERM/SIGINT.
"""
from __future__ import annotations

import asyncio
import signal

from shared.config import get_settings
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import start_metrics_server

from session.runtime import SessionRuntime

logger = get_logger(__name__)


async def main() -> None:
    setup_logging("session")
    settings = get_settings()
    start_metrics_server(settings.metrics_port)

    runtime = SessionRuntime(settings)
    try:
        await runtime.start()
    except Exception as e:
        logger.exception("startup_failed", error=str(e))
        await runtime.stop()
        raise

    shutdown = asyncio.Event()

    def on_signal() -> None:
        shutdown.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            asyncio.get_running_loop().add_signal_handler(sig, on_signal)
        except NotImplementedError:
            pass

    logger.info("session_service_started", match_id=settings.match_id)
    await shutdown.wait()

    await runtime.stop()
    logger.info("session_service_stopped")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()

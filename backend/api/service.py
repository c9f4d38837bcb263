"""
Operator API entrypoint.

The logger session is held in process memory, so one uvicorn worker owns one
match. PORT, when set by the platform, wins over API_PORT.
"""
from __future__ import annotations

import os

import uvicorn

from shared.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "api.app:app",
        host=settings.api_host,
        port=int(os.environ.get("PORT", settings.api_port)),
        workers=1,
        log_level=settings.log_level.lower(),
        # request logging comes from RequestLoggingMiddleware
        access_log=False,
        ws_ping_interval=20.0,
        ws_ping_timeout=10.0,
    )


if __name__ == "__main__":
    main()

"""
Session runtime wiring: which backends get built from settings.

Run: pytest backend/tests/test_runtime.py -v
"""
from __future__ import annotations

import pytest

from shared.config import Settings
from shared.utils.redis_manager import OfflineQueue, RedisManager
from session.runtime import SessionRuntime
from transport.http import HTTPEventChannel, HTTPMatchService


def test_without_redis_features() -> None:
    runtime = SessionRuntime(
        Settings(match_id="M1", offline_queue_enabled=False, push_bridge_enabled=False)
    )
    assert runtime.redis is None
    session = runtime.build_session()
    assert session.match_id == "M1"
    assert session._queue is None
    assert isinstance(session._channel, HTTPEventChannel)
    assert isinstance(session._service, HTTPMatchService)


def test_offline_queue_enabled() -> None:
    runtime = SessionRuntime(Settings(match_id="M1", offline_queue_enabled=True, push_bridge_enabled=False))
    assert isinstance(runtime.redis, RedisManager)
    assert isinstance(runtime.build_session()._queue, OfflineQueue)


def test_base_url_normalised() -> None:
    assert Settings(api_base_url="http://backend:8000/").api_base_url == "http://backend:8000/api/v1"
    assert Settings(api_base_url="http://backend/api/v1").api_base_url == "http://backend/api/v1"


@pytest.mark.asyncio
async def test_start_requires_match_id() -> None:
    runtime = SessionRuntime(Settings(match_id="", offline_queue_enabled=False, push_bridge_enabled=False))
    with pytest.raises(ValueError):
        await runtime.start()

"""Shared fixtures: settings, a fake clock, the in-memory backend and a session wired to it."""
from __future__ import annotations

import pytest
import pytest_asyncio

from shared.config import Settings
from shared.models.domain import MatchSnapshot

from fakes import FakeChannel, FakeClock, FakeMatchService, FakeValidator, build_match
from session.context import LoggerSession


@pytest.fixture
def settings() -> Settings:
    return Settings(
        match_id="M1",
        bypass_transition_guards=False,
        ack_timeout_s=10.0,
        drift_threshold_s=2.0,
        drift_linger_s=1.0,
        resync_cooldown_s=15.0,
        offline_queue_enabled=False,
        push_bridge_enabled=False,
        metrics_enabled=False,
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def match() -> MatchSnapshot:
    return build_match()


@pytest.fixture
def service(match: MatchSnapshot) -> FakeMatchService:
    return FakeMatchService(match)


@pytest.fixture
def channel(service: FakeMatchService) -> FakeChannel:
    return FakeChannel(service)


@pytest.fixture
def validator() -> FakeValidator:
    return FakeValidator()


@pytest.fixture
def session(
    channel: FakeChannel,
    service: FakeMatchService,
    validator: FakeValidator,
    settings: Settings,
    fake_clock: FakeClock,
) -> LoggerSession:
    return LoggerSession(
        "M1",
        channel,
        service,
        validator,
        settings=settings,
        now=fake_clock.now,
        monotonic=fake_clock.monotonic,
    )


@pytest_asyncio.fixture
async def live_session(session: LoggerSession) -> LoggerSession:
    """Hydrated and connected: first half, clock stopped at 10:00."""
    await session.hydrate()
    return session

"""
LoggerSession against an in-memory backend: submission, card escalation,
offline queueing and resend, acks, duplicates, undo, edits and reset.

Run: pytest backend/tests/test_session.py -v
"""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from prometheus_client import REGISTRY
from redis.exceptions import RedisError
from structlog.testing import capture_logs

from shared.errors import (
    ConfirmationMismatch,
    DuplicateEvent,
    PlayerExpelled,
    ResetBlocked,
    SessionLocked,
    TransportError,
    UndoUnavailable,
    ValidationError,
)
from shared.models.domain import Ack, MatchEvent, PushMessage, SubstitutionCheck
from shared.models.enums import (
    AckStatus,
    ConnectionStatus,
    DeliveryStatus,
    EventType,
    MatchPhase,
    PushMessageType,
)

from fakes import FakeChannel, FakeMatchService, FakeValidator, build_match, card, pass_draft
from session.context import LoggerSession


def card_rows(session: LoggerSession) -> list[tuple[str, str]]:
    return [
        (e.event.data["card_type"], e.event.match_clock)
        for e in session.timeline()
        if e.event.type == EventType.CARD
    ]


def sample(name: str, **labels: str) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


# ── Hydration ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_hydrate_connects_and_loads_phase(live_session: LoggerSession) -> None:
    status = live_session.status()
    assert status.connection == ConnectionStatus.CONNECTED
    assert status.phase == MatchPhase.LIVE_FIRST_HALF
    assert status.clock.effective == "10:00"
    assert status.pending_count == 0
    assert status.queued_count == 0


@pytest.mark.asyncio
async def test_hydrate_offline_leaves_session_disconnected(
    session: LoggerSession, service: FakeMatchService
) -> None:
    service.offline = True
    with pytest.raises(TransportError):
        await session.hydrate()
    assert session.connection.status == ConnectionStatus.DISCONNECTED
    with pytest.raises(ValidationError):
        session.ineffective_breakdown()


@pytest.mark.asyncio
async def test_phantom_finished_match_hydrates_as_pending(
    session: LoggerSession, service: FakeMatchService
) -> None:
    service.match = build_match(MatchPhase.FULLTIME.value, effective_s=0.0)
    await session.hydrate()
    assert session.status().phase == MatchPhase.PENDING
    assert session.status().locked is False


# ── Card escalation ─────────────────────────────────────────────────────

class TestSecondYellow:

    @pytest.mark.asyncio
    async def test_second_yellow_escalates_and_expels(self, live_session: LoggerSession) -> None:
        await live_session.submit(card("P101", "12:03.000"))
        ids = await live_session.submit_drafts(live_session.prepare(card("P101", "15:00.000")))

        assert card_rows(live_session) == [
            ("Yellow", "12:03.000"),
            ("Yellow (Second)", "15:00.001"),
            ("Red", "15:00.002"),
        ]
        red = live_session.engine.event(ids[1])
        assert red.data["auto_issued"] is True
        assert red.data["escalated_from"] == ids[0]

        state = live_session.discipline()["P101"]
        assert state.yellow_count == 2
        assert state.is_expelled is True
        assert live_session.expelled() == frozenset({"P101"})

    @pytest.mark.asyncio
    async def test_fresh_match_scenario(self, session: LoggerSession, service: FakeMatchService) -> None:
        service.match = build_match(MatchPhase.PENDING.value, effective_s=0.0)
        await session.hydrate()

        await session.submit(card("P101", "12:03.000"))
        assert len(session.timeline()) == 1
        assert session.discipline()["P101"].to_dict() == {
            "yellow_count": 1,
            "has_red": False,
            "is_expelled": False,
        }

        await session.submit(card("P101", "15:00.000"))
        assert card_rows(session)[1:] == [("Yellow (Second)", "15:00.001"), ("Red", "15:00.002")]
        assert session.discipline()["P101"].yellow_count == 2
        assert session.discipline()["P101"].is_expelled is True
        with pytest.raises(PlayerExpelled):
            await session.submit(card("P101", "16:00.000"))

    @pytest.mark.asyncio
    async def test_expelled_player_cannot_act(self, live_session: LoggerSession) -> None:
        await live_session.submit(card("P101", "12:03.000"))
        await live_session.submit(card("P101", "15:00.000"))
        with pytest.raises(PlayerExpelled):
            await live_session.submit(pass_draft("16:00", player_id="P101"))
        with pytest.raises(PlayerExpelled):
            await live_session.perform_action("T1", "P101", "Shot", "Goal")

    @pytest.mark.asyncio
    async def test_card_cancellation_restores_player(self, live_session: LoggerSession) -> None:
        await live_session.submit(card("P101", "05:00.000"))
        await live_session.submit(card("P101", "08:00.000"))
        assert "P101" in live_session.expelled()
        await live_session.cancel_card("T1", "P101")
        state = live_session.discipline()["P101"]
        assert state.yellow_count == 1
        assert state.is_expelled is False

    @pytest.mark.asyncio
    async def test_all_drafts_validated_before_any_recorded(self, live_session: LoggerSession) -> None:
        await live_session.submit(pass_draft("15:00.002", player_id="P101"))
        with pytest.raises(DuplicateEvent):
            await live_session.submit_drafts([pass_draft("20:00"), pass_draft("15:00.002", player_id="P101")])
        assert len(live_session.timeline()) == 1


# ── Delivery ────────────────────────────────────────────────────────────

class TestDelivery:

    @pytest.mark.asyncio
    async def test_connected_submit_is_confirmed_inline(
        self, live_session: LoggerSession, channel: FakeChannel
    ) -> None:
        cid = await live_session.submit(pass_draft("11:00"))
        entry = live_session.engine.timeline.get(cid)
        assert entry.status == DeliveryStatus.CONFIRMED
        assert entry.server_id == "srv-1"
        assert [e.client_id for e in channel.sent] == [cid]

    @pytest.mark.asyncio
    async def test_offline_submit_resent_with_same_identity(
        self, live_session: LoggerSession, channel: FakeChannel
    ) -> None:
        live_session.on_disconnected("wifi dropped")
        cid = await live_session.submit(pass_draft("11:00"))
        assert channel.sent == []
        status = live_session.status()
        assert status.connection == ConnectionStatus.DISCONNECTED
        assert status.queued_count == 1

        await live_session.on_reconnected()

        assert [e.client_id for e in channel.sent] == [cid]
        assert live_session.engine.timeline.get(cid).is_confirmed
        assert live_session.status().queued_count == 0

    @pytest.mark.asyncio
    async def test_send_failure_marks_rejected_and_disconnects(
        self, live_session: LoggerSession, channel: FakeChannel
    ) -> None:
        channel.fail = True
        cid = await live_session.submit(pass_draft("11:00"))
        entry = live_session.engine.timeline.get(cid)
        assert entry.status == DeliveryStatus.REJECTED
        assert entry.retryable is True
        assert live_session.connection.status == ConnectionStatus.DISCONNECTED

        channel.fail = False
        await live_session.on_reconnected()
        resent = live_session.engine.timeline.get(cid)
        assert resent.attempts == 2
        assert resent.is_confirmed
        assert [e.client_id for e in channel.sent] == [cid]

    @pytest.mark.asyncio
    async def test_retry_increments_attempts(
        self, live_session: LoggerSession, channel: FakeChannel
    ) -> None:
        channel.auto_ack = False
        cid = await live_session.submit(pass_draft("11:00"))
        await live_session.retry(cid)
        assert live_session.engine.timeline.get(cid).attempts == 2
        assert [e.client_id for e in channel.sent] == [cid, cid]
        assert live_session.status().pending_count == 1

    @pytest.mark.asyncio
    async def test_retry_refused_offline_or_unknown(self, live_session: LoggerSession) -> None:
        with pytest.raises(ValidationError):
            await live_session.retry("missing")
        live_session.on_disconnected()
        with pytest.raises(TransportError):
            await live_session.retry("missing")

    @pytest.mark.asyncio
    async def test_disconnect_flushes_pending_to_retryable(
        self, live_session: LoggerSession, channel: FakeChannel
    ) -> None:
        channel.auto_ack = False
        cid = await live_session.submit(pass_draft("11:00"))
        live_session.on_disconnected("socket closed")
        status = live_session.status()
        assert status.pending_count == 0
        assert status.rejected_count == 1
        assert live_session.engine.timeline.get(cid).reject_reason == "socket closed"

    @pytest.mark.asyncio
    async def test_server_rejection_keeps_field_errors(
        self, live_session: LoggerSession, channel: FakeChannel
    ) -> None:
        channel.ack_status = AckStatus.ERROR
        cid = await live_session.submit(pass_draft("11:00"))
        entry = live_session.engine.timeline.get(cid)
        assert entry.status == DeliveryStatus.REJECTED
        assert entry.field_errors == {"player_id": "unknown"}
        assert entry.retryable is False


# ── Acks ────────────────────────────────────────────────────────────────

class TestAcks:

    @pytest.mark.asyncio
    async def test_repeated_ack_is_idempotent(
        self, live_session: LoggerSession, channel: FakeChannel
    ) -> None:
        channel.auto_ack = False
        cid = await live_session.submit(pass_draft("11:00"))
        ack = channel.accept(live_session.engine.event(cid))
        first = await live_session.apply_ack(ack)
        second = await live_session.apply_ack(ack)
        assert first.result == second.result == "confirmed"
        assert len(live_session.timeline()) == 1
        assert live_session.status().pending_count == 0

    @pytest.mark.asyncio
    async def test_ack_via_push(self, live_session: LoggerSession, channel: FakeChannel) -> None:
        channel.auto_ack = False
        cid = await live_session.submit(pass_draft("11:00"))
        ack = channel.accept(live_session.engine.event(cid))
        await live_session.handle_message(PushMessage(type=PushMessageType.ACK, match_id="M1", ack=ack))
        assert live_session.engine.timeline.get(cid).is_confirmed

    @pytest.mark.asyncio
    async def test_unknown_success_ack_triggers_refresh(
        self, live_session: LoggerSession, service: FakeMatchService
    ) -> None:
        before = service.fetches
        outcome = await live_session.apply_ack(Ack(client_id="ghost", server_id="srv-99"))
        assert outcome.result == "ignored"
        assert service.fetches == before + 1


# ── Duplicates ──────────────────────────────────────────────────────────

class TestDuplicates:

    @pytest.mark.asyncio
    async def test_local_duplicate_suppressed(
        self, live_session: LoggerSession, channel: FakeChannel
    ) -> None:
        await live_session.submit(pass_draft("11:00"))
        with pytest.raises(DuplicateEvent):
            await live_session.submit(pass_draft("11:00.000"))
        assert len(live_session.timeline()) == 1
        assert len(channel.sent) == 1
        banner = live_session.status().duplicate_banner
        assert banner["match_clock"] == "11:00.000"
        live_session.dismiss_duplicate()
        assert live_session.status().duplicate_banner is None

    @pytest.mark.asyncio
    async def test_different_team_same_clock_allowed(self, live_session: LoggerSession) -> None:
        await live_session.submit(pass_draft("11:00"))
        await live_session.submit(pass_draft("11:00", player_id="P201", team_id="T2"))
        assert len(live_session.timeline()) == 2


# ── Turbo, actions and substitutions ────────────────────────────────────

class TestOperatorInput:

    @pytest.mark.asyncio
    async def test_turbo_pass(self, live_session: LoggerSession) -> None:
        ids, result = await live_session.submit_turbo("h10p1>7")
        event = live_session.engine.event(ids[0])
        assert event.type == EventType.PASS
        assert event.player_id == "P101"
        assert event.data["receiver_id"] == "P102"
        assert event.match_clock == "10:00.000"
        assert result.escalated is False

    @pytest.mark.asyncio
    async def test_turbo_default_outcome(self, live_session: LoggerSession) -> None:
        ids, result = await live_session.submit_turbo("h4f")
        event = live_session.engine.event(ids[0])
        assert event.type == EventType.FOUL_COMMITTED
        assert event.data["outcome"] == "Standard"
        assert result.stoppage_trigger is not None

    @pytest.mark.asyncio
    async def test_turbo_second_yellow(self, live_session: LoggerSession) -> None:
        await live_session.submit_turbo("h10y1")
        ids, result = await live_session.submit_turbo("h10y1")
        assert result.escalated is True
        assert len(ids) == 2
        assert "P101" in live_session.expelled()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["10z", "h55d1", "h4x", "10p1"])
    async def test_turbo_rejections(self, live_session: LoggerSession, text: str) -> None:
        with pytest.raises(ValidationError):
            await live_session.submit_turbo(text)
        assert live_session.timeline() == []

    @pytest.mark.asyncio
    async def test_action_needing_recipient(self, live_session: LoggerSession) -> None:
        with pytest.raises(ValidationError):
            await live_session.perform_action("T1", "P101", "Pass", "Complete")
        ids, _ = await live_session.perform_action("T1", "P101", "Pass", "Complete", "P102")
        assert len(ids) == 1

    @pytest.mark.asyncio
    async def test_valid_substitution_recorded(
        self, live_session: LoggerSession, validator: FakeValidator
    ) -> None:
        cid, check = await live_session.submit_substitution("T1", "P101", "P104")
        assert check.team_status == {"substitutions_used": 1}
        assert validator.calls == [("T1", "P101", "P104", 1)]
        assert live_session.engine.event(cid).type == EventType.SUBSTITUTION

    @pytest.mark.asyncio
    async def test_invalid_substitution_not_recorded(
        self, live_session: LoggerSession, validator: FakeValidator
    ) -> None:
        validator.check = SubstitutionCheck(is_valid=False, error_message="No substitutions left")
        with pytest.raises(ValidationError) as exc_info:
            await live_session.submit_substitution("T1", "P101", "P104")
        assert exc_info.value.message == "No substitutions left"
        assert live_session.timeline() == []

    @pytest.mark.asyncio
    async def test_locked_match_refuses_events(
        self, session: LoggerSession, service: FakeMatchService
    ) -> None:
        service.match = build_match(MatchPhase.FULLTIME.value, effective_s=5400.0)
        await session.hydrate()
        assert session.status().locked is True
        with pytest.raises(SessionLocked):
            await session.submit(pass_draft("91:00"))
        with pytest.raises(SessionLocked):
            await session.submit_substitution("T1", "P101", "P104")


# ── Undo ────────────────────────────────────────────────────────────────

class TestUndo:

    @pytest.mark.asyncio
    async def test_local_undo_while_offline(self, live_session: LoggerSession) -> None:
        live_session.on_disconnected()
        cid = await live_session.submit(pass_draft("11:00"))
        assert await live_session.undo() == [cid]
        assert live_session.timeline() == []
        assert live_session.status().queued_count == 0

    @pytest.mark.asyncio
    async def test_undo_of_sent_event_refused_offline(self, live_session: LoggerSession) -> None:
        cid = await live_session.submit(pass_draft("11:00"))
        live_session.on_disconnected()
        with pytest.raises(UndoUnavailable):
            await live_session.undo()
        assert live_session.engine.timeline.get(cid) is not None
        assert live_session.status().undo_depth == 1

    @pytest.mark.asyncio
    async def test_remote_undo_answered_inline(
        self, live_session: LoggerSession, channel: FakeChannel
    ) -> None:
        cid = await live_session.submit(pass_draft("11:00"))
        assert await live_session.undo() == [cid]
        assert live_session.timeline() == []
        assert [e.client_id for e in channel.undone] == [cid]

    @pytest.mark.asyncio
    async def test_remote_undo_completed_by_push(
        self, live_session: LoggerSession, channel: FakeChannel
    ) -> None:
        cid = await live_session.submit(pass_draft("11:00"))
        channel.undo_reply = None
        await live_session.undo()
        assert live_session.engine.timeline.get(cid) is not None
        await live_session.handle_message(
            PushMessage(type=PushMessageType.UNDO_ACK, match_id="M1", client_id=cid, success=True)
        )
        assert live_session.timeline() == []

    @pytest.mark.asyncio
    async def test_refused_undo_restores_stack(
        self, live_session: LoggerSession, channel: FakeChannel
    ) -> None:
        await live_session.submit(pass_draft("11:00"))
        channel.undo_reply = False
        with pytest.raises(UndoUnavailable):
            await live_session.undo()
        assert live_session.status().undo_depth == 1
        assert len(live_session.timeline()) == 1

    @pytest.mark.asyncio
    async def test_undo_transport_failure(self, live_session: LoggerSession, channel: FakeChannel) -> None:
        await live_session.submit(pass_draft("11:00"))
        channel.fail = True
        with pytest.raises(UndoUnavailable):
            await live_session.undo()
        assert live_session.connection.status == ConnectionStatus.DISCONNECTED
        assert live_session.status().undo_depth == 1

    @pytest.mark.asyncio
    async def test_undo_auto_red_cascades(
        self, live_session: LoggerSession, channel: FakeChannel
    ) -> None:
        await live_session.submit(card("P101", "12:03.000"))
        ids = await live_session.submit_drafts(live_session.prepare(card("P101", "15:00.000")))

        removed = await live_session.undo()

        assert removed == [ids[1], ids[0]]
        assert card_rows(live_session) == [("Yellow", "12:03.000")]
        assert live_session.discipline()["P101"].yellow_count == 1
        assert "P101" not in live_session.expelled()
        assert len(channel.undone) == 2

    @pytest.mark.asyncio
    async def test_nothing_to_undo(self, live_session: LoggerSession) -> None:
        with pytest.raises(UndoUnavailable):
            await live_session.undo()


# ── Edits ───────────────────────────────────────────────────────────────

class TestEdits:

    @pytest.mark.asyncio
    async def test_delete_requires_confirmation(
        self, live_session: LoggerSession, service: FakeMatchService
    ) -> None:
        cid = await live_session.submit(pass_draft("11:00"))
        with pytest.raises(ConfirmationMismatch):
            await live_session.delete_event(cid, "delete")
        await live_session.delete_event(cid, "DELETE")
        assert service.deleted == ["srv-1"]
        assert live_session.timeline() == []

    @pytest.mark.asyncio
    async def test_delete_unknown_or_offline(self, live_session: LoggerSession) -> None:
        with pytest.raises(ValidationError):
            await live_session.delete_event("missing", "DELETE")
        cid = await live_session.submit(pass_draft("11:00"))
        live_session.on_disconnected()
        with pytest.raises(TransportError):
            await live_session.delete_event(cid, "DELETE")

    @pytest.mark.asyncio
    async def test_update_notes_remote(
        self, live_session: LoggerSession, service: FakeMatchService
    ) -> None:
        cid = await live_session.submit(pass_draft("11:00"))
        event = await live_session.update_notes(cid, "deflected")
        assert event.notes == "deflected"
        assert service.updated[0].notes == "deflected"

    @pytest.mark.asyncio
    async def test_update_notes_unsent(
        self, live_session: LoggerSession, service: FakeMatchService
    ) -> None:
        live_session.on_disconnected()
        cid = await live_session.submit(pass_draft("11:00"))
        await live_session.update_notes(cid, "check video")
        assert live_session.engine.event(cid).notes == "check video"
        assert service.updated == []


# ── Reset ───────────────────────────────────────────────────────────────

class TestReset:

    @pytest.mark.asyncio
    async def test_reset_blocked_while_unacknowledged(
        self, live_session: LoggerSession, channel: FakeChannel
    ) -> None:
        channel.auto_ack = False
        await live_session.submit(pass_draft("11:00"))
        with pytest.raises(ResetBlocked) as exc_info:
            await live_session.reset("RESET")
        assert exc_info.value.pending == 1
        assert len(live_session.timeline()) == 1

    @pytest.mark.asyncio
    async def test_reset_blocked_while_queued(self, live_session: LoggerSession) -> None:
        live_session.on_disconnected()
        await live_session.submit(pass_draft("11:00"))
        with pytest.raises(ResetBlocked) as exc_info:
            await live_session.reset("RESET")
        assert exc_info.value.queued == 1

    @pytest.mark.asyncio
    async def test_reset_requires_typed_confirmation(self, live_session: LoggerSession) -> None:
        with pytest.raises(ConfirmationMismatch):
            await live_session.reset("reset")

    @pytest.mark.asyncio
    async def test_forced_reset_needs_actor_and_is_audited(
        self, live_session: LoggerSession, channel: FakeChannel, service: FakeMatchService
    ) -> None:
        channel.auto_ack = False
        await live_session.submit(pass_draft("11:00"))
        with pytest.raises(ValidationError):
            await live_session.reset("RESET", force=True)

        before = sample("ml_resets_total", forced="true")
        with capture_logs() as logs:
            await live_session.reset("RESET", force=True, actor="supervisor-7")

        audit = [entry for entry in logs if entry["event"] == "forced_reset"]
        assert audit and audit[0]["actor"] == "supervisor-7"
        assert audit[0]["pending"] == 1
        assert sample("ml_resets_total", forced="true") == before + 1
        assert service.reset_calls == 1
        assert live_session.timeline() == []
        assert live_session.status().phase == MatchPhase.PENDING

    @pytest.mark.asyncio
    async def test_clean_reset(self, live_session: LoggerSession, service: FakeMatchService) -> None:
        await live_session.submit(pass_draft("11:00"))
        await live_session.reset("RESET")
        assert service.reset_calls == 1
        assert live_session.status().undo_depth == 0


# ── Offline queue persistence ───────────────────────────────────────────

def queue_mock(loaded: list[MatchEvent] | None = None) -> MagicMock:
    queue = MagicMock()
    queue.load = AsyncMock(return_value=loaded or [])
    queue.put = AsyncMock()
    queue.remove = AsyncMock()
    queue.clear = AsyncMock()
    return queue


def build_session(channel, service, validator, settings, fake_clock, queue) -> LoggerSession:
    return LoggerSession(
        "M1",
        channel,
        service,
        validator,
        offline_queue=queue,
        settings=settings,
        now=fake_clock.now,
        monotonic=fake_clock.monotonic,
    )


class TestOfflineQueuePersistence:

    @pytest.mark.asyncio
    async def test_restart_resends_queued_events(
        self, channel, service, validator, settings, fake_clock
    ) -> None:
        queued = MatchEvent(
            client_id="queued-1",
            match_id="M1",
            type=EventType.PASS,
            team_id="T1",
            player_id="P102",
            match_clock="08:00.000",
        )
        queue = queue_mock([queued])
        session = build_session(channel, service, validator, settings, fake_clock, queue)

        await session.hydrate()

        assert [e.client_id for e in channel.sent] == ["queued-1"]
        assert session.engine.timeline.get("queued-1").is_confirmed
        queue.remove.assert_awaited_with("M1", "queued-1")

    @pytest.mark.asyncio
    async def test_submit_persists_until_acknowledged(
        self, channel, service, validator, settings, fake_clock
    ) -> None:
        queue = queue_mock()
        session = build_session(channel, service, validator, settings, fake_clock, queue)
        await session.hydrate()
        channel.auto_ack = False

        cid = await session.submit(pass_draft("11:00"))
        queue.put.assert_awaited_once()
        assert queue.put.await_args.args[0].client_id == cid
        queue.remove.assert_not_awaited()

        await session.apply_ack(channel.accept(session.engine.event(cid)))
        queue.remove.assert_awaited_once_with("M1", cid)

    @pytest.mark.asyncio
    async def test_queue_failure_does_not_block_logging(
        self, channel, service, validator, settings, fake_clock
    ) -> None:
        queue = queue_mock()
        queue.load = AsyncMock(side_effect=RedisError("down"))
        queue.put = AsyncMock(side_effect=RedisError("down"))
        session = build_session(channel, service, validator, settings, fake_clock, queue)
        await session.hydrate()
        cid = await session.submit(pass_draft("11:00"))
        assert session.engine.timeline.get(cid).is_confirmed

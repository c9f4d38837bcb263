"""
Logger session: the single owner of one operator's match state.

Every mutation of the timeline, pending acks, undo stack, clock anchors and
phase goes through the command methods below, which run on one event loop.
Pure components (clock engine, reconciliation engine, period machine,
discipline fold, action flow) are composed here with the transport seams.
"""
from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Callable, Optional

from redis.exceptions import RedisError

from shared.config import Settings, get_settings
from shared.errors import (
    ConfirmationMismatch,
    InvalidTransition,
    LoggerError,
    PlayerExpelled,
    ResetBlocked,
    SessionLocked,
    TransitionGuardError,
    TransportError,
    UndoUnavailable,
    ValidationError,
)
from shared.models.domain import (
    Ack,
    ClockAnchors,
    EventDraft,
    MatchEvent,
    MatchSnapshot,
    PushMessage,
    SessionStatus,
    SubstitutionCheck,
    utcnow,
)
from shared.models.enums import CardType, ClockMode, EventType, MatchPhase, PushMessageType, StoppageType
from shared.utils.connection import ConnectionMonitor
from shared.utils.logging import get_logger
from shared.utils.metrics import CLOCK_RESYNCS, RESETS, TRANSITIONS
from shared.utils.redis_manager import OfflineQueue

from clock import engine as clock
from clock.drift import DriftMonitor, TickCoalescer
from clock.ineffective import IneffectiveBreakdown, compute_ineffective_breakdown
from discipline.accumulator import PlayerDiscipline, expelled_players, fold_discipline, yellow_counts
from flow.controller import ActionFlowController, FlowContext, FlowResult, escalate_card, substitution_draft
from flow.taxonomy import outcomes_for
from flow.turbo import parse_turbo_input, resolve_turbo
from periods.machine import NOMINAL_PHASE_START_S, PeriodStateMachine, added_time_info, normalize_phase
from reconciliation.engine import AckOutcome, ReconciliationEngine
from reconciliation.timeline import TimelineEntry
from transport.base import EventChannel, MatchService, SubstitutionValidator

logger = get_logger(__name__)


class LoggerSession:
    def __init__(
        self,
        match_id: str,
        channel: EventChannel,
        service: MatchService,
        validator: Optional[SubstitutionValidator] = None,
        offline_queue: Optional[OfflineQueue] = None,
        settings: Settings | None = None,
        now: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.match_id = match_id
        self.settings = settings or get_settings()
        self._channel = channel
        self._service = service
        self._validator = validator
        self._queue = offline_queue
        self._now = now
        self._monotonic = monotonic

        self.engine = ReconciliationEngine(match_id, self.settings, now)
        self.periods = PeriodStateMachine(settings=self.settings)
        self.connection = ConnectionMonitor()
        self.drift = DriftMonitor(
            self.settings.drift_threshold_s,
            self.settings.drift_linger_s,
            self.settings.resync_cooldown_s,
        )
        self.recompute = TickCoalescer()
        self.match: Optional[MatchSnapshot] = None
        self.flow: Optional[ActionFlowController] = None
        # Local anchors move optimistically; server anchors are the last confirmed copy
        self.anchors = ClockAnchors()
        self.server_anchors = ClockAnchors()
        self._fetch_seq = 0
        self._applied_seq = 0
        if self.periods.bypass_guards:
            logger.warning("transition_guards_bypassed", match_id=match_id)

    # ── Hydration ───────────────────────────────────────────────────────
    async def hydrate(self) -> None:
        """Initial load: match, events, then anything left in the offline queue."""
        await self.refresh("hydrate")
        if self._queue is not None:
            try:
                queued = await self._queue.load(self.match_id)
            except RedisError as e:
                logger.warning("offline_queue_load_failed", error=str(e))
                queued = []
            self.engine.restore_queued(queued)
        if self.connection.is_connected:
            await self.sync_queue()

    async def refresh(self, reason: str = "manual") -> bool:
        """
        Refetch match and events. Overlapping fetches resolve last-write-wins:
        a response older than one already applied is discarded.
        """
        self._fetch_seq += 1
        seq = self._fetch_seq
        try:
            match = await self._service.get_match(self.match_id)
            events = await self._service.get_events(self.match_id)
        except TransportError as e:
            self.on_disconnected(e.message)
            raise
        if seq < self._applied_seq:
            logger.debug("stale_fetch_discarded", reason=reason, seq=seq)
            return False
        self._applied_seq = seq
        self._apply_match(match)
        self.engine.hydrate(events)
        self.connection.mark_connected()
        self.drift.mark_resynced(self._monotonic())
        self.recompute.request(reason)
        logger.info("session_refreshed", reason=reason, phase=self.periods.displayed.value)
        return True

    def _apply_match(self, match: MatchSnapshot) -> None:
        self.match = match
        phase = normalize_phase(match.status, match.anchors)
        if phase.value != match.status and match.status:
            logger.info("phase_normalized", status=match.status, phase=phase.value)
        self.periods.sync(phase)
        self.periods.restore_phase_starts(match.period_timestamps)
        self.server_anchors = match.anchors
        if self.periods.in_flight is None and self.periods.failed_target is None:
            self.anchors = match.anchors
        if self.flow is None:
            self.flow = ActionFlowController(match)
        else:
            self.flow.update_match(match)

    # ── Derived state ───────────────────────────────────────────────────
    def clock_reading(self) -> clock.ClockReading:
        return clock.read_clock(self.anchors, self._now(), self.periods.displayed)

    def discipline(self) -> dict[str, PlayerDiscipline]:
        return fold_discipline(self.engine.events())

    def expelled(self) -> frozenset[str]:
        return frozenset(expelled_players(self.discipline()))

    def flow_context(self, match_clock: Optional[str] = None, period: Optional[int] = None) -> FlowContext:
        state = self.discipline()
        return FlowContext(
            match_clock=match_clock or self.clock_reading().match_clock,
            period=period or self.periods.period,
            yellow_counts=yellow_counts(state),
            expelled=frozenset(expelled_players(state)),
        )

    def ineffective_breakdown(self) -> IneffectiveBreakdown:
        match = self._require_match()
        return compute_ineffective_breakdown(
            self.engine.events(), match.home_team.id, match.away_team.id, self._now()
        )

    def timeline(self) -> list[TimelineEntry]:
        return self.engine.timeline.ordered()

    def status(self) -> SessionStatus:
        reading = self.clock_reading()
        added = added_time_info(self.periods.displayed, reading.effective_s)
        return SessionStatus(
            match_id=self.match_id,
            connection=self.connection.status,
            phase=self.periods.displayed,
            confirmed_phase=self.periods.confirmed,
            transition_failed=self.periods.needs_retry,
            locked=self.periods.displayed.is_locked,
            period=self.periods.period,
            clock=reading.view(),
            pending_count=self.engine.pending_count,
            queued_count=self.engine.queued_count,
            rejected_count=self.engine.rejected_count,
            undo_depth=len(self.engine.undo_stack),
            duplicate_banner=self.engine.duplicates.banner,
            added_time=added.to_dict() if added else None,
        )

    def _require_match(self) -> MatchSnapshot:
        if self.match is None:
            raise ValidationError("Session is not hydrated")
        return self.match

    def _require_flow(self) -> ActionFlowController:
        self._require_match()
        if self.flow is None:
            raise ValidationError("Action flow is not ready")
        return self.flow

    def _ensure_unlocked(self) -> None:
        if self.periods.displayed.is_locked:
            raise SessionLocked(self.periods.displayed.value)

    # ── Event submission ────────────────────────────────────────────────
    def prepare(self, draft: EventDraft) -> list[EventDraft]:
        """Card requests are resolved through escalation; everything else passes through."""
        card = draft.card_type
        if draft.type != EventType.CARD or card not in (CardType.YELLOW, CardType.YELLOW_SECOND):
            return [draft]
        if draft.player_id is None:
            return [draft]
        ctx = self.flow_context(draft.match_clock, draft.period)
        drafts, escalated = escalate_card(card, draft.team_id, draft.player_id, ctx)
        if not escalated:
            return [draft]
        for resolved in drafts:
            resolved.notes = draft.notes
        return drafts

    async def submit(self, draft: EventDraft) -> str:
        """Record one draft. Returns the client id of the primary entry."""
        ids = await self.submit_drafts(self.prepare(draft))
        return ids[0]

    async def submit_drafts(self, drafts: list[EventDraft], check_duplicates: bool = True) -> list[str]:
        """
        Append drafts atomically: every draft is validated before any is
        recorded. An auto-issued red is linked to the second yellow before it.
        """
        self._ensure_unlocked()
        expelled = self.expelled()
        for draft in drafts:
            if draft.player_id in expelled and draft.card_type != CardType.CANCELLED:
                raise PlayerExpelled(draft.player_id)
            if check_duplicates:
                self.engine.check_duplicate(draft)

        ids: list[str] = []
        for draft in drafts:
            if ids and draft.type == EventType.CARD and draft.data.get("auto_issued"):
                draft = draft.model_copy(update={"data": {**draft.data, "escalated_from": ids[-1]}})
            ids.append(self.engine.submit(draft, check_duplicates=check_duplicates))

        for client_id in ids:
            await self._persist(client_id)
        for client_id in ids:
            await self._deliver(client_id)
        self.recompute.request("timeline")
        return ids

    async def perform_action(
        self,
        team_id: str,
        player_id: str,
        action: str,
        outcome: str,
        recipient_id: Optional[str] = None,
    ) -> tuple[list[str], FlowResult]:
        """Run the action wizard end to end and record what it emits."""
        flow = self._require_flow()
        ctx = self.flow_context()
        flow.reset()
        try:
            flow.select_player(team_id, player_id, ctx.expelled)
            flow.select_action(action)
            result = flow.select_outcome(outcome, ctx)
            if result is None:
                if recipient_id is None:
                    raise ValidationError(f"{action} needs a recipient", {"recipient_id": "required"})
                result = flow.select_recipient(recipient_id, ctx)
        except LoggerError:
            flow.reset()
            raise
        ids = await self.submit_drafts(result.drafts)
        return ids, result

    async def submit_turbo(self, text: str) -> tuple[list[str], FlowResult]:
        parsed = parse_turbo_input(text)
        if not parsed.valid:
            raise ValidationError(parsed.error or "Invalid turbo entry", {"turbo": text})
        if parsed.action == "Substitution":
            raise ValidationError("Substitution has its own flow", {"turbo": text})
        resolution = resolve_turbo(parsed, self._require_match())
        if resolution is None:
            raise ValidationError("No player with that jersey number", {"turbo": text})
        action = parsed.action or ""
        outcome = parsed.outcome or next(iter(outcomes_for(action)), "")
        recipient_id = resolution.recipient.id if resolution.recipient else None
        return await self.perform_action(
            resolution.team.id, resolution.player.id, action, outcome, recipient_id
        )

    async def cancel_card(self, team_id: str, player_id: str) -> list[str]:
        flow = self._require_flow()
        result = flow.card_cancellation(team_id, player_id, self.flow_context())
        return await self.submit_drafts(result.drafts)

    async def submit_substitution(
        self,
        team_id: str,
        player_off_id: str,
        player_on_id: str,
        is_concussion: bool = False,
    ) -> tuple[str, SubstitutionCheck]:
        """The authoritative validator decides; an invalid substitution is never recorded."""
        self._ensure_unlocked()
        ctx = self.flow_context()
        draft = substitution_draft(team_id, player_off_id, player_on_id, ctx, is_concussion)
        check = SubstitutionCheck(is_valid=True)
        if self._validator is not None:
            check = await self._validator.validate(
                self.match_id, team_id, player_off_id, player_on_id, ctx.period, is_concussion
            )
        if not check.is_valid:
            raise ValidationError(
                check.error_message or "Substitution not allowed", {"player_on_id": player_on_id}
            )
        ids = await self.submit_drafts([draft])
        return ids[0], check

    # ── Delivery ────────────────────────────────────────────────────────
    async def _persist(self, client_id: str) -> None:
        if self._queue is None:
            return
        try:
            await self._queue.put(self.engine.event(client_id))
        except RedisError as e:
            logger.warning("offline_queue_write_failed", client_id=client_id, error=str(e))

    async def _unpersist(self, client_ids: list[str]) -> None:
        if self._queue is None:
            return
        for client_id in client_ids:
            try:
                await self._queue.remove(self.match_id, client_id)
            except RedisError as e:
                logger.warning("offline_queue_remove_failed", client_id=client_id, error=str(e))

    async def _deliver(self, client_id: str) -> None:
        if not self.connection.is_connected:
            return
        await self._transmit(self.engine.begin_send(client_id))

    async def _transmit(self, event: MatchEvent) -> None:
        try:
            ack = await self._channel.send(event)
        except TransportError as e:
            self.engine.reject(event.client_id, e.message, retryable=True)
            self.on_disconnected(e.message)
            return
        if ack is not None:
            await self.apply_ack(ack)

    async def apply_ack(self, ack: Ack) -> AckOutcome:
        outcome = self.engine.merge_ack(ack)
        await self._unpersist(outcome.settled)
        self.recompute.request("ack")
        if outcome.refresh_needed and self.connection.is_connected:
            await self.refresh("unknown_ack")
        return outcome

    async def retry(self, client_id: str) -> None:
        if not self.connection.is_connected:
            raise TransportError("Cannot retry while disconnected")
        try:
            event = self.engine.retry(client_id)
        except KeyError:
            raise ValidationError("Nothing to retry for this event", {"client_id": client_id}) from None
        await self._transmit(event)

    async def sync_queue(self) -> int:
        """Resend queued and retryable entries in timeline order. Stops on disconnect."""
        sent = 0
        for client_id in self.engine.resend_candidates():
            if not self.connection.is_connected:
                break
            await self._transmit(self.engine.begin_send(client_id))
            sent += 1
        if sent:
            logger.info("offline_queue_synced", sent=sent, remaining=self.engine.queued_count)
        return sent

    def on_disconnected(self, reason: Optional[str] = None) -> None:
        self.connection.mark_disconnected(reason)
        self.engine.flush_pending(reason or "Connection lost")

    async def on_reconnected(self) -> None:
        self.connection.mark_reconnecting()
        await self.refresh("reconnect")
        await self.sync_queue()

    def expire_pending(self) -> list[str]:
        return self.engine.expire_pending(self._now())

    # ── Undo and edits ──────────────────────────────────────────────────
    async def undo(self) -> list[str]:
        """
        Undo the newest unit. Returns its client ids; they leave the timeline
        once every remote delete is acknowledged.
        """
        plan = self.engine.plan_undo(self.connection.is_connected)
        if plan.completed:
            await self._unpersist(plan.local)
            self.recompute.request("undo")
            return plan.client_ids

        removed: list[str] = []
        for client_id in plan.remote:
            event = self.engine.event(client_id)
            try:
                answered = await self._channel.send_undo(event)
            except TransportError as e:
                self.engine.fail_undo(client_id, e.message)
                self.on_disconnected(e.message)
                raise UndoUnavailable(f"Undo failed: {e.message}") from e
            if answered is False:
                self.engine.fail_undo(client_id, "refused")
                raise UndoUnavailable("Server refused the undo")
            if answered:
                removed = self.engine.complete_undo(client_id)
        await self._unpersist(removed)
        self.recompute.request("undo")
        return plan.client_ids

    async def delete_event(self, client_id: str, confirm_text: str) -> None:
        """Admin delete, guarded by a typed confirmation."""
        if confirm_text != self.settings.delete_confirmation_text:
            raise ConfirmationMismatch(self.settings.delete_confirmation_text)
        entry = self.engine.timeline.get(client_id)
        if entry is None:
            raise ValidationError("Unknown event", {"client_id": client_id})
        if entry.server_id is not None:
            if not self.connection.is_connected:
                raise TransportError("Cannot delete a sent event while disconnected")
            await self._service.delete_event(entry.server_id)
        self.engine.remove(client_id)
        await self._unpersist([client_id])
        logger.info("event_deleted", client_id=client_id, server_id=entry.server_id)
        self.recompute.request("delete")

    async def update_notes(self, client_id: str, notes: Optional[str]) -> MatchEvent:
        try:
            event = self.engine.update_notes(client_id, notes)
        except KeyError:
            raise ValidationError("Unknown event", {"client_id": client_id}) from None
        if event.server_id is not None and self.connection.is_connected:
            event = await self._service.update_event(event)
        elif event.server_id is None:
            await self._persist(client_id)
        return event

    def dismiss_duplicate(self) -> None:
        self.engine.duplicates.dismiss()

    # ── Server push ─────────────────────────────────────────────────────
    async def handle_message(self, message: PushMessage) -> None:
        if message.match_id and message.match_id != self.match_id:
            return
        kind = message.type
        if kind == PushMessageType.ACK and message.ack is not None:
            await self.apply_ack(message.ack)
        elif kind == PushMessageType.UNDO_ACK and message.client_id:
            if message.success:
                await self._unpersist(self.engine.complete_undo(message.client_id))
            else:
                self.engine.fail_undo(message.client_id, message.error or "refused")
        elif kind == PushMessageType.EVENT_CREATED and message.event is not None:
            self.engine.apply_remote_created(message.event)
            await self._unpersist([message.event.client_id])
        elif kind == PushMessageType.EVENT_DELETED:
            removed = self.engine.apply_remote_deleted(message.server_id, message.client_id)
            if removed:
                await self._unpersist([removed])
        elif kind == PushMessageType.TIMELINE_REFRESH_REQUESTED:
            await self.refresh("push")
        self.recompute.request(kind.value)

    # ── Phases ──────────────────────────────────────────────────────────
    async def transition(self, target: MatchPhase) -> MatchPhase:
        """
        Optimistically move to `target` and confirm with the server. A failed
        confirmation keeps the displayed phase and leaves a retry pending.
        """
        reading = self.clock_reading()
        try:
            previous = self.periods.begin(target, reading.global_s)
        except (InvalidTransition, TransitionGuardError):
            TRANSITIONS.labels(target=target.value, result="blocked").inc()
            raise

        now = self._now()
        if target.is_live:
            floor = NOMINAL_PHASE_START_S.get(target, 0.0)
            anchors = self.anchors
            if anchors.accumulated_effective_s < floor:
                anchors = anchors.model_copy(update={"accumulated_effective_s": floor})
            self.anchors = clock.start_clock(anchors, now)
            self.periods.phase_starts[target] = self.clock_reading().global_s
        else:
            self.anchors = clock.stop_clock(self.anchors, now)
        self.recompute.request("transition")

        await self._confirm_transition(target)
        return previous

    async def retry_transition(self) -> MatchPhase:
        target = self.periods.begin_retry()
        await self._confirm_transition(target)
        return target

    async def _confirm_transition(self, target: MatchPhase) -> None:
        try:
            await self._service.update_status(
                self.match_id, target, self.anchors, self.periods.period_stamp(target) or None
            )
        except LoggerError as e:
            self.periods.fail(target, e.message)
            TRANSITIONS.labels(target=target.value, result="failed").inc()
            if isinstance(e, TransportError):
                self.connection.mark_disconnected(e.message)
            raise
        self.periods.confirm(target)
        self.server_anchors = self.anchors
        stamp = self.periods.period_stamp(target)
        if stamp and self.match is not None:
            self.match.period_timestamps.update(stamp)
        TRANSITIONS.labels(target=target.value, result="confirmed").inc()

    # ── Clock commands ──────────────────────────────────────────────────
    async def _push_clock(self, anchors: ClockAnchors) -> None:
        self.anchors = anchors
        self.recompute.request("clock")
        try:
            await self._service.update_clock(self.match_id, anchors)
        except TransportError as e:
            # Local anchors stay; drift detection resyncs once the server is back
            self.connection.mark_disconnected(e.message)
            logger.warning("clock_update_failed", error=e.message)
            return
        self.server_anchors = anchors

    async def _record_stoppage(
        self,
        stoppage_type: StoppageType,
        trigger_action: Optional[str] = None,
        trigger_team_id: Optional[str] = None,
    ) -> Optional[str]:
        if self.match is None or self.periods.displayed.is_locked:
            return None
        draft = EventDraft(
            type=EventType.GAME_STOPPAGE,
            team_id=trigger_team_id or self.match.home_team.id,
            period=self.periods.period,
            match_clock=self.clock_reading().match_clock,
            data={
                "stoppage_type": stoppage_type.value,
                "trigger_action": trigger_action,
                "trigger_team_id": trigger_team_id,
            },
        )
        ids = await self.submit_drafts([draft], check_duplicates=False)
        return ids[0]

    async def switch_clock_mode(
        self,
        mode: ClockMode,
        trigger_action: Optional[str] = None,
        trigger_team_id: Optional[str] = None,
    ) -> None:
        if mode == self.anchors.clock_mode:
            return
        await self._push_clock(clock.switch_mode(self.anchors, mode, self._now()))
        stoppage = StoppageType.CLOCK_STOP if mode == ClockMode.INEFFECTIVE else StoppageType.CLOCK_START
        await self._record_stoppage(stoppage, trigger_action, trigger_team_id)

    async def start_clock(self) -> None:
        if not self.periods.displayed.is_live:
            raise SessionLocked(self.periods.displayed.value)
        await self._push_clock(clock.start_clock(self.anchors, self._now()))

    async def stop_clock(self) -> None:
        await self._push_clock(clock.stop_clock(self.anchors, self._now()))

    async def var_start(self) -> None:
        if self.anchors.var_active:
            return
        await self._push_clock(clock.var_start(self.anchors, self._now()))
        await self._record_stoppage(StoppageType.VAR_START, "VAR")

    async def var_stop(self) -> None:
        if not self.anchors.var_active:
            return
        await self._push_clock(clock.var_stop(self.anchors, self._now()))
        await self._record_stoppage(StoppageType.VAR_STOP, "VAR")

    async def var_pause(self) -> None:
        await self._push_clock(clock.var_pause(self.anchors, self._now()))

    async def var_resume(self) -> None:
        await self._push_clock(clock.var_resume(self.anchors, self._now()))

    # ── Reset ───────────────────────────────────────────────────────────
    async def reset(self, confirm_text: str, force: bool = False, actor: Optional[str] = None) -> None:
        """
        Wipe the match. Blocked while anything is unsent or unacknowledged
        unless forced; a forced reset needs an actor and is audited.
        """
        if confirm_text != self.settings.reset_confirmation_text:
            raise ConfirmationMismatch(self.settings.reset_confirmation_text)
        pending = self.engine.pending_count
        queued = self.engine.queued_count + self.engine.rejected_count
        if (pending or queued) and not force:
            raise ResetBlocked(queued=queued, pending=pending)
        if force:
            if not actor:
                raise ValidationError("A forced reset needs an actor", {"actor": "required"})
            logger.warning(
                "forced_reset",
                match_id=self.match_id,
                actor=actor,
                pending=pending,
                queued=queued,
            )

        await self._service.reset(self.match_id)
        self.engine.clear()
        self.periods.reset()
        self.anchors = ClockAnchors()
        self.server_anchors = ClockAnchors()
        if self.flow is not None:
            self.flow.reset()
        if self._queue is not None:
            try:
                await self._queue.clear(self.match_id)
            except RedisError as e:
                logger.warning("offline_queue_clear_failed", error=str(e))
        RESETS.labels(forced=str(force).lower()).inc()
        logger.info("match_reset", match_id=self.match_id, forced=force)
        await self.refresh("reset")

    # ── Tick ────────────────────────────────────────────────────────────
    async def tick(self) -> dict[str, Any]:
        """
        One heartbeat: expire stale acks, compare local and server clocks,
        and coalesce recompute requests into a single status snapshot.
        """
        expired = self.expire_pending()
        if expired:
            self.recompute.request("ack_timeout")

        now = self._now()
        local_s = clock.effective_seconds(self.anchors, now)
        server_s = clock.effective_seconds(self.server_anchors, now)
        resynced = False
        if self.drift.observe(local_s, server_s, self._monotonic()) and self.connection.is_connected:
            CLOCK_RESYNCS.labels(reason="drift").inc()
            try:
                resynced = await self.refresh("drift")
            except TransportError:
                resynced = False

        reasons = self.recompute.drain()
        return {
            "expired": expired,
            "resynced": resynced,
            "recomputed": sorted(reasons),
            "status": self.status() if reasons or self.anchors.is_running else None,
        }

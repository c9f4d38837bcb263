"""
Event Reconciliation Engine.

Single writer of the timeline, pending-ack map and undo stack. Every entry's
delivery status is an explicit variant (pending, confirmed, rejected) driven by
discrete messages: submit, send, ack, reject, timeout. The engine performs no
I/O; the session sends what it returns and feeds the replies back in.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from shared.config import Settings, get_settings
from shared.errors import DuplicateEvent, UndoUnavailable
from shared.models.domain import Ack, EventDraft, MatchEvent, PendingAck, utcnow
from shared.models.enums import AckStatus, CardType, DeliveryStatus, EventType
from shared.utils.logging import get_logger
from shared.utils.metrics import ACKS, EVENTS_SUBMITTED, PENDING_ACKS, QUEUED_EVENTS, UNDO_OPERATIONS

from clock.formatting import allocate_clock, normalize_match_clock
from reconciliation.duplicates import DuplicateTracker, duplicate_key, find_local_duplicate
from reconciliation.timeline import Timeline, TimelineEntry
from reconciliation.undo import UndoStack

logger = get_logger(__name__)


@dataclass
class AckOutcome:
    client_id: Optional[str]
    result: str
    duplicate: Optional[DuplicateEvent] = None
    refresh_needed: bool = False
    # client ids no longer awaiting delivery; safe to drop from the offline queue
    settled: list[str] = field(default_factory=list)


@dataclass
class UndoPlan:
    members: list[TimelineEntry]
    remote: list[str]
    local: list[str]
    cascade: bool = False
    awaiting: set[str] = field(default_factory=set)

    @property
    def client_ids(self) -> list[str]:
        return [m.client_id for m in self.members]

    @property
    def completed(self) -> bool:
        return not self.awaiting


def is_auto_red(event: MatchEvent) -> bool:
    return event.card_type == CardType.RED and bool(event.data.get("auto_issued"))


def is_paired_second_yellow(red: MatchEvent, candidate: MatchEvent) -> bool:
    if candidate.card_type != CardType.YELLOW_SECOND:
        return False
    escalated_from = red.data.get("escalated_from")
    if escalated_from and escalated_from != candidate.client_id:
        return False
    return (
        candidate.player_id == red.player_id
        and candidate.team_id == red.team_id
        and candidate.period == red.period
    )


class ReconciliationEngine:
    def __init__(
        self,
        match_id: str,
        settings: Settings | None = None,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.match_id = match_id
        self._settings = settings or get_settings()
        self._now = now
        self.timeline = Timeline()
        self.pending: dict[str, PendingAck] = {}
        self.undo_stack = UndoStack()
        self.duplicates = DuplicateTracker()
        self._undo_plans: dict[str, UndoPlan] = {}

    # ── Counters ────────────────────────────────────────────────────────
    @property
    def pending_count(self) -> int:
        return len(self.pending)

    @property
    def queued_count(self) -> int:
        """Entries recorded locally that are not on the wire."""
        return sum(
            1
            for e in self.timeline.ordered()
            if e.status == DeliveryStatus.PENDING and e.client_id not in self.pending
        )

    @property
    def rejected_count(self) -> int:
        return sum(1 for e in self.timeline.ordered() if e.status == DeliveryStatus.REJECTED)

    def _publish_gauges(self) -> None:
        PENDING_ACKS.set(self.pending_count)
        QUEUED_EVENTS.set(self.queued_count)

    def events(self) -> list[MatchEvent]:
        return self.timeline.events()

    def event(self, client_id: str) -> MatchEvent:
        entry = self.timeline.get(client_id)
        if entry is None:
            raise KeyError(client_id)
        return entry.event

    # ── Submission ──────────────────────────────────────────────────────
    def check_duplicate(self, draft: EventDraft) -> None:
        existing = find_local_duplicate(self.timeline, draft)
        if existing is None:
            return
        key = duplicate_key(draft)
        existing.duplicate_highlight = True
        self.duplicates.record("local", key, existing.client_id, existing.server_id, self._now())
        raise DuplicateEvent(key, existing.client_id, existing.server_id)

    def submit(
        self,
        draft: EventDraft,
        client_id: Optional[str] = None,
        check_duplicates: bool = True,
    ) -> str:
        """
        Optimistically append a draft. Raises DuplicateEvent when an entry with
        the same (team, type, period, clock) already exists.
        """
        if check_duplicates:
            self.check_duplicate(draft)
        requested = normalize_match_clock(draft.match_clock) or draft.match_clock
        clock = allocate_clock(requested, self.timeline.clocks_in_period(draft.period))
        event = MatchEvent(
            **draft.model_dump(exclude={"match_clock"}),
            match_clock=clock,
            client_id=client_id or str(uuid.uuid4()),
            match_id=self.match_id,
            timestamp=self._now(),
        )
        self.timeline.add(event, requested_clock=requested)
        self.undo_stack.push(event.client_id)
        EVENTS_SUBMITTED.labels(event_type=event.type.value).inc()
        logger.info(
            "event_submitted",
            client_id=event.client_id,
            event_type=event.type.value,
            period=event.period,
            match_clock=event.match_clock,
            shifted=clock != requested,
        )
        self._publish_gauges()
        return event.client_id

    def restore_queued(self, events: Iterable[MatchEvent]) -> list[str]:
        """Re-adopt events from the offline queue with their original identity."""
        restored = []
        for event in events:
            if event.client_id in self.timeline or self.timeline.get_by_server(event.server_id):
                continue
            self.timeline.add(event)
            self.undo_stack.push(event.client_id)
            restored.append(event.client_id)
        if restored:
            logger.info("offline_queue_restored", count=len(restored))
        self._publish_gauges()
        return restored

    def begin_send(self, client_id: str) -> MatchEvent:
        """Record a send attempt. The entry returns to pending until acknowledged."""
        entry = self.timeline.get(client_id)
        if entry is None:
            raise KeyError(client_id)
        entry.attempts += 1
        entry.status = DeliveryStatus.PENDING
        entry.reject_reason = None
        entry.field_errors = {}
        self.pending[client_id] = PendingAck(
            client_id=client_id, attempt_count=entry.attempts, sent_at=self._now()
        )
        self._publish_gauges()
        return entry.event

    def retry(self, client_id: str) -> MatchEvent:
        entry = self.timeline.get(client_id)
        if entry is None or entry.status == DeliveryStatus.CONFIRMED:
            raise KeyError(client_id)
        logger.info("event_retry", client_id=client_id, attempt=entry.attempts + 1)
        return self.begin_send(client_id)

    def resend_candidates(self) -> list[str]:
        """Queued and retryable-rejected entries in canonical order."""
        return [
            e.client_id
            for e in self.timeline.ordered()
            if e.client_id not in self.pending
            and (
                e.status == DeliveryStatus.PENDING
                or (e.status == DeliveryStatus.REJECTED and e.retryable)
            )
        ]

    # ── Acknowledgement ─────────────────────────────────────────────────
    def merge_ack(self, ack: Ack) -> AckOutcome:
        """Idempotent merge keyed by client_id; arrival order is irrelevant."""
        client_id = ack.client_id
        entry = self.timeline.get(client_id)
        ACKS.labels(status=ack.status.value).inc()

        if entry is None:
            self.pending.pop(client_id or "", None)
            logger.info("ack_for_unknown_event", client_id=client_id, status=ack.status.value)
            return AckOutcome(
                client_id=client_id,
                result="ignored",
                refresh_needed=ack.status == AckStatus.SUCCESS,
            )

        if ack.status == AckStatus.ERROR:
            self.reject(
                entry.client_id,
                ack.message or "Rejected by server",
                retryable=False,
                field_errors=ack.field_errors,
            )
            return AckOutcome(client_id=client_id, result="rejected")

        self.pending.pop(entry.client_id, None)

        if ack.status == AckStatus.DUPLICATE:
            return self._merge_duplicate(entry, ack)

        if ack.server_id:
            self.timeline.set_server_id(entry.client_id, ack.server_id)
        already = entry.status == DeliveryStatus.CONFIRMED
        entry.status = DeliveryStatus.CONFIRMED
        entry.reject_reason = None
        entry.field_errors = {}
        if not already:
            logger.info("ack_merged", client_id=entry.client_id, server_id=entry.server_id)
        self._publish_gauges()
        return AckOutcome(client_id=client_id, result="confirmed", settled=[entry.client_id])

    def _merge_duplicate(self, entry: TimelineEntry, ack: Ack) -> AckOutcome:
        existing_server_id = (ack.duplicate_of.server_id if ack.duplicate_of else None) or ack.server_id
        key = duplicate_key(entry.event, entry.effective_requested_clock)
        existing = self.timeline.get_by_server(existing_server_id)

        if existing is not None and existing.client_id != entry.client_id:
            # The canonical row is already visible; drop the optimistic copy
            self.timeline.remove(entry.client_id)
            self.undo_stack.remove(entry.client_id)
            existing.duplicate_highlight = True
            highlighted = existing.client_id
        else:
            if existing_server_id:
                self.timeline.set_server_id(entry.client_id, existing_server_id)
            # Mirrors an event this session did not create, so it is never an undo target
            self.undo_stack.remove(entry.client_id)
            entry.status = DeliveryStatus.CONFIRMED
            entry.duplicate_highlight = True
            highlighted = entry.client_id

        self.duplicates.record("server", key, highlighted, existing_server_id, self._now())
        self._publish_gauges()
        return AckOutcome(
            client_id=entry.client_id,
            result="duplicate",
            duplicate=DuplicateEvent(key, highlighted, existing_server_id),
            settled=[entry.client_id],
        )

    def reject(
        self,
        client_id: str,
        reason: str,
        retryable: bool = True,
        field_errors: Optional[dict[str, str]] = None,
    ) -> None:
        """The entry stays in the timeline until the operator deletes or retries it."""
        entry = self.timeline.get(client_id)
        self.pending.pop(client_id, None)
        if entry is None:
            return
        entry.status = DeliveryStatus.REJECTED
        entry.reject_reason = reason
        entry.retryable = retryable
        entry.field_errors = dict(field_errors or {})
        logger.warning(
            "event_rejected",
            client_id=client_id,
            reason=reason,
            retryable=retryable,
            fields=list(entry.field_errors),
        )
        self._publish_gauges()

    def expire_pending(self, now: Optional[datetime] = None) -> list[str]:
        now = now or self._now()
        cutoff = timedelta(seconds=self._settings.ack_timeout_s)
        expired = [cid for cid, p in self.pending.items() if now - p.sent_at >= cutoff]
        for client_id in expired:
            self.reject(client_id, "Acknowledgement timed out", retryable=True)
        return expired

    def flush_pending(self, reason: str = "Connection lost") -> list[str]:
        """On disconnect every in-flight send becomes a retryable rejection."""
        flushed = list(self.pending)
        for client_id in flushed:
            self.reject(client_id, reason, retryable=True)
        return flushed

    # ── Undo ────────────────────────────────────────────────────────────
    def _is_remote(self, entry: TimelineEntry) -> bool:
        return entry.server_id is not None or entry.client_id in self.pending

    def plan_undo(self, connected: bool) -> UndoPlan:
        """
        Pop the undo target (and its paired second yellow for an auto red).

        Local-only members are removed at once when nothing remote is involved;
        otherwise removal waits for every remote delete to be acknowledged.
        """
        top_id = self.undo_stack.peek()
        top = self.timeline.get(top_id)
        if top is None:
            if top_id is not None:
                self.undo_stack.pop()
            raise UndoUnavailable("Nothing to undo")

        members = [top]
        cascade = False
        if is_auto_red(top.event):
            below = self.timeline.get(self.undo_stack.peek(1))
            if below is not None and is_paired_second_yellow(top.event, below.event):
                members.append(below)
                cascade = True

        remote = [m.client_id for m in members if self._is_remote(m)]
        local = [m.client_id for m in members if not self._is_remote(m)]
        if remote and not connected:
            raise UndoUnavailable("Cannot undo a sent event while disconnected")

        for member in members:
            self.undo_stack.remove(member.client_id)

        plan = UndoPlan(members=members, remote=remote, local=local, cascade=cascade, awaiting=set(remote))
        mode = "cascade" if cascade else ("remote" if remote else "local")
        UNDO_OPERATIONS.labels(mode=mode).inc()
        logger.info("undo_planned", client_ids=plan.client_ids, mode=mode)

        if not remote:
            for client_id in local:
                self._drop(client_id)
        else:
            for client_id in remote:
                self._undo_plans[client_id] = plan
        self._publish_gauges()
        return plan

    def complete_undo(self, client_id: str) -> list[str]:
        """Acknowledge one remote delete. Returns the removed ids once the whole unit is done."""
        plan = self._undo_plans.pop(client_id, None)
        if plan is None:
            return []
        plan.awaiting.discard(client_id)
        if not plan.completed:
            return []
        for member_id in plan.client_ids:
            self._drop(member_id)
        logger.info("undo_completed", client_ids=plan.client_ids)
        self._publish_gauges()
        return plan.client_ids

    def fail_undo(self, client_id: str, reason: str) -> None:
        """A failed remote delete restores the whole unit to the undo stack."""
        plan = self._undo_plans.pop(client_id, None)
        if plan is None:
            return
        for other in plan.remote:
            self._undo_plans.pop(other, None)
        self.undo_stack.push_many(reversed(plan.client_ids))
        logger.warning("undo_failed", client_ids=plan.client_ids, reason=reason)

    def _drop(self, client_id: str) -> None:
        self.timeline.remove(client_id)
        self.pending.pop(client_id, None)
        self.undo_stack.remove(client_id)

    # ── Hydration and push ──────────────────────────────────────────────
    def hydrate(self, server_events: Iterable[MatchEvent]) -> None:
        """
        Last-write-wins replacement of confirmed state. Local entries that are
        still unconfirmed survive unless the server already has them.
        """
        previous = self.timeline
        self.timeline = Timeline()
        for event in server_events:
            prior = previous.find(event.client_id, event.server_id)
            entry = self.timeline.add(event, status=DeliveryStatus.CONFIRMED)
            if prior is not None:
                entry.requested_clock = prior.requested_clock
                entry.duplicate_highlight = prior.duplicate_highlight
                self.pending.pop(prior.client_id, None)
        for entry in previous.ordered():
            if entry.is_confirmed or entry.client_id in self.timeline:
                continue
            if self.timeline.get_by_server(entry.server_id):
                continue
            kept = self.timeline.add(entry.event, status=entry.status, requested_clock=entry.requested_clock)
            kept.attempts = entry.attempts
            kept.reject_reason = entry.reject_reason
            kept.retryable = entry.retryable
            kept.field_errors = entry.field_errors
        self.pending = {cid: p for cid, p in self.pending.items() if cid in self.timeline}
        self.undo_stack.retain(cid for cid in self.undo_stack.as_list() if cid in self.timeline)
        logger.info("timeline_hydrated", events=len(self.timeline), pending=self.pending_count)
        self._publish_gauges()

    def apply_remote_created(self, event: MatchEvent) -> None:
        entry = self.timeline.find(event.client_id, event.server_id)
        if entry is None:
            self.timeline.add(event, status=DeliveryStatus.CONFIRMED)
            logger.debug("remote_event_added", server_id=event.server_id)
        else:
            merged = event.model_copy(update={"client_id": entry.client_id})
            self.timeline.replace_event(entry.client_id, merged)
            entry.status = DeliveryStatus.CONFIRMED
            self.pending.pop(entry.client_id, None)
        self._publish_gauges()

    def apply_remote_deleted(self, server_id: Optional[str] = None, client_id: Optional[str] = None) -> Optional[str]:
        entry = self.timeline.find(client_id, server_id)
        if entry is None:
            return None
        self._drop(entry.client_id)
        self._publish_gauges()
        return entry.client_id

    def update_notes(self, client_id: str, notes: Optional[str]) -> MatchEvent:
        entry = self.timeline.get(client_id)
        if entry is None:
            raise KeyError(client_id)
        self.timeline.replace_event(client_id, entry.event.model_copy(update={"notes": notes}))
        return entry.event

    def remove(self, client_id: str) -> Optional[TimelineEntry]:
        """Operator/admin delete after the remote side (if any) succeeded."""
        entry = self.timeline.get(client_id)
        if entry is not None:
            self._drop(client_id)
            self._publish_gauges()
        return entry

    def clear(self) -> None:
        self.timeline.clear()
        self.pending.clear()
        self.undo_stack.clear()
        self.duplicates.reset()
        self._undo_plans.clear()
        self._publish_gauges()

    def cards(self) -> list[MatchEvent]:
        return [e for e in self.events() if e.type == EventType.CARD]

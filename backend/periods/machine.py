"""
Period State Machine.

Governs match-phase transitions: the allowed-transition table, minimum-duration
guards measured on global time from the phase's start anchor, optimistic
display with explicit confirmation/failure, and normalisation of degenerate
"phantom finished" matches.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from shared.config import Settings, get_settings
from shared.errors import InvalidTransition, TransitionGuardError
from shared.models.domain import ClockAnchors
from shared.models.enums import MatchPhase
from shared.utils.logging import get_logger

logger = get_logger(__name__)

P = MatchPhase

ALLOWED_TRANSITIONS: dict[MatchPhase, frozenset[MatchPhase]] = {
    P.PENDING: frozenset({P.LIVE_FIRST_HALF}),
    P.LIVE_FIRST_HALF: frozenset({P.HALFTIME}),
    P.HALFTIME: frozenset({P.LIVE_SECOND_HALF}),
    P.LIVE_SECOND_HALF: frozenset({P.FULLTIME}),
    P.FULLTIME: frozenset({P.LIVE_EXTRA_FIRST, P.PENALTIES, P.COMPLETED}),
    P.LIVE_EXTRA_FIRST: frozenset({P.EXTRA_HALFTIME}),
    P.EXTRA_HALFTIME: frozenset({P.LIVE_EXTRA_SECOND}),
    P.LIVE_EXTRA_SECOND: frozenset({P.PENALTIES, P.COMPLETED}),
    P.PENALTIES: frozenset({P.COMPLETED}),
    P.COMPLETED: frozenset(),
    P.ABANDONED: frozenset(),
}

REGULATION_HALVES = frozenset({P.LIVE_FIRST_HALF, P.LIVE_SECOND_HALF})
EXTRA_HALVES = frozenset({P.LIVE_EXTRA_FIRST, P.LIVE_EXTRA_SECOND})

# Global seconds at which each live phase nominally starts, used when no anchor was recorded
NOMINAL_PHASE_START_S: dict[MatchPhase, float] = {
    P.LIVE_FIRST_HALF: 0.0,
    P.LIVE_SECOND_HALF: 45 * 60.0,
    P.LIVE_EXTRA_FIRST: 90 * 60.0,
    P.LIVE_EXTRA_SECOND: 105 * 60.0,
}

DEFAULT_PERIOD_MAP: dict[MatchPhase, int] = {
    P.PENDING: 1,
    P.LIVE_FIRST_HALF: 1,
    P.HALFTIME: 1,
    P.LIVE_SECOND_HALF: 2,
    P.FULLTIME: 2,
    P.COMPLETED: 2,
    P.ABANDONED: 1,
    P.LIVE_EXTRA_FIRST: 3,
    P.EXTRA_HALFTIME: 3,
    P.LIVE_EXTRA_SECOND: 4,
    P.PENALTIES: 5,
}

# Effective seconds at which a live regulation half runs into added time
REGULATION_END_S: dict[MatchPhase, float] = {
    P.LIVE_FIRST_HALF: 45 * 60.0,
    P.LIVE_SECOND_HALF: 90 * 60.0,
}


def period_for(phase: MatchPhase) -> int:
    return DEFAULT_PERIOD_MAP.get(phase, 1)


def allowed_targets(current: MatchPhase) -> frozenset[MatchPhase]:
    return ALLOWED_TRANSITIONS.get(current, frozenset())


def can_transition(current: MatchPhase, target: MatchPhase) -> bool:
    return target in allowed_targets(current)


def minimum_duration_s(phase: MatchPhase, settings: Settings | None = None) -> float:
    """Minimum global time a live phase must run before it can be left. 0 when unguarded."""
    settings = settings or get_settings()
    if phase in REGULATION_HALVES:
        return float(settings.regulation_half_min_s)
    if phase in EXTRA_HALVES:
        return float(settings.extra_half_min_s)
    return 0.0


def check_transition(
    current: MatchPhase,
    target: MatchPhase,
    phase_elapsed_s: float,
    *,
    bypass_guards: bool = False,
    settings: Settings | None = None,
) -> None:
    """
    Raise InvalidTransition or TransitionGuardError when `current -> target`
    is not permitted after `phase_elapsed_s` seconds of global time in `current`.
    """
    if not can_transition(current, target):
        raise InvalidTransition(current.value, target.value)
    if bypass_guards:
        return
    remaining = minimum_duration_s(current, settings) - max(0.0, phase_elapsed_s)
    if remaining > 0:
        raise TransitionGuardError(current.value, target.value, remaining)


def is_degenerate(anchors: ClockAnchors) -> bool:
    return (
        anchors.accumulated_effective_s <= 0
        and anchors.accumulated_ineffective_s <= 0
        and anchors.period_start_anchor is None
    )


def normalize_phase(status: Optional[str], anchors: ClockAnchors) -> MatchPhase:
    """
    Resolve a stored status. A match with no accumulated time and no period
    anchor is Pending even if it claims to be finished (state left by a hard reset).
    """
    phase = MatchPhase.parse(status)
    if phase in (P.FULLTIME, P.COMPLETED) and is_degenerate(anchors):
        logger.info("phase_normalized_to_pending", stored_status=status)
        return P.PENDING
    return phase


@dataclass(frozen=True)
class AddedTimeInfo:
    phase: MatchPhase
    regulation_end_s: float
    added_s: float

    @property
    def alert(self) -> bool:
        return self.added_s > 0

    def to_dict(self) -> dict[str, object]:
        return {
            "phase": self.phase.value,
            "regulation_end_s": self.regulation_end_s,
            "added_s": round(self.added_s, 3),
            "alert": self.alert,
        }


def added_time_info(phase: MatchPhase, effective_s: float) -> Optional[AddedTimeInfo]:
    end = REGULATION_END_S.get(phase)
    if end is None:
        return None
    return AddedTimeInfo(phase=phase, regulation_end_s=end, added_s=max(0.0, effective_s - end))


class PeriodStateMachine:
    """
    Tracks the confirmed phase (from the server) and the displayed phase
    (optimistic). A failed confirmation keeps the displayed phase and exposes
    the failed target for retry instead of silently reverting.
    """

    def __init__(
        self,
        phase: MatchPhase = P.PENDING,
        settings: Settings | None = None,
        bypass_guards: bool | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self.bypass_guards = (
            self._settings.bypass_transition_guards if bypass_guards is None else bypass_guards
        )
        self.confirmed: MatchPhase = phase
        self.displayed: MatchPhase = phase
        self.in_flight: Optional[MatchPhase] = None
        self.failed_target: Optional[MatchPhase] = None
        self.last_error: Optional[str] = None
        self.phase_starts: dict[MatchPhase, float] = {}

    @property
    def current(self) -> MatchPhase:
        return self.displayed

    @property
    def period(self) -> int:
        return period_for(self.displayed)

    @property
    def needs_retry(self) -> bool:
        return self.failed_target is not None

    def phase_start_s(self, phase: MatchPhase) -> float:
        recorded = self.phase_starts.get(phase)
        if recorded is not None:
            return recorded
        return NOMINAL_PHASE_START_S.get(phase, 0.0)

    def period_stamp(self, phase: MatchPhase) -> dict[str, dict[str, Any]]:
        """`period_timestamps` fragment recording where `phase` began on the global clock."""
        start = self.phase_starts.get(phase)
        if start is None:
            return {}
        return {str(period_for(phase)): {"start_global_s": start}}

    def restore_phase_starts(self, period_timestamps: dict[str, Any]) -> None:
        """
        Rebuild phase starts after a reload. Starts recorded by this process win;
        periods without a global-clock stamp keep the nominal start.
        """
        for phase in NOMINAL_PHASE_START_S:
            stamp = period_timestamps.get(str(period_for(phase)))
            if not isinstance(stamp, dict):
                continue
            start = stamp.get("start_global_s")
            if isinstance(start, (int, float)) and not isinstance(start, bool):
                self.phase_starts.setdefault(phase, float(start))

    def phase_elapsed_s(self, global_s: float) -> float:
        return max(0.0, global_s - self.phase_start_s(self.displayed))

    def remaining_s(self, global_s: float) -> float:
        """Seconds until the current phase may be left. 0 when already allowed."""
        if self.bypass_guards:
            return 0.0
        return max(0.0, minimum_duration_s(self.displayed, self._settings) - self.phase_elapsed_s(global_s))

    def begin(self, target: MatchPhase, global_s: float) -> MatchPhase:
        """Validate and optimistically display `target`. Returns the phase being left."""
        if self.in_flight is not None and self.in_flight != target:
            raise InvalidTransition(self.in_flight.value, target.value)
        previous = self.displayed
        check_transition(
            previous,
            target,
            self.phase_elapsed_s(global_s),
            bypass_guards=self.bypass_guards,
            settings=self._settings,
        )
        self.displayed = target
        self.in_flight = target
        self.failed_target = None
        self.last_error = None
        if target.is_live:
            self.phase_starts[target] = global_s
        logger.info("transition_started", previous=previous.value, target=target.value)
        return previous

    def confirm(self, target: MatchPhase) -> None:
        self.confirmed = target
        if self.in_flight == target:
            self.in_flight = None
        if self.failed_target == target:
            self.failed_target = None
            self.last_error = None
        logger.info("transition_confirmed", phase=target.value)

    def fail(self, target: MatchPhase, error: str) -> None:
        self.in_flight = None
        self.failed_target = target
        self.last_error = error
        logger.warning("transition_failed", target=target.value, error=error)

    def begin_retry(self) -> MatchPhase:
        if self.failed_target is None:
            raise InvalidTransition(self.displayed.value, self.displayed.value)
        target = self.failed_target
        self.in_flight = target
        return target

    def sync(self, phase: MatchPhase) -> None:
        """Adopt a server-confirmed phase. An in-flight or failed transition keeps its display."""
        self.confirmed = phase
        if phase in (self.in_flight, self.failed_target):
            self.in_flight = None
            self.failed_target = None
            self.last_error = None
        if self.in_flight is None and self.failed_target is None:
            self.displayed = phase

    def reset(self) -> None:
        self.confirmed = self.displayed = P.PENDING
        self.in_flight = None
        self.failed_target = None
        self.last_error = None
        self.phase_starts.clear()

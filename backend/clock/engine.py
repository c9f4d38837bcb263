"""
Clock Engine.

Every reading is a pure function of (anchors, now). One formula is used for
every running clock:

    accumulated_at_toggle + max(0, delta_since_toggle - paused_during_active)

For the effective/ineffective clocks `paused_during_active` is the VAR time
accrued since the main anchor; for the VAR overlay it is the VAR-specific
paused seconds. A missing or future anchor reads as "paused at accumulated".
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from shared.models.domain import ClockAnchors, ClockReadingView, as_utc
from shared.models.enums import ClockMode, MatchPhase

from clock.formatting import format_display, format_seconds


@dataclass(frozen=True)
class ClockReading:
    effective_s: float
    ineffective_s: float
    var_s: float
    is_running: bool
    mode: ClockMode
    var_active: bool
    var_paused: bool

    @property
    def global_s(self) -> float:
        return self.effective_s + self.ineffective_s + self.var_s

    @property
    def match_clock(self) -> str:
        """Global time as an event clock string; it keeps advancing through stoppages."""
        return format_seconds(self.global_s)

    def view(self) -> ClockReadingView:
        return ClockReadingView(
            effective=format_display(self.effective_s),
            ineffective=format_display(self.ineffective_s),
            var=format_display(self.var_s),
            global_clock=format_display(self.global_s),
            effective_s=round(self.effective_s, 3),
            is_running=self.is_running,
            mode=self.mode,
            var_active=self.var_active,
        )


def _elapsed(start: Optional[datetime], now: datetime) -> Optional[float]:
    if start is None:
        return None
    return max(0.0, (as_utc(now) - as_utc(start)).total_seconds())


def _running_total(accumulated: float, delta: Optional[float], paused: float) -> float:
    if delta is None:
        return accumulated
    return accumulated + max(0.0, delta - max(0.0, paused))


# ── Readings ────────────────────────────────────────────────────────────
def var_paused_total(anchors: ClockAnchors, now: datetime) -> float:
    open_pause = _elapsed(anchors.var_pause_started_at, now) if anchors.var_paused else None
    return max(0.0, anchors.var_paused_seconds + (open_pause or 0.0))


def var_seconds(anchors: ClockAnchors, now: datetime) -> float:
    """VAR overlay. Advances while VAR is active even if the main clock is stopped."""
    if not anchors.var_active:
        return anchors.accumulated_var_s
    return _running_total(
        anchors.accumulated_var_s,
        _elapsed(anchors.var_anchor, now),
        var_paused_total(anchors, now),
    )


def _main_delta(anchors: ClockAnchors, now: datetime) -> float:
    """Seconds the running main clock has advanced since its anchor."""
    if not anchors.is_running:
        return 0.0
    delta = _elapsed(anchors.period_start_anchor, now)
    if delta is None:
        return 0.0
    var_since_anchor = var_seconds(anchors, now) - anchors.var_seconds_at_anchor
    return _running_total(0.0, delta, var_since_anchor)


def effective_seconds(anchors: ClockAnchors, now: datetime) -> float:
    if anchors.clock_mode != ClockMode.EFFECTIVE:
        return anchors.accumulated_effective_s
    return anchors.accumulated_effective_s + _main_delta(anchors, now)


def ineffective_seconds(anchors: ClockAnchors, now: datetime) -> float:
    if anchors.clock_mode != ClockMode.INEFFECTIVE:
        return anchors.accumulated_ineffective_s
    return anchors.accumulated_ineffective_s + _main_delta(anchors, now)


def read_clock(
    anchors: ClockAnchors, now: datetime, phase: Optional[MatchPhase] = None
) -> ClockReading:
    """Full reading. The main clock is stopped outside live phases."""
    stopped_by_phase = phase is not None and not phase.is_live
    effective_anchors = anchors.model_copy(update={"is_running": False}) if stopped_by_phase else anchors
    return ClockReading(
        effective_s=effective_seconds(effective_anchors, now),
        ineffective_s=ineffective_seconds(effective_anchors, now),
        var_s=var_seconds(anchors, now),
        is_running=effective_anchors.is_running and effective_anchors.period_start_anchor is not None,
        mode=anchors.clock_mode,
        var_active=anchors.var_active,
        var_paused=anchors.var_paused,
    )


# ── Anchor operations ───────────────────────────────────────────────────
def _fold_main(anchors: ClockAnchors, now: datetime) -> dict[str, float]:
    return {
        "accumulated_effective_s": effective_seconds(anchors, now),
        "accumulated_ineffective_s": ineffective_seconds(anchors, now),
    }


def start_clock(anchors: ClockAnchors, now: datetime) -> ClockAnchors:
    if anchors.is_running and anchors.period_start_anchor is not None:
        return anchors
    return anchors.model_copy(
        update={
            "is_running": True,
            "period_start_anchor": as_utc(now),
            "var_seconds_at_anchor": var_seconds(anchors, now),
        }
    )


def stop_clock(anchors: ClockAnchors, now: datetime) -> ClockAnchors:
    if not anchors.is_running:
        return anchors
    return anchors.model_copy(
        update={**_fold_main(anchors, now), "is_running": False, "period_start_anchor": None}
    )


def switch_mode(anchors: ClockAnchors, mode: ClockMode, now: datetime) -> ClockAnchors:
    """EFFECTIVE and INEFFECTIVE are exclusive; the running side is folded before switching."""
    if anchors.clock_mode == mode:
        return anchors
    update: dict[str, object] = {**_fold_main(anchors, now), "clock_mode": mode}
    if anchors.is_running:
        update["period_start_anchor"] = as_utc(now)
        update["var_seconds_at_anchor"] = var_seconds(anchors, now)
    return anchors.model_copy(update=update)


def var_start(anchors: ClockAnchors, now: datetime) -> ClockAnchors:
    if anchors.var_active:
        return anchors
    return anchors.model_copy(
        update={
            "var_active": True,
            "var_anchor": as_utc(now),
            "var_paused": False,
            "var_paused_seconds": 0.0,
            "var_pause_started_at": None,
        }
    )


def var_stop(anchors: ClockAnchors, now: datetime) -> ClockAnchors:
    if not anchors.var_active:
        return anchors
    return anchors.model_copy(
        update={
            "accumulated_var_s": var_seconds(anchors, now),
            "var_active": False,
            "var_anchor": None,
            "var_paused": False,
            "var_paused_seconds": 0.0,
            "var_pause_started_at": None,
        }
    )


def var_pause(anchors: ClockAnchors, now: datetime) -> ClockAnchors:
    if not anchors.var_active or anchors.var_paused:
        return anchors
    return anchors.model_copy(update={"var_paused": True, "var_pause_started_at": as_utc(now)})


def var_resume(anchors: ClockAnchors, now: datetime) -> ClockAnchors:
    if not anchors.var_active or not anchors.var_paused:
        return anchors
    return anchors.model_copy(
        update={
            "var_paused": False,
            "var_paused_seconds": var_paused_total(anchors, now),
            "var_pause_started_at": None,
        }
    )

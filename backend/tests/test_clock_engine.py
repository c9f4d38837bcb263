"""
Unit tests for the clock engine: readings as a pure function of anchors and
time, VAR overlay and pauses, mode switches.

Run: pytest backend/tests/test_clock_engine.py -v
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from clock import engine as clock
from shared.models.domain import ClockAnchors
from shared.models.enums import ClockMode, MatchPhase

T0 = datetime(2026, 5, 2, 15, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def running(accumulated: float = 0.0, **extra: object) -> ClockAnchors:
    return ClockAnchors(
        is_running=True,
        accumulated_effective_s=accumulated,
        period_start_anchor=T0,
        **extra,
    )


# ── Readings ────────────────────────────────────────────────────────────

class TestEffectiveSeconds:

    def test_running_clock_adds_elapsed(self) -> None:
        assert clock.effective_seconds(running(100.0), at(30)) == pytest.approx(130.0)

    def test_stopped_clock_reads_accumulated(self) -> None:
        anchors = ClockAnchors(accumulated_effective_s=100.0, period_start_anchor=T0)
        assert clock.effective_seconds(anchors, at(300)) == pytest.approx(100.0)

    def test_missing_anchor_reads_accumulated(self) -> None:
        anchors = ClockAnchors(is_running=True, accumulated_effective_s=42.0)
        assert clock.effective_seconds(anchors, at(300)) == pytest.approx(42.0)

    def test_future_anchor_reads_accumulated(self) -> None:
        anchors = ClockAnchors(is_running=True, accumulated_effective_s=42.0, period_start_anchor=at(60))
        assert clock.effective_seconds(anchors, at(10)) == pytest.approx(42.0)

    def test_naive_anchor_treated_as_utc(self) -> None:
        anchors = ClockAnchors(is_running=True, period_start_anchor=T0.replace(tzinfo=None))
        assert clock.effective_seconds(anchors, at(5)) == pytest.approx(5.0)

    def test_ineffective_mode_freezes_effective(self) -> None:
        anchors = running(100.0, clock_mode=ClockMode.INEFFECTIVE, accumulated_ineffective_s=10.0)
        assert clock.effective_seconds(anchors, at(30)) == pytest.approx(100.0)
        assert clock.ineffective_seconds(anchors, at(30)) == pytest.approx(40.0)


class TestVarOverlay:

    def test_var_time_is_subtracted_from_main_clock(self) -> None:
        anchors = running(100.0, var_active=True, var_anchor=at(10))
        assert clock.var_seconds(anchors, at(30)) == pytest.approx(20.0)
        assert clock.effective_seconds(anchors, at(30)) == pytest.approx(110.0)

    def test_var_advances_while_main_clock_stopped(self) -> None:
        anchors = ClockAnchors(accumulated_effective_s=100.0, var_active=True, var_anchor=T0)
        assert clock.var_seconds(anchors, at(45)) == pytest.approx(45.0)
        assert clock.effective_seconds(anchors, at(45)) == pytest.approx(100.0)

    def test_var_pause_resumes_main_clock(self) -> None:
        anchors = running(
            100.0,
            var_active=True,
            var_anchor=at(10),
            var_paused=True,
            var_pause_started_at=at(20),
        )
        assert clock.var_seconds(anchors, at(30)) == pytest.approx(10.0)
        assert clock.effective_seconds(anchors, at(30)) == pytest.approx(120.0)

    def test_inactive_var_reads_accumulated(self) -> None:
        anchors = ClockAnchors(accumulated_var_s=75.0)
        assert clock.var_seconds(anchors, at(500)) == pytest.approx(75.0)


class TestReadClock:

    def test_global_is_sum_of_components(self) -> None:
        anchors = ClockAnchors(
            accumulated_effective_s=600.0,
            accumulated_ineffective_s=120.0,
            accumulated_var_s=30.0,
        )
        reading = clock.read_clock(anchors, at(0))
        assert reading.global_s == pytest.approx(750.0)
        assert reading.match_clock == "12:30.000"

    def test_non_live_phase_stops_main_clock(self) -> None:
        reading = clock.read_clock(running(100.0), at(60), MatchPhase.HALFTIME)
        assert reading.effective_s == pytest.approx(100.0)
        assert reading.is_running is False

    def test_live_phase_keeps_running(self) -> None:
        reading = clock.read_clock(running(100.0), at(60), MatchPhase.LIVE_FIRST_HALF)
        assert reading.effective_s == pytest.approx(160.0)
        assert reading.is_running is True

    def test_view_formats_without_millis(self) -> None:
        view = clock.read_clock(ClockAnchors(accumulated_effective_s=723.9), at(0)).view()
        assert view.effective == "12:03"
        assert view.global_clock == "12:03"
        assert view.effective_s == pytest.approx(723.9)


# ── Anchor operations ───────────────────────────────────────────────────

class TestAnchorOperations:

    def test_start_then_stop_folds_elapsed(self) -> None:
        started = clock.start_clock(ClockAnchors(accumulated_effective_s=10.0), at(0))
        stopped = clock.stop_clock(started, at(50))
        assert stopped.is_running is False
        assert stopped.period_start_anchor is None
        assert stopped.accumulated_effective_s == pytest.approx(60.0)

    def test_start_is_idempotent(self) -> None:
        started = clock.start_clock(ClockAnchors(), at(0))
        assert clock.start_clock(started, at(20)) is started

    def test_stop_is_idempotent(self) -> None:
        anchors = ClockAnchors(accumulated_effective_s=5.0)
        assert clock.stop_clock(anchors, at(20)) is anchors

    def test_switch_mode_moves_time_to_other_side(self) -> None:
        switched = clock.switch_mode(running(0.0), ClockMode.INEFFECTIVE, at(60))
        assert switched.clock_mode == ClockMode.INEFFECTIVE
        assert switched.accumulated_effective_s == pytest.approx(60.0)
        assert switched.period_start_anchor == at(60)
        assert clock.ineffective_seconds(switched, at(90)) == pytest.approx(30.0)
        assert clock.effective_seconds(switched, at(90)) == pytest.approx(60.0)

    def test_switch_to_same_mode_is_noop(self) -> None:
        anchors = running()
        assert clock.switch_mode(anchors, ClockMode.EFFECTIVE, at(10)) is anchors

    def test_var_start_stop_accumulates(self) -> None:
        started = clock.var_start(ClockAnchors(accumulated_var_s=5.0), at(0))
        stopped = clock.var_stop(started, at(40))
        assert stopped.var_active is False
        assert stopped.accumulated_var_s == pytest.approx(45.0)

    def test_var_pause_resume_excludes_paused_time(self) -> None:
        anchors = clock.var_start(ClockAnchors(), at(0))
        anchors = clock.var_pause(anchors, at(10))
        anchors = clock.var_resume(anchors, at(25))
        assert anchors.var_paused_seconds == pytest.approx(15.0)
        assert clock.var_seconds(anchors, at(30)) == pytest.approx(15.0)

    def test_var_pause_requires_active_var(self) -> None:
        anchors = ClockAnchors()
        assert clock.var_pause(anchors, at(0)) is anchors
        assert clock.var_resume(anchors, at(0)) is anchors

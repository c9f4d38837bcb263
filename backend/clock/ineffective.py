"""
Ineffective-time breakdown derived from GameStoppage events.

Stoppage seconds are attributed per team (home/away/neutral) and per trigger
action. VAR windows always count as neutral and pause any running stoppage,
which resumes when VAR stops. Open windows accrue up to `now`.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from shared.models.domain import MatchEvent, as_utc
from shared.models.enums import EventType, IneffectiveAction, StoppageType

TEAM_KEYS = ("home", "away", "neutral")

# Checked in order; the first keyword contained in the normalised trigger wins
_ACTION_KEYWORDS: tuple[tuple[str, IneffectiveAction], ...] = (
    ("goal", IneffectiveAction.GOAL),
    ("out", IneffectiveAction.OUT_OF_BOUNDS),
    ("card", IneffectiveAction.CARD),
    ("foul", IneffectiveAction.FOUL),
    ("offside", IneffectiveAction.OFFSIDE),
    ("sub", IneffectiveAction.SUBSTITUTION),
    ("injury", IneffectiveAction.INJURY),
    ("var", IneffectiveAction.VAR),
)


def normalize_ineffective_action(raw: Optional[str]) -> IneffectiveAction:
    normalized = re.sub(r"[^a-z]+", "", str(raw or "").lower())
    if not normalized:
        return IneffectiveAction.OTHER
    for keyword, action in _ACTION_KEYWORDS:
        if keyword in normalized:
            return action
    return IneffectiveAction.OTHER


@dataclass
class ActiveStoppage:
    team_key: str
    action: IneffectiveAction
    started_at: datetime


@dataclass
class IneffectiveBreakdown:
    totals: dict[str, float] = field(default_factory=lambda: {k: 0.0 for k in TEAM_KEYS})
    by_action: dict[IneffectiveAction, dict[str, float]] = field(
        default_factory=lambda: {a: {k: 0.0 for k in TEAM_KEYS} for a in IneffectiveAction}
    )
    active: Optional[ActiveStoppage] = None
    var_started_at: Optional[datetime] = None

    def add(self, team_key: str, action: IneffectiveAction, seconds: float) -> None:
        if seconds <= 0:
            return
        self.totals[team_key] += seconds
        self.by_action[action][team_key] += seconds

    def to_dict(self) -> dict[str, object]:
        return {
            "totals": {k: round(v, 3) for k, v in self.totals.items()},
            "by_action": {
                a.value: {k: round(v, 3) for k, v in teams.items()}
                for a, teams in self.by_action.items()
            },
            "active": (
                {
                    "team_key": self.active.team_key,
                    "action": self.active.action.value,
                    "started_at": self.active.started_at.isoformat(),
                }
                if self.active
                else None
            ),
            "var_active": self.var_started_at.isoformat() if self.var_started_at else None,
        }


def _team_key(event: MatchEvent, home_team_id: str, away_team_id: str, action: IneffectiveAction) -> str:
    if action == IneffectiveAction.VAR:
        return "neutral"
    trigger = str(event.data.get("trigger_team_id") or event.team_id or "").lower()
    if trigger == str(away_team_id).lower():
        return "away"
    if trigger == str(home_team_id).lower():
        return "home"
    if trigger == "neutral":
        return "neutral"
    return "home"


def compute_ineffective_breakdown(
    events: Iterable[MatchEvent],
    home_team_id: str,
    away_team_id: str,
    now: datetime,
) -> IneffectiveBreakdown:
    breakdown = IneffectiveBreakdown()
    now = as_utc(now)

    stoppages = [
        (index, event)
        for index, event in enumerate(events)
        if event.type == EventType.GAME_STOPPAGE and isinstance(event.data.get("stoppage_type"), str)
    ]
    stoppages.sort(key=lambda pair: (pair[1].timestamp, pair[0]))

    paused_by_var: Optional[tuple[str, IneffectiveAction]] = None

    for _, event in stoppages:
        stoppage_type = event.data["stoppage_type"]
        at = event.timestamp

        if stoppage_type == StoppageType.VAR_START.value:
            if breakdown.active is not None:
                active = breakdown.active
                breakdown.add(active.team_key, active.action, (at - active.started_at).total_seconds())
                paused_by_var = (active.team_key, active.action)
                breakdown.active = None
            breakdown.var_started_at = at
            continue

        if stoppage_type == StoppageType.VAR_STOP.value:
            if breakdown.var_started_at is not None:
                breakdown.add(
                    "neutral", IneffectiveAction.VAR, (at - breakdown.var_started_at).total_seconds()
                )
            breakdown.var_started_at = None
            if breakdown.active is None and paused_by_var is not None:
                breakdown.active = ActiveStoppage(paused_by_var[0], paused_by_var[1], at)
            paused_by_var = None
            continue

        action = normalize_ineffective_action(
            event.data.get("trigger_action") or event.data.get("reason")
        )
        team_key = _team_key(event, home_team_id, away_team_id, action)

        if stoppage_type == StoppageType.CLOCK_STOP.value:
            breakdown.active = ActiveStoppage(team_key, action, at)
            paused_by_var = None
        elif stoppage_type == StoppageType.CLOCK_START.value:
            if breakdown.active is not None:
                active = breakdown.active
                breakdown.add(active.team_key, active.action, (at - active.started_at).total_seconds())
            breakdown.active = None
            paused_by_var = None

    if breakdown.active is not None:
        active = breakdown.active
        breakdown.add(active.team_key, active.action, (now - active.started_at).total_seconds())
    if breakdown.var_started_at is not None:
        breakdown.add("neutral", IneffectiveAction.VAR, (now - breakdown.var_started_at).total_seconds())

    return breakdown

"""
Turbo input: single-line event entry for fast operators.

Grammar: [h|a]? <jersey 1-99> <action code> <outcome #>? ([r>-] [h|a]? <jersey>)?

    "h10p1>7"  home #10, Pass, Complete, to #7
    "a9d2"     away #9, Duel, Lost
    "h4f"      home #4, Foul

Keystrokes are debounced by RapidInputBuffer: a complete entry is committed
after `rapid_input_buffer_s` of inactivity or on an explicit commit.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from shared.config import get_settings
from shared.models.domain import MatchSnapshot, PlayerRef, TeamRoster
from shared.utils.logging import get_logger

from flow.taxonomy import ACTION_FLOWS

logger = get_logger(__name__)

TURBO_ACTION_CODES: dict[str, str] = {
    "p": "Pass",
    "s": "Shot",
    "d": "Duel",
    "f": "Foul",
    "y": "Card",
    "i": "Interception",
    "c": "Clearance",
    "b": "Block",
    "r": "Recovery",
    "o": "Offside",
    "a": "Carry",
    "k": "Corner",
    "e": "Free Kick",
    "t": "Throw-in",
    "g": "Goal Kick",
    "n": "Penalty",
    "v": "Save",
    "l": "Claim",
    "u": "Punch",
    "m": "Smother",
    "x": "Substitution",
}

ACTION_TO_TURBO_CODE = {action: code for code, action in TURBO_ACTION_CODES.items()}

TURBO_OUTCOME_CODES: dict[str, dict[int, str]] = {
    "Pass": {1: "Complete", 2: "Incomplete", 3: "Out", 4: "Pass Offside"},
    "Shot": {1: "Goal", 2: "OnTarget", 3: "OffTarget", 4: "Blocked", 5: "Post", 6: "Saved"},
    "Duel": {1: "Won", 2: "Lost", 3: "Success (Dispossessed)"},
    "Foul": {1: "Standard", 2: "Advantage", 3: "Penalty"},
    "Card": {1: "Yellow", 2: "Red", 3: "Yellow (Second)"},
    "Interception": {1: "Success", 2: "Lost"},
    "Clearance": {1: "Success", 2: "Failed"},
    "Block": {1: "Success"},
    "Recovery": {1: "Interception", 2: "Tackle", 3: "Aerial", 4: "Loose Ball"},
    "Offside": {1: "Standard"},
    "Carry": {1: "Successful", 2: "Dispossessed"},
    "Corner": {1: "Complete", 2: "Incomplete"},
    "Free Kick": {1: "Complete", 2: "Incomplete", 3: "Shot"},
    "Throw-in": {1: "Complete", 2: "Incomplete"},
    "Goal Kick": {1: "Complete", 2: "Incomplete"},
    "Penalty": {1: "Goal", 2: "Saved", 3: "Missed"},
    "Save": {1: "Success", 2: "Failed"},
    "Claim": {1: "Success", 2: "Failed"},
    "Punch": {1: "Success", 2: "Failed"},
    "Smother": {1: "Success", 2: "Failed"},
    "Substitution": {},
}

RECIPIENT_MARKERS = frozenset("r>-")
TEAM_PREFIXES = {"h": "home", "a": "away"}


@dataclass
class TurboPartial:
    has_team: bool = False
    has_jersey: bool = False
    has_action: bool = False
    has_outcome: bool = False
    has_recipient: bool = False


@dataclass
class TurboParseResult:
    valid: bool
    team_prefix: Optional[str] = None
    jersey_number: Optional[int] = None
    action: Optional[str] = None
    outcome: Optional[str] = None
    outcome_index: Optional[int] = None
    recipient_number: Optional[int] = None
    recipient_team_prefix: Optional[str] = None
    requires_recipient: bool = False
    error: Optional[str] = None
    partial: TurboPartial = field(default_factory=TurboPartial)


def _requires_outcome(action: str) -> bool:
    # Only actions that name their own flow group demand an outcome code
    flow = ACTION_FLOWS.get(action)
    return bool(flow and flow.outcomes.get(action))


def _take_digits(text: str, pos: int) -> tuple[str, int]:
    start = pos
    while pos < len(text) and text[pos].isdigit():
        pos += 1
    return text[start:pos], pos


def _team_prefix_at(text: str, pos: int) -> Optional[str]:
    if pos + 1 < len(text) and text[pos] in TEAM_PREFIXES and text[pos + 1].isdigit():
        return TEAM_PREFIXES[text[pos]]
    return None


def parse_turbo_input(raw: Optional[str]) -> TurboParseResult:
    text = (raw or "").strip().lower()
    partial = TurboPartial()
    if not text:
        return TurboParseResult(valid=False, error="Empty input", partial=partial)

    pos = 0
    team_prefix = _team_prefix_at(text, 0)
    if team_prefix:
        pos = 1
        partial.has_team = True

    jersey_str, pos = _take_digits(text, pos)
    if not jersey_str:
        error = "Missing jersey number after team prefix" if team_prefix else "Type team (h/a) + jersey number"
        return TurboParseResult(valid=False, team_prefix=team_prefix, error=error, partial=partial)

    jersey = int(jersey_str)
    partial.has_jersey = True
    result = TurboParseResult(valid=False, team_prefix=team_prefix, jersey_number=jersey, partial=partial)
    if not 1 <= jersey <= 99:
        result.error = "Jersey number must be 1-99"
        return result

    if pos >= len(text):
        result.error = "Add action code (p=Pass, s=Shot, d=Duel...)"
        return result

    code = text[pos]
    action = TURBO_ACTION_CODES.get(code)
    if action is None:
        result.error = f'Unknown action: "{code}"'
        return result
    pos += 1
    partial.has_action = True
    result.action = action

    outcome_str, pos = _take_digits(text, pos)
    if outcome_str:
        index = int(outcome_str)
        outcome = TURBO_OUTCOME_CODES.get(action, {}).get(index)
        if outcome is None:
            result.error = f"Invalid outcome {index} for {action}"
            return result
        result.outcome = outcome
        result.outcome_index = index
        partial.has_outcome = True

    if pos < len(text) and text[pos] in RECIPIENT_MARKERS:
        pos += 1
        result.recipient_team_prefix = _team_prefix_at(text, pos)
        if result.recipient_team_prefix:
            pos += 1
        recipient_str, pos = _take_digits(text, pos)
        if not recipient_str:
            result.error = "Add recipient jersey number after >, -, or r"
            return result
        result.recipient_number = int(recipient_str)
        partial.has_recipient = True

    if pos < len(text):
        result.error = f'Unexpected: "{text[pos:]}"'
        return result

    if _requires_outcome(action) and result.outcome is None:
        options = ", ".join(f"{n}={label}" for n, label in TURBO_OUTCOME_CODES.get(action, {}).items())
        result.error = f"{action} needs outcome: {options}"
        return result

    result.requires_recipient = action == "Pass"
    if result.requires_recipient and result.recipient_number is None:
        result.error = "Pass needs a recipient (add >#) before logging"
        return result

    result.valid = True
    return result


@dataclass(frozen=True)
class TurboResolution:
    team: TeamRoster
    player: PlayerRef
    recipient: Optional[PlayerRef] = None


def find_player_by_jersey(
    match: MatchSnapshot, jersey_number: int, team_prefix: Optional[str] = None
) -> Optional[tuple[TeamRoster, PlayerRef]]:
    """Search the prefixed team, or home then away when no prefix is given."""
    if team_prefix == "home":
        teams = [match.home_team]
    elif team_prefix == "away":
        teams = [match.away_team]
    else:
        teams = [match.home_team, match.away_team]
    for team in teams:
        player = team.find_by_jersey(jersey_number)
        if player is not None:
            return team, player
    return None


def duplicate_jerseys(match: MatchSnapshot) -> list[int]:
    home = {p.jersey_number for p in match.home_team.players}
    return [p.jersey_number for p in match.away_team.players if p.jersey_number in home]


def resolve_turbo(result: TurboParseResult, match: MatchSnapshot) -> Optional[TurboResolution]:
    """Look up the player (and recipient, on the same team unless prefixed) for a valid parse."""
    if not result.valid or result.jersey_number is None:
        return None
    found = find_player_by_jersey(match, result.jersey_number, result.team_prefix)
    if found is None:
        return None
    team, player = found
    recipient = None
    if result.recipient_number is not None:
        if result.recipient_team_prefix:
            hit = find_player_by_jersey(match, result.recipient_number, result.recipient_team_prefix)
            recipient = hit[1] if hit else None
        else:
            recipient = team.find_by_jersey(result.recipient_number)
        if recipient is None:
            return None
    return TurboResolution(team=team, player=player, recipient=recipient)


class RapidInputBuffer:
    """
    Debounces turbo keystrokes. `now` is monotonic seconds supplied by the caller.
    """

    def __init__(self, delay_s: float | None = None) -> None:
        self.delay_s = delay_s if delay_s is not None else get_settings().rapid_input_buffer_s
        self.text = ""
        self._last_input: Optional[float] = None

    def feed(self, text: str, now: float) -> TurboParseResult:
        self.text = text
        self._last_input = now
        return parse_turbo_input(text)

    def poll(self, now: float) -> Optional[TurboParseResult]:
        """Commit the buffered entry once it has been idle long enough and parses cleanly."""
        if not self.text or self._last_input is None:
            return None
        if now - self._last_input < self.delay_s:
            return None
        result = parse_turbo_input(self.text)
        if not result.valid:
            return None
        return self._take(result)

    def commit(self) -> TurboParseResult:
        result = parse_turbo_input(self.text)
        if result.valid:
            self._take(result)
        return result

    def clear(self) -> None:
        self.text = ""
        self._last_input = None

    def _take(self, result: TurboParseResult) -> TurboParseResult:
        logger.debug("turbo_entry_committed", text=self.text, action=result.action)
        self.clear()
        return result

"""
Action taxonomy: action groups, outcomes, event-type resolution and the
type-specific `data` payloads attached to drafts.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from shared.models.domain import EventDraft, PlayerRef
from shared.models.enums import CardType, EventType, IneffectiveAction


@dataclass(frozen=True)
class ActionConfig:
    actions: tuple[str, ...]
    outcomes: dict[str, tuple[str, ...]] = field(default_factory=dict)
    needs_recipient: bool = False
    is_special: bool = False


ACTION_FLOWS: dict[str, ActionConfig] = {
    "Pass": ActionConfig(
        actions=("Pass",),
        outcomes={"Pass": ("Complete", "Incomplete", "Out", "Pass Offside")},
        needs_recipient=True,
    ),
    "Shot": ActionConfig(
        actions=("Shot",),
        outcomes={"Shot": ("Goal", "OnTarget", "OffTarget", "Blocked", "Post", "Saved")},
    ),
    "Duel": ActionConfig(
        actions=("Duel",),
        outcomes={"Duel": ("Won", "Lost", "Success (Dispossessed)")},
    ),
    "FoulCommitted": ActionConfig(
        actions=("Foul",),
        outcomes={"Foul": ("Standard", "Advantage", "Penalty")},
    ),
    "Card": ActionConfig(
        actions=("Card",),
        outcomes={"Card": tuple(c.value for c in CardType)},
    ),
    "Carry": ActionConfig(
        actions=("Carry",),
        outcomes={"Carry": ("Successful", "Dispossessed")},
    ),
    "Interception": ActionConfig(
        actions=("Interception",),
        outcomes={"Interception": ("Success", "Lost")},
    ),
    "Clearance": ActionConfig(
        actions=("Clearance",),
        outcomes={"Clearance": ("Success", "Failed")},
    ),
    "Block": ActionConfig(actions=("Block",), outcomes={"Block": ("Success",)}),
    "Recovery": ActionConfig(
        actions=("Recovery",),
        outcomes={"Recovery": ("Interception", "Tackle", "Aerial", "Loose Ball")},
    ),
    "Offside": ActionConfig(actions=("Offside",), outcomes={"Offside": ("Standard",)}),
    "SetPiece": ActionConfig(
        actions=("Corner", "Free Kick", "Throw-in", "Goal Kick", "Penalty", "Kick Off"),
        outcomes={
            "Corner": ("Complete", "Incomplete"),
            "Free Kick": ("Complete", "Incomplete", "Shot"),
            "Throw-in": ("Complete", "Incomplete"),
            "Goal Kick": ("Complete", "Incomplete"),
            "Penalty": ("Goal", "Saved", "Missed"),
            "Kick Off": ("Complete",),
        },
    ),
    "GoalkeeperAction": ActionConfig(
        actions=("Save", "Claim", "Punch", "Pick Up", "Smother"),
        outcomes={
            "Save": ("Success", "Failed"),
            "Claim": ("Success", "Failed"),
            "Punch": ("Success", "Failed"),
            "Pick Up": ("Success",),
            "Smother": ("Success", "Failed"),
        },
    ),
    "Substitution": ActionConfig(
        actions=("Substitution",),
        outcomes={"Substitution": ()},
        is_special=True,
    ),
}

SET_PIECE_ACTIONS = ACTION_FLOWS["SetPiece"].actions
GOALKEEPER_ACTIONS = ACTION_FLOWS["GoalkeeperAction"].actions

# Actions that open a stoppage window once recorded
STOPPAGE_TRIGGERS: dict[str, IneffectiveAction] = {
    "Card": IneffectiveAction.CARD,
    "Foul": IneffectiveAction.FOUL,
    "Offside": IneffectiveAction.OFFSIDE,
    "Substitution": IneffectiveAction.SUBSTITUTION,
}


def get_action_config(action: Optional[str]) -> Optional[ActionConfig]:
    if not action:
        return None
    return next((cfg for cfg in ACTION_FLOWS.values() if action in cfg.actions), None)


def outcomes_for(action: str) -> tuple[str, ...]:
    config = get_action_config(action)
    if config is None:
        return ()
    return config.outcomes.get(action, ())


def resolve_event_type(action: str) -> EventType:
    if action in ("Shot", "Goal"):
        return EventType.SHOT
    if action == "Foul":
        return EventType.FOUL_COMMITTED
    if action == "Carry":
        return EventType.RECOVERY
    if action in SET_PIECE_ACTIONS:
        return EventType.SET_PIECE
    if action in GOALKEEPER_ACTIONS:
        return EventType.GOALKEEPER_ACTION
    try:
        return EventType(action)
    except ValueError:
        return EventType.PASS


def build_event_data(
    action: str,
    outcome: Optional[str],
    recipient: Optional[PlayerRef] = None,
    extra: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    event_type = resolve_event_type(action)
    data: dict[str, Any]
    if event_type == EventType.PASS:
        data = {
            "pass_type": "Standard",
            "outcome": outcome or "Complete",
            "receiver_id": recipient.id if recipient else None,
            "receiver_name": recipient.full_name if recipient else None,
        }
    elif event_type == EventType.SHOT:
        data = {"shot_type": "Standard", "outcome": outcome or "OnTarget"}
    elif event_type == EventType.DUEL:
        data = {"duel_type": "Ground", "outcome": outcome or "Won"}
    elif event_type == EventType.FOUL_COMMITTED:
        data = {"foul_type": "Standard", "outcome": outcome or "Standard"}
    elif event_type == EventType.CARD:
        data = {"card_type": outcome or CardType.YELLOW.value, "reason": "Foul"}
    elif event_type == EventType.BLOCK:
        data = {"block_type": "Shot", "outcome": outcome or "Success"}
    elif event_type == EventType.RECOVERY:
        data = {"recovery_type": outcome or "Loose Ball"}
    elif event_type == EventType.OFFSIDE:
        data = {"pass_player_id": None}
    elif event_type == EventType.SET_PIECE:
        data = {"set_piece_type": action, "outcome": outcome or "Complete"}
    elif event_type == EventType.GOALKEEPER_ACTION:
        data = {"action_type": action, "outcome": outcome or "Success"}
    else:
        data = {"outcome": outcome or "Success"}
    if extra:
        data.update(extra)
    return data


def build_draft(
    action: str,
    outcome: Optional[str],
    team_id: str,
    player_id: Optional[str],
    period: int,
    match_clock: str,
    recipient: Optional[PlayerRef] = None,
    extra: Optional[dict[str, Any]] = None,
) -> EventDraft:
    return EventDraft(
        type=resolve_event_type(action),
        team_id=team_id,
        player_id=player_id,
        period=period,
        match_clock=match_clock,
        data=build_event_data(action, outcome, recipient, extra),
    )

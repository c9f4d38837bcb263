"""
Action Flow Controller.

A thin wizard: selectPlayer -> selectAction | selectQuickAction ->
selectOutcome -> selectRecipient (when required) -> emit drafts -> reset.
Every step can be cancelled back to selectPlayer. Only valid drafts leave
this module; expelled players are refused at player selection and again
at emission.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from shared.errors import PlayerExpelled, ValidationError
from shared.models.domain import EventDraft, MatchSnapshot, PlayerRef, TeamRoster
from shared.models.enums import ActionStep, CardType, EventType, IneffectiveAction

from clock.formatting import offset_clock
from flow.taxonomy import STOPPAGE_TRIGGERS, build_draft, get_action_config, outcomes_for


@dataclass(frozen=True)
class FlowContext:
    """What the controller needs to know about the session when emitting."""
    match_clock: str
    period: int
    yellow_counts: dict[str, int] = field(default_factory=dict)
    expelled: frozenset[str] = frozenset()


@dataclass
class FlowResult:
    drafts: list[EventDraft]
    escalated: bool = False
    stoppage_trigger: Optional[IneffectiveAction] = None


def escalate_card(
    requested: CardType,
    team_id: str,
    player_id: str,
    ctx: FlowContext,
) -> tuple[list[EventDraft], bool]:
    """
    Resolve a card request into drafts.

    A Yellow for a player already holding one becomes Yellow (Second) at
    clock + 1 ms followed by an auto-issued Red at clock + 2 ms.
    """
    resolved = requested
    if requested == CardType.YELLOW and ctx.yellow_counts.get(player_id, 0) >= 1:
        resolved = CardType.YELLOW_SECOND

    if resolved != CardType.YELLOW_SECOND:
        draft = build_draft("Card", resolved.value, team_id, player_id, ctx.period, ctx.match_clock)
        return [draft], False

    second = build_draft(
        "Card",
        CardType.YELLOW_SECOND.value,
        team_id,
        player_id,
        ctx.period,
        offset_clock(ctx.match_clock, 1),
    )
    red = build_draft(
        "Card",
        CardType.RED.value,
        team_id,
        player_id,
        ctx.period,
        offset_clock(ctx.match_clock, 2),
        extra={"auto_issued": True},
    )
    return [second, red], True


class ActionFlowController:
    def __init__(self, match: MatchSnapshot) -> None:
        self._match = match
        self.reset()

    def reset(self) -> None:
        self.step = ActionStep.SELECT_PLAYER
        self.team: Optional[TeamRoster] = None
        self.player: Optional[PlayerRef] = None
        self.action: Optional[str] = None
        self.pending_outcome: Optional[str] = None

    cancel = reset

    def update_match(self, match: MatchSnapshot) -> None:
        self._match = match

    def _resolve_player(self, team_id: str, player_id: str) -> tuple[TeamRoster, PlayerRef]:
        team = self._match.team(team_id)
        if team is None:
            raise ValidationError("Unknown team", {"team_id": team_id})
        player = team.find_player(player_id)
        if player is None:
            raise ValidationError("Player is not on this team", {"player_id": player_id})
        return team, player

    def select_player(
        self,
        team_id: str,
        player_id: str,
        expelled: frozenset[str] = frozenset(),
        quick: bool = False,
    ) -> ActionStep:
        if player_id in expelled:
            raise PlayerExpelled(player_id)
        self.team, self.player = self._resolve_player(team_id, player_id)
        self.action = None
        self.pending_outcome = None
        self.step = ActionStep.SELECT_QUICK_ACTION if quick else ActionStep.SELECT_ACTION
        return self.step

    def select_action(self, action: str) -> ActionStep:
        if self.step not in (ActionStep.SELECT_ACTION, ActionStep.SELECT_QUICK_ACTION):
            raise ValidationError(f"Cannot select an action during {self.step.value}")
        config = get_action_config(action)
        if config is None:
            raise ValidationError(f"Unknown action {action}", {"action": action})
        if config.is_special:
            raise ValidationError(f"{action} has its own flow", {"action": action})
        self.action = action
        self.pending_outcome = None
        self.step = ActionStep.SELECT_OUTCOME
        return self.step

    def select_outcome(self, outcome: str, ctx: FlowContext) -> Optional[FlowResult]:
        """Returns the emitted result, or None when a recipient is still required."""
        if self.step != ActionStep.SELECT_OUTCOME or self.action is None:
            raise ValidationError(f"Cannot select an outcome during {self.step.value}")
        if outcome not in outcomes_for(self.action):
            raise ValidationError(f"Invalid outcome {outcome} for {self.action}", {"outcome": outcome})
        config = get_action_config(self.action)
        if config is not None and config.needs_recipient:
            self.pending_outcome = outcome
            self.step = ActionStep.SELECT_RECIPIENT
            return None
        return self._emit(outcome, None, ctx)

    def select_recipient(self, recipient_id: str, ctx: FlowContext) -> FlowResult:
        if self.step != ActionStep.SELECT_RECIPIENT or self.team is None:
            raise ValidationError(f"Cannot select a recipient during {self.step.value}")
        recipient = self.team.find_player(recipient_id)
        if recipient is None:
            raise ValidationError("Recipient is not on this team", {"recipient_id": recipient_id})
        return self._emit(self.pending_outcome, recipient, ctx)

    def _emit(self, outcome: Optional[str], recipient: Optional[PlayerRef], ctx: FlowContext) -> FlowResult:
        if self.team is None or self.player is None or self.action is None:
            raise ValidationError(f"Cannot record an action during {self.step.value}")
        team, player, action = self.team, self.player, self.action
        if player.id in ctx.expelled:
            self.reset()
            raise PlayerExpelled(player.id)

        if action == "Card":
            requested = CardType.parse(outcome) or CardType.YELLOW
            drafts, escalated = escalate_card(requested, team.id, player.id, ctx)
        else:
            drafts = [
                build_draft(action, outcome, team.id, player.id, ctx.period, ctx.match_clock, recipient)
            ]
            escalated = False

        result = FlowResult(drafts=drafts, escalated=escalated, stoppage_trigger=STOPPAGE_TRIGGERS.get(action))
        self.reset()
        return result

    def card_cancellation(self, team_id: str, player_id: str, ctx: FlowContext) -> FlowResult:
        """
        VAR overturn of the player's most recent card. Allowed for expelled
        players since it is a decision about them, not an action by them.
        """
        team, player = self._resolve_player(team_id, player_id)
        draft = build_draft("Card", CardType.CANCELLED.value, team.id, player.id, ctx.period, ctx.match_clock)
        draft.data["reason"] = "VAR"
        return FlowResult(drafts=[draft])


def substitution_draft(
    team_id: str,
    player_off_id: str,
    player_on_id: str,
    ctx: FlowContext,
    is_concussion: bool = False,
) -> EventDraft:
    if player_off_id in ctx.expelled:
        raise PlayerExpelled(player_off_id)
    return EventDraft(
        type=EventType.SUBSTITUTION,
        team_id=team_id,
        player_id=player_off_id,
        period=ctx.period,
        match_clock=ctx.match_clock,
        data={
            "player_off_id": player_off_id,
            "player_on_id": player_on_id,
            "is_concussion": is_concussion,
        },
    )

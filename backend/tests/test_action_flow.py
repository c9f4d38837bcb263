"""
Action flow controller and taxonomy: wizard steps, recipient handling, card
escalation and expulsion checks.

Run: pytest backend/tests/test_action_flow.py -v
"""
from __future__ import annotations

import pytest

from flow.controller import ActionFlowController, FlowContext, escalate_card, substitution_draft
from flow.taxonomy import build_event_data, outcomes_for, resolve_event_type
from shared.errors import PlayerExpelled, ValidationError
from shared.models.domain import MatchSnapshot
from shared.models.enums import ActionStep, CardType, EventType, IneffectiveAction

CTX = FlowContext(match_clock="15:00.000", period=1)


@pytest.fixture
def flow(match: MatchSnapshot) -> ActionFlowController:
    return ActionFlowController(match)


# ── Taxonomy ────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "action,expected",
    [
        ("Pass", EventType.PASS),
        ("Shot", EventType.SHOT),
        ("Foul", EventType.FOUL_COMMITTED),
        ("Carry", EventType.RECOVERY),
        ("Corner", EventType.SET_PIECE),
        ("Throw-in", EventType.SET_PIECE),
        ("Save", EventType.GOALKEEPER_ACTION),
        ("Card", EventType.CARD),
        ("Offside", EventType.OFFSIDE),
    ],
)
def test_resolve_event_type(action: str, expected: EventType) -> None:
    assert resolve_event_type(action) == expected


def test_outcomes_for() -> None:
    assert outcomes_for("Duel") == ("Won", "Lost", "Success (Dispossessed)")
    assert outcomes_for("Penalty") == ("Goal", "Saved", "Missed")
    assert outcomes_for("Nope") == ()


def test_set_piece_data_keeps_action_name() -> None:
    assert build_event_data("Corner", "Complete") == {"set_piece_type": "Corner", "outcome": "Complete"}


# ── Wizard ──────────────────────────────────────────────────────────────

class TestWizard:

    def test_simple_action_emits_one_draft(self, flow: ActionFlowController) -> None:
        assert flow.select_player("T1", "P101") == ActionStep.SELECT_ACTION
        assert flow.select_action("Duel") == ActionStep.SELECT_OUTCOME
        result = flow.select_outcome("Won", CTX)
        assert result is not None
        assert len(result.drafts) == 1
        draft = result.drafts[0]
        assert draft.type == EventType.DUEL
        assert draft.player_id == "P101"
        assert draft.match_clock == "15:00.000"
        assert draft.data["outcome"] == "Won"
        assert flow.step == ActionStep.SELECT_PLAYER

    def test_quick_action_step(self, flow: ActionFlowController) -> None:
        assert flow.select_player("T1", "P101", quick=True) == ActionStep.SELECT_QUICK_ACTION
        assert flow.select_action("Shot") == ActionStep.SELECT_OUTCOME

    def test_pass_requires_recipient(self, flow: ActionFlowController) -> None:
        flow.select_player("T1", "P101")
        flow.select_action("Pass")
        assert flow.select_outcome("Complete", CTX) is None
        assert flow.step == ActionStep.SELECT_RECIPIENT
        result = flow.select_recipient("P102", CTX)
        assert result.drafts[0].data["receiver_id"] == "P102"
        assert result.drafts[0].data["receiver_name"] == "Ben Home"

    def test_recipient_must_be_teammate(self, flow: ActionFlowController) -> None:
        flow.select_player("T1", "P101")
        flow.select_action("Pass")
        flow.select_outcome("Complete", CTX)
        with pytest.raises(ValidationError):
            flow.select_recipient("P201", CTX)

    def test_foul_reports_stoppage_trigger(self, flow: ActionFlowController) -> None:
        flow.select_player("T1", "P103")
        flow.select_action("Foul")
        result = flow.select_outcome("Standard", CTX)
        assert result.stoppage_trigger == IneffectiveAction.FOUL
        assert result.drafts[0].type == EventType.FOUL_COMMITTED

    def test_unknown_team_or_player(self, flow: ActionFlowController) -> None:
        with pytest.raises(ValidationError):
            flow.select_player("T9", "P101")
        with pytest.raises(ValidationError):
            flow.select_player("T1", "P201")

    def test_expelled_player_refused_at_selection(self, flow: ActionFlowController) -> None:
        with pytest.raises(PlayerExpelled):
            flow.select_player("T1", "P101", expelled=frozenset({"P101"}))

    def test_expelled_player_refused_at_emission(self, flow: ActionFlowController) -> None:
        flow.select_player("T1", "P101")
        flow.select_action("Shot")
        ctx = FlowContext(match_clock="15:00.000", period=1, expelled=frozenset({"P101"}))
        with pytest.raises(PlayerExpelled) as exc_info:
            flow.select_outcome("Goal", ctx)
        assert exc_info.value.player_id == "P101"
        assert flow.step == ActionStep.SELECT_PLAYER
        assert flow.player is None

    def test_expelled_player_refused_at_recipient_step(self, flow: ActionFlowController) -> None:
        flow.select_player("T1", "P102")
        flow.select_action("Pass")
        assert flow.select_outcome("Complete", CTX) is None
        ctx = FlowContext(match_clock="15:00.000", period=1, expelled=frozenset({"P102"}))
        with pytest.raises(PlayerExpelled) as exc_info:
            flow.select_recipient("P101", ctx)
        assert exc_info.value.player_id == "P102"
        assert flow.step == ActionStep.SELECT_PLAYER

    def test_invalid_outcome(self, flow: ActionFlowController) -> None:
        flow.select_player("T1", "P101")
        flow.select_action("Shot")
        with pytest.raises(ValidationError):
            flow.select_outcome("Complete", CTX)

    def test_out_of_order_steps(self, flow: ActionFlowController) -> None:
        with pytest.raises(ValidationError):
            flow.select_action("Shot")
        with pytest.raises(ValidationError):
            flow.select_outcome("Goal", CTX)

    def test_substitution_has_own_flow(self, flow: ActionFlowController) -> None:
        flow.select_player("T1", "P101")
        with pytest.raises(ValidationError):
            flow.select_action("Substitution")

    def test_cancel_returns_to_player_selection(self, flow: ActionFlowController) -> None:
        flow.select_player("T1", "P101")
        flow.select_action("Shot")
        flow.cancel()
        assert flow.step == ActionStep.SELECT_PLAYER
        assert flow.player is None


# ── Cards ───────────────────────────────────────────────────────────────

class TestCards:

    def test_first_yellow_not_escalated(self) -> None:
        drafts, escalated = escalate_card(CardType.YELLOW, "T1", "P101", CTX)
        assert escalated is False
        assert [d.data["card_type"] for d in drafts] == ["Yellow"]

    def test_second_yellow_escalates_to_pair(self) -> None:
        ctx = FlowContext(match_clock="15:00.000", period=1, yellow_counts={"P101": 1})
        drafts, escalated = escalate_card(CardType.YELLOW, "T1", "P101", ctx)
        assert escalated is True
        assert [(d.data["card_type"], d.match_clock) for d in drafts] == [
            ("Yellow (Second)", "15:00.001"),
            ("Red", "15:00.002"),
        ]
        assert drafts[1].data["auto_issued"] is True
        assert "auto_issued" not in drafts[0].data

    def test_explicit_second_yellow_also_pairs(self) -> None:
        drafts, escalated = escalate_card(CardType.YELLOW_SECOND, "T1", "P101", CTX)
        assert escalated is True
        assert len(drafts) == 2

    def test_red_passes_through(self) -> None:
        ctx = FlowContext(match_clock="15:00.000", period=1, yellow_counts={"P101": 1})
        drafts, escalated = escalate_card(CardType.RED, "T1", "P101", ctx)
        assert escalated is False
        assert drafts[0].data["card_type"] == "Red"

    def test_card_through_wizard(self, flow: ActionFlowController) -> None:
        ctx = FlowContext(match_clock="15:00.000", period=1, yellow_counts={"P101": 1})
        flow.select_player("T1", "P101")
        flow.select_action("Card")
        result = flow.select_outcome("Yellow", ctx)
        assert result.escalated is True
        assert result.stoppage_trigger == IneffectiveAction.CARD

    def test_cancellation_allowed_for_expelled_player(self, flow: ActionFlowController) -> None:
        ctx = FlowContext(match_clock="20:00.000", period=1, expelled=frozenset({"P101"}))
        result = flow.card_cancellation("T1", "P101", ctx)
        draft = result.drafts[0]
        assert draft.data["card_type"] == "Cancelled"
        assert draft.data["reason"] == "VAR"


def test_substitution_draft() -> None:
    draft = substitution_draft("T1", "P101", "P104", CTX, is_concussion=True)
    assert draft.type == EventType.SUBSTITUTION
    assert draft.data == {"player_off_id": "P101", "player_on_id": "P104", "is_concussion": True}


def test_substitution_of_expelled_player_refused() -> None:
    ctx = FlowContext(match_clock="20:00.000", period=1, expelled=frozenset({"P101"}))
    with pytest.raises(PlayerExpelled):
        substitution_draft("T1", "P101", "P104", ctx)

"""
Turbo input parser, jersey resolution and the rapid-input debounce buffer.

Run: pytest backend/tests/test_turbo.py -v
"""
from __future__ import annotations

import pytest

from flow.turbo import RapidInputBuffer, duplicate_jerseys, parse_turbo_input, resolve_turbo
from shared.models.domain import MatchSnapshot


# ── Parser ──────────────────────────────────────────────────────────────

class TestParse:

    def test_full_pass_entry(self) -> None:
        result = parse_turbo_input("h10p1>7")
        assert result.valid is True
        assert result.team_prefix == "home"
        assert result.jersey_number == 10
        assert result.action == "Pass"
        assert result.outcome == "Complete"
        assert result.recipient_number == 7
        assert result.requires_recipient is True

    def test_case_and_whitespace_ignored(self) -> None:
        assert parse_turbo_input("  A9D2 ").valid is True

    def test_away_duel(self) -> None:
        result = parse_turbo_input("a9d2")
        assert result.team_prefix == "away"
        assert result.action == "Duel"
        assert result.outcome == "Lost"

    def test_foul_without_outcome_is_valid(self) -> None:
        result = parse_turbo_input("h4f")
        assert result.valid is True
        assert result.outcome is None

    @pytest.mark.parametrize("marker", ["r", ">", "-"])
    def test_recipient_markers(self, marker: str) -> None:
        assert parse_turbo_input(f"h10p1{marker}7").recipient_number == 7

    def test_recipient_with_team_prefix(self) -> None:
        result = parse_turbo_input("h10p1>a9")
        assert result.recipient_team_prefix == "away"
        assert result.recipient_number == 9

    def test_pass_without_recipient_rejected(self) -> None:
        result = parse_turbo_input("10p1")
        assert result.valid is False
        assert "recipient" in result.error
        assert result.partial.has_outcome is True

    def test_unknown_action_rejected(self) -> None:
        result = parse_turbo_input("10z")
        assert result.valid is False
        assert result.error == 'Unknown action: "z"'
        assert result.partial.has_jersey is True
        assert result.partial.has_action is False

    def test_action_needing_outcome(self) -> None:
        result = parse_turbo_input("h10s")
        assert result.valid is False
        assert "1=Goal" in result.error

    def test_invalid_outcome_number(self) -> None:
        assert parse_turbo_input("h10p9>7").error == "Invalid outcome 9 for Pass"

    def test_jersey_out_of_range(self) -> None:
        assert parse_turbo_input("h100p").error == "Jersey number must be 1-99"
        assert parse_turbo_input("h0d1").valid is False

    def test_trailing_garbage(self) -> None:
        assert parse_turbo_input("h10p1>7x").error == 'Unexpected: "x"'

    def test_missing_pieces(self) -> None:
        assert parse_turbo_input("").error == "Empty input"
        assert parse_turbo_input("h").valid is False
        assert parse_turbo_input("h10").error.startswith("Add action code")
        assert parse_turbo_input("h10p1>").error.startswith("Add recipient")


# ── Resolution ──────────────────────────────────────────────────────────

class TestResolve:

    def test_resolves_player_and_teammate(self, match: MatchSnapshot) -> None:
        resolution = resolve_turbo(parse_turbo_input("h10p1>7"), match)
        assert resolution.team.id == "T1"
        assert resolution.player.id == "P101"
        assert resolution.recipient.id == "P102"

    def test_away_prefix(self, match: MatchSnapshot) -> None:
        assert resolve_turbo(parse_turbo_input("a10d1"), match).player.id == "P202"

    def test_no_prefix_prefers_home(self, match: MatchSnapshot) -> None:
        assert resolve_turbo(parse_turbo_input("10d1"), match).player.id == "P101"

    def test_cross_team_recipient(self, match: MatchSnapshot) -> None:
        resolution = resolve_turbo(parse_turbo_input("h10p1>a9"), match)
        assert resolution.recipient.id == "P201"

    def test_unknown_jersey(self, match: MatchSnapshot) -> None:
        assert resolve_turbo(parse_turbo_input("h55d1"), match) is None
        assert resolve_turbo(parse_turbo_input("h10p1>55"), match) is None

    def test_invalid_parse_not_resolved(self, match: MatchSnapshot) -> None:
        assert resolve_turbo(parse_turbo_input("10z"), match) is None

    def test_duplicate_jerseys(self, match: MatchSnapshot) -> None:
        assert duplicate_jerseys(match) == [10]


# ── Debounce ────────────────────────────────────────────────────────────

class TestRapidInputBuffer:

    def test_commits_after_idle_delay(self) -> None:
        buffer = RapidInputBuffer(delay_s=3.0)
        buffer.feed("h10", now=0.0)
        buffer.feed("h10d1", now=0.5)
        assert buffer.poll(now=3.0) is None
        result = buffer.poll(now=3.6)
        assert result is not None and result.action == "Duel"
        assert buffer.text == ""

    def test_incomplete_entry_never_commits(self) -> None:
        buffer = RapidInputBuffer(delay_s=1.0)
        buffer.feed("h10", now=0.0)
        assert buffer.poll(now=10.0) is None
        assert buffer.text == "h10"

    def test_explicit_commit(self) -> None:
        buffer = RapidInputBuffer(delay_s=3.0)
        buffer.feed("a9d2", now=0.0)
        assert buffer.commit().valid is True
        assert buffer.text == ""

    def test_invalid_commit_keeps_text(self) -> None:
        buffer = RapidInputBuffer(delay_s=3.0)
        buffer.feed("10z", now=0.0)
        assert buffer.commit().valid is False
        assert buffer.text == "10z"

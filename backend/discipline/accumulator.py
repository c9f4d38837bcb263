"""
Disciplinary Accumulator.

A pure fold over the Card subsequence of the canonically ordered timeline.
Each player keeps a stack of active card units so that a VAR cancellation
reverses exactly the most recent one:

- Yellow pushes a yellow unit.
- Yellow (Second) pushes a pair unit (one yellow plus red) and arms
  `suppress_next_red` so the auto-issued Red that follows is not counted twice.
- Red pushes a red unit unless suppressed.
- Cancelled pops the most recent unit; a pair takes its yellow and red together.
  Cancelling with nothing active is a no-op.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from shared.models.domain import MatchEvent
from shared.models.enums import CardType, EventType

YELLOW = "yellow"
PAIR = "pair"
RED = "red"


@dataclass
class PlayerDiscipline:
    units: list[str] = field(default_factory=list)
    suppress_next_red: int = 0

    @property
    def yellow_count(self) -> int:
        return sum(1 for u in self.units if u in (YELLOW, PAIR))

    @property
    def has_red(self) -> bool:
        return any(u in (RED, PAIR) for u in self.units)

    @property
    def is_expelled(self) -> bool:
        return self.has_red or self.yellow_count >= 2

    def apply(self, card: CardType) -> None:
        if card == CardType.YELLOW:
            self.units.append(YELLOW)
        elif card == CardType.YELLOW_SECOND:
            self.units.append(PAIR)
            self.suppress_next_red += 1
        elif card == CardType.RED:
            if self.suppress_next_red > 0:
                self.suppress_next_red -= 1
            else:
                self.units.append(RED)
        elif card == CardType.CANCELLED:
            if self.units:
                self.units.pop()

    def to_dict(self) -> dict[str, object]:
        return {
            "yellow_count": self.yellow_count,
            "has_red": self.has_red,
            "is_expelled": self.is_expelled,
        }


def fold_discipline(events: Iterable[MatchEvent]) -> dict[str, PlayerDiscipline]:
    """
    Fold already-ordered events into per-player state. Cards without a player
    and unknown card types are ignored.
    """
    state: dict[str, PlayerDiscipline] = {}
    for event in events:
        if event.type != EventType.CARD or not event.player_id:
            continue
        card = event.card_type
        if card is None:
            continue
        state.setdefault(event.player_id, PlayerDiscipline()).apply(card)
    return state


def expelled_players(state: dict[str, PlayerDiscipline]) -> set[str]:
    return {player_id for player_id, d in state.items() if d.is_expelled}


def yellow_counts(state: dict[str, PlayerDiscipline]) -> dict[str, int]:
    return {player_id: d.yellow_count for player_id, d in state.items()}

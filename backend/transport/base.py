"""
Narrow interfaces to the logger backend.
The session depends only on these; tests plug in in-memory fakes.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from shared.models.domain import Ack, ClockAnchors, MatchEvent, MatchSnapshot, SubstitutionCheck
from shared.models.enums import MatchPhase


class EventChannel(ABC):
    """
    Ordered-enough, at-least-once event channel.

    Implementations raise TransportError when the message could not be
    handed over. A returned Ack is merged immediately; None means the ack
    arrives later through server push.
    """

    @abstractmethod
    async def send(self, event: MatchEvent) -> Optional[Ack]:
        pass

    @abstractmethod
    async def send_undo(self, event: MatchEvent) -> Optional[bool]:
        """Request deletion of a sent event. True/False when answered inline, None when pushed."""
        pass


class MatchService(ABC):
    @abstractmethod
    async def get_match(self, match_id: str) -> MatchSnapshot:
        pass

    @abstractmethod
    async def get_events(self, match_id: str) -> list[MatchEvent]:
        pass

    @abstractmethod
    async def update_status(
        self,
        match_id: str,
        phase: MatchPhase,
        anchors: ClockAnchors,
        period_timestamps: Optional[dict[str, Any]] = None,
    ) -> None:
        pass

    @abstractmethod
    async def update_clock(self, match_id: str, anchors: ClockAnchors) -> None:
        pass

    @abstractmethod
    async def reset(self, match_id: str) -> None:
        pass

    @abstractmethod
    async def update_event(self, event: MatchEvent) -> MatchEvent:
        pass

    @abstractmethod
    async def delete_event(self, server_id: str) -> None:
        pass


class SubstitutionValidator(ABC):
    """Authoritative substitution legality check."""

    @abstractmethod
    async def validate(
        self,
        match_id: str,
        team_id: str,
        player_off_id: str,
        player_on_id: str,
        period: int,
        is_concussion: bool = False,
    ) -> SubstitutionCheck:
        pass

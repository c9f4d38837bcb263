"""Domain enumerations for the match logger."""
from __future__ import annotations

from enum import Enum
from typing import Optional


class MatchPhase(str, Enum):
    PENDING = "Pending"
    LIVE_FIRST_HALF = "Live_First_Half"
    HALFTIME = "Halftime"
    LIVE_SECOND_HALF = "Live_Second_Half"
    FULLTIME = "Fulltime"
    LIVE_EXTRA_FIRST = "Live_Extra_First"
    EXTRA_HALFTIME = "Extra_Halftime"
    LIVE_EXTRA_SECOND = "Live_Extra_Second"
    PENALTIES = "Penalties"
    COMPLETED = "Completed"
    ABANDONED = "Abandoned"

    @property
    def is_live(self) -> bool:
        return self.value.startswith("Live_")

    @property
    def is_terminal(self) -> bool:
        return self in (MatchPhase.COMPLETED, MatchPhase.ABANDONED)

    @property
    def is_break(self) -> bool:
        return self in (MatchPhase.HALFTIME, MatchPhase.EXTRA_HALFTIME, MatchPhase.FULLTIME)

    @property
    def is_locked(self) -> bool:
        """Closed for event submission."""
        return self in (MatchPhase.FULLTIME, MatchPhase.COMPLETED, MatchPhase.ABANDONED)

    @classmethod
    def parse(cls, raw: Optional[str]) -> "MatchPhase":
        """Parse a stored status, accepting legacy aliases. Unknown values map to Pending."""
        if not raw:
            return cls.PENDING
        alias = LEGACY_PHASE_ALIASES.get(raw)
        if alias is not None:
            return alias
        try:
            return cls(raw)
        except ValueError:
            return cls.PENDING


LEGACY_PHASE_ALIASES: dict[str, MatchPhase] = {
    "Scheduled": MatchPhase.PENDING,
    "Live": MatchPhase.LIVE_FIRST_HALF,
}


class EventType(str, Enum):
    PASS = "Pass"
    SHOT = "Shot"
    DUEL = "Duel"
    FOUL_COMMITTED = "FoulCommitted"
    CARD = "Card"
    SUBSTITUTION = "Substitution"
    GAME_STOPPAGE = "GameStoppage"
    VAR_DECISION = "VARDecision"
    INTERCEPTION = "Interception"
    CLEARANCE = "Clearance"
    BLOCK = "Block"
    RECOVERY = "Recovery"
    OFFSIDE = "Offside"
    SET_PIECE = "SetPiece"
    GOALKEEPER_ACTION = "GoalkeeperAction"


class CardType(str, Enum):
    YELLOW = "Yellow"
    YELLOW_SECOND = "Yellow (Second)"
    RED = "Red"
    CANCELLED = "Cancelled"

    @classmethod
    def parse(cls, raw: object) -> Optional["CardType"]:
        try:
            return cls(raw)
        except ValueError:
            return None


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class ClockMode(str, Enum):
    EFFECTIVE = "EFFECTIVE"
    INEFFECTIVE = "INEFFECTIVE"


class AckStatus(str, Enum):
    SUCCESS = "success"
    DUPLICATE = "duplicate"
    ERROR = "error"


class PushMessageType(str, Enum):
    ACK = "ack"
    UNDO_ACK = "undo_ack"
    EVENT_CREATED = "event_created"
    EVENT_DELETED = "event_deleted"
    TIMELINE_REFRESH_REQUESTED = "timeline_refresh_requested"


class ActionStep(str, Enum):
    SELECT_PLAYER = "selectPlayer"
    SELECT_ACTION = "selectAction"
    SELECT_QUICK_ACTION = "selectQuickAction"
    SELECT_OUTCOME = "selectOutcome"
    SELECT_RECIPIENT = "selectRecipient"


class StoppageType(str, Enum):
    CLOCK_STOP = "ClockStop"
    CLOCK_START = "ClockStart"
    VAR_START = "VARStart"
    VAR_STOP = "VARStop"


class IneffectiveAction(str, Enum):
    GOAL = "Goal"
    OUT_OF_BOUNDS = "OutOfBounds"
    CARD = "Card"
    FOUL = "Foul"
    OFFSIDE = "Offside"
    SUBSTITUTION = "Substitution"
    INJURY = "Injury"
    VAR = "VAR"
    OTHER = "Other"


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"

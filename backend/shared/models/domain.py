"""
Pydantic v2 domain models shared across the logger services.
These are the canonical wire/internal representations exchanged with the backend.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from shared.models.enums import (
    AckStatus,
    CardType,
    ClockMode,
    ConnectionStatus,
    EventType,
    MatchPhase,
    PushMessageType,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive timestamps coming from the backend are UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Base ────────────────────────────────────────────────────────────────
class DomainModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


# ── Roster ──────────────────────────────────────────────────────────────
class PlayerRef(DomainModel):
    id: str
    full_name: str
    short_name: Optional[str] = None
    jersey_number: int
    position: str = "MF"
    is_starter: bool = True

    @property
    def display_name(self) -> str:
        return self.short_name or self.full_name or f"#{self.jersey_number}"


class TeamRoster(DomainModel):
    id: str
    name: str
    short_name: Optional[str] = None
    players: list[PlayerRef] = Field(default_factory=list)

    def find_player(self, player_id: str) -> Optional[PlayerRef]:
        return next((p for p in self.players if p.id == player_id), None)

    def find_by_jersey(self, jersey_number: int) -> Optional[PlayerRef]:
        return next((p for p in self.players if p.jersey_number == jersey_number), None)


# ── Events ──────────────────────────────────────────────────────────────
class EventDraft(DomainModel):
    """An event produced by the action flow, not yet owned by the timeline."""
    type: EventType
    team_id: str
    player_id: Optional[str] = None
    period: int = 1
    match_clock: str = "00:00.000"
    data: dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None

    @property
    def card_type(self) -> Optional[CardType]:
        if self.type != EventType.CARD:
            return None
        return CardType.parse(self.data.get("card_type"))


class MatchEvent(EventDraft):
    """
    A timeline event. `client_id` is the only key before acknowledgement;
    `server_id` is canonical once assigned.
    """
    client_id: str
    server_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("server_id", "_id")
    )
    match_id: str
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp", mode="after")
    @classmethod
    def _timestamp_utc(cls, v: datetime) -> datetime:
        return as_utc(v)


class DuplicateInfo(DomainModel):
    server_id: Optional[str] = None
    client_id: Optional[str] = None
    type: Optional[str] = None
    team_id: Optional[str] = None
    period: Optional[int] = None
    match_clock: Optional[str] = None


class Ack(DomainModel):
    """Server acknowledgement for one submitted event."""
    client_id: Optional[str] = None
    status: AckStatus = AckStatus.SUCCESS
    server_id: Optional[str] = None
    duplicate_of: Optional[DuplicateInfo] = None
    team_status: Optional[dict[str, Any]] = None
    message: Optional[str] = None
    field_errors: dict[str, str] = Field(default_factory=dict)


class PendingAck(DomainModel):
    client_id: str
    attempt_count: int = 1
    sent_at: datetime = Field(default_factory=utcnow)


class PushMessage(DomainModel):
    """Server-push envelope delivered by the transport or the Redis bridge."""
    type: PushMessageType
    match_id: Optional[str] = None
    event: Optional[MatchEvent] = None
    ack: Optional[Ack] = None
    server_id: Optional[str] = None
    client_id: Optional[str] = None
    success: bool = True
    error: Optional[str] = None


# ── Match / clock anchors ───────────────────────────────────────────────
class ClockAnchors(DomainModel):
    """
    Server-side clock state. Elapsed values are never stored as ticking
    counters; every reading is recomputed from these anchors.
    """
    clock_mode: ClockMode = ClockMode.EFFECTIVE
    is_running: bool = False
    accumulated_effective_s: float = 0.0
    accumulated_ineffective_s: float = 0.0
    accumulated_var_s: float = 0.0
    period_start_anchor: Optional[datetime] = None
    var_seconds_at_anchor: float = 0.0
    var_active: bool = False
    var_anchor: Optional[datetime] = None
    var_paused: bool = False
    var_paused_seconds: float = 0.0
    var_pause_started_at: Optional[datetime] = None

    @field_validator("period_start_anchor", "var_anchor", "var_pause_started_at", mode="after")
    @classmethod
    def _anchors_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class MatchSnapshot(DomainModel):
    id: str
    status: str = MatchPhase.PENDING.value
    anchors: ClockAnchors = Field(default_factory=ClockAnchors)
    home_team: TeamRoster
    away_team: TeamRoster
    period_timestamps: dict[str, Any] = Field(default_factory=dict)

    @property
    def phase(self) -> MatchPhase:
        return MatchPhase.parse(self.status)

    def team(self, team_id: str) -> Optional[TeamRoster]:
        if self.home_team.id == team_id:
            return self.home_team
        if self.away_team.id == team_id:
            return self.away_team
        return None


class SubstitutionCheck(DomainModel):
    is_valid: bool
    error_message: Optional[str] = None
    team_status: Optional[dict[str, Any]] = None
    opens_new_window: bool = False


# ── Session status ──────────────────────────────────────────────────────
class ClockReadingView(DomainModel):
    effective: str
    ineffective: str
    var: str
    global_clock: str
    effective_s: float
    is_running: bool
    mode: ClockMode
    var_active: bool


class SessionStatus(DomainModel):
    """Operator-facing counters; pending and queued are always reported."""
    match_id: str
    connection: ConnectionStatus
    phase: MatchPhase
    confirmed_phase: MatchPhase
    transition_failed: bool = False
    locked: bool = False
    period: int = 1
    clock: Optional[ClockReadingView] = None
    pending_count: int = 0
    queued_count: int = 0
    rejected_count: int = 0
    undo_depth: int = 0
    duplicate_banner: Optional[dict[str, Any]] = None
    added_time: Optional[dict[str, Any]] = None

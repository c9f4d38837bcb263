"""
Canonically ordered timeline.

Order is (period, match_clock, insertion index), never arrival order.
Entries whose clock cannot be parsed sort last within their period.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Optional

from shared.models.domain import MatchEvent
from shared.models.enums import DeliveryStatus

from clock.formatting import parse_clock_to_ms


@dataclass
class TimelineEntry:
    event: MatchEvent
    insertion_index: int
    status: DeliveryStatus = DeliveryStatus.PENDING
    requested_clock: Optional[str] = None
    attempts: int = 0
    reject_reason: Optional[str] = None
    retryable: bool = True
    field_errors: dict[str, str] = field(default_factory=dict)
    duplicate_highlight: bool = False

    @property
    def client_id(self) -> str:
        return self.event.client_id

    @property
    def server_id(self) -> Optional[str]:
        return self.event.server_id

    @property
    def is_confirmed(self) -> bool:
        return self.status == DeliveryStatus.CONFIRMED

    @property
    def effective_requested_clock(self) -> str:
        return self.requested_clock or self.event.match_clock

    def sort_key(self) -> tuple[int, int, int, int]:
        ms = parse_clock_to_ms(self.event.match_clock)
        return (self.event.period, 1 if ms is None else 0, ms or 0, self.insertion_index)

    def to_dict(self) -> dict[str, object]:
        return {
            "event": self.event.model_dump(mode="json"),
            "status": self.status.value,
            "attempts": self.attempts,
            "reject_reason": self.reject_reason,
            "retryable": self.retryable,
            "field_errors": self.field_errors,
            "duplicate_highlight": self.duplicate_highlight,
        }


class Timeline:
    """Entries keyed by client_id with a server_id index."""

    def __init__(self) -> None:
        self._entries: dict[str, TimelineEntry] = {}
        self._by_server: dict[str, str] = {}
        self._next_index = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._entries

    def __iter__(self) -> Iterator[TimelineEntry]:
        return iter(self.ordered())

    def add(
        self,
        event: MatchEvent,
        status: DeliveryStatus = DeliveryStatus.PENDING,
        requested_clock: Optional[str] = None,
        insertion_index: Optional[int] = None,
    ) -> TimelineEntry:
        if insertion_index is None:
            insertion_index = self._next_index
        self._next_index = max(self._next_index, insertion_index) + 1
        entry = TimelineEntry(
            event=event,
            insertion_index=insertion_index,
            status=status,
            requested_clock=requested_clock,
        )
        self._entries[event.client_id] = entry
        if event.server_id:
            self._by_server[event.server_id] = event.client_id
        return entry

    def get(self, client_id: Optional[str]) -> Optional[TimelineEntry]:
        if client_id is None:
            return None
        return self._entries.get(client_id)

    def get_by_server(self, server_id: Optional[str]) -> Optional[TimelineEntry]:
        if server_id is None:
            return None
        client_id = self._by_server.get(server_id)
        return self._entries.get(client_id) if client_id else None

    def find(self, client_id: Optional[str] = None, server_id: Optional[str] = None) -> Optional[TimelineEntry]:
        return self.get(client_id) or self.get_by_server(server_id)

    def set_server_id(self, client_id: str, server_id: str) -> None:
        entry = self._entries[client_id]
        if entry.event.server_id and entry.event.server_id != server_id:
            self._by_server.pop(entry.event.server_id, None)
        entry.event = entry.event.model_copy(update={"server_id": server_id})
        self._by_server[server_id] = client_id

    def replace_event(self, client_id: str, event: MatchEvent) -> None:
        entry = self._entries[client_id]
        if entry.event.server_id and entry.event.server_id != event.server_id:
            self._by_server.pop(entry.event.server_id, None)
        entry.event = event
        if event.server_id:
            self._by_server[event.server_id] = client_id

    def remove(self, client_id: str) -> Optional[TimelineEntry]:
        entry = self._entries.pop(client_id, None)
        if entry and entry.event.server_id:
            self._by_server.pop(entry.event.server_id, None)
        return entry

    def ordered(self) -> list[TimelineEntry]:
        return sorted(self._entries.values(), key=TimelineEntry.sort_key)

    def events(self) -> list[MatchEvent]:
        return [entry.event for entry in self.ordered()]

    def clocks_in_period(self, period: int) -> list[str]:
        return [e.event.match_clock for e in self._entries.values() if e.event.period == period]

    def clear(self) -> None:
        self._entries.clear()
        self._by_server.clear()
        self._next_index = 0

"""
Duplicate detection on (team_id, type, period, match_clock).

Local detection compares against the clock each entry was requested at, so
a collision-shifted entry still blocks a resubmission of the same action.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Union

from shared.models.domain import EventDraft, MatchEvent
from shared.utils.logging import get_logger
from shared.utils.metrics import DUPLICATES

from clock.formatting import normalize_match_clock
from reconciliation.timeline import Timeline, TimelineEntry

logger = get_logger(__name__)

DuplicateKey = tuple[str, str, int, str]


def duplicate_key(event: Union[EventDraft, MatchEvent], clock: Optional[str] = None) -> DuplicateKey:
    raw_clock = clock or event.match_clock
    return (
        event.team_id,
        event.type.value,
        event.period,
        normalize_match_clock(raw_clock) or raw_clock,
    )


def find_local_duplicate(timeline: Timeline, draft: EventDraft) -> Optional[TimelineEntry]:
    key = duplicate_key(draft)
    for entry in timeline.ordered():
        if duplicate_key(entry.event, entry.effective_requested_clock) == key:
            return entry
    return None


class DuplicateTracker:
    """Holds the duplicate banner and counts duplicates by source (local/server)."""

    def __init__(self) -> None:
        self.banner: Optional[dict[str, Any]] = None
        self.stats: dict[str, int] = {"local": 0, "server": 0}

    def record(
        self,
        source: str,
        key: DuplicateKey,
        highlighted_client_id: Optional[str],
        existing_server_id: Optional[str],
        at: datetime,
    ) -> None:
        self.stats[source] = self.stats.get(source, 0) + 1
        DUPLICATES.labels(source=source).inc()
        team_id, event_type, period, clock = key
        self.banner = {
            "source": source,
            "team_id": team_id,
            "type": event_type,
            "period": period,
            "match_clock": clock,
            "client_id": highlighted_client_id,
            "existing_server_id": existing_server_id,
            "detected_at": at.isoformat(),
        }
        logger.warning(
            "duplicate_detected",
            source=source,
            event_type=event_type,
            period=period,
            match_clock=clock,
            existing_server_id=existing_server_id,
        )

    def dismiss(self) -> None:
        self.banner = None

    def reset(self) -> None:
        self.banner = None
        self.stats = {"local": 0, "server": 0}

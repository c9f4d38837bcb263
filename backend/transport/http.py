"""
REST implementations of the backend interfaces over httpx.
"""
from __future__ import annotations

from typing import Any, Optional

from shared.config import get_settings
from shared.errors import ValidationError
from shared.models.domain import Ack, ClockAnchors, MatchEvent, MatchSnapshot, SubstitutionCheck
from shared.models.enums import AckStatus, MatchPhase
from shared.utils.http_client import LoggerHTTPClient
from shared.utils.logging import get_logger

from transport.base import EventChannel, MatchService, SubstitutionValidator

logger = get_logger(__name__)


def parse_server_event(raw: dict[str, Any]) -> MatchEvent:
    """Events created elsewhere may lack a client id; their server id stands in."""
    payload = dict(raw)
    server_id = payload.get("server_id") or payload.get("_id") or payload.get("id")
    if server_id is not None:
        payload["server_id"] = str(server_id)
    payload.pop("_id", None)
    payload.setdefault("client_id", payload.get("server_id"))
    return MatchEvent.model_validate(payload)


class HTTPMatchService(MatchService):
    def __init__(self, client: LoggerHTTPClient, page_size: int | None = None) -> None:
        self._client = client
        self._page_size = page_size or get_settings().events_page_size

    async def get_match(self, match_id: str) -> MatchSnapshot:
        data = await self._client.get(f"/logger/matches/{match_id}", operation="get_match")
        return MatchSnapshot.model_validate(data)

    async def get_events(self, match_id: str) -> list[MatchEvent]:
        """Follow pagination until a short page is returned."""
        events: list[MatchEvent] = []
        page = 1
        while True:
            data = await self._client.get(
                f"/logger/matches/{match_id}/events",
                params={"page": page, "page_size": self._page_size},
                operation="get_events",
            )
            items = data.get("items", []) if isinstance(data, dict) else (data or [])
            events.extend(parse_server_event(item) for item in items)
            if len(items) < self._page_size:
                break
            page += 1
        return events

    async def update_status(
        self,
        match_id: str,
        phase: MatchPhase,
        anchors: ClockAnchors,
        period_timestamps: Optional[dict[str, Any]] = None,
    ) -> None:
        body: dict[str, Any] = {"status": phase.value, "anchors": anchors.model_dump(mode="json")}
        if period_timestamps:
            body["period_timestamps"] = period_timestamps
        await self._client.patch(
            f"/logger/matches/{match_id}/status",
            json=body,
            operation="update_status",
        )

    async def update_clock(self, match_id: str, anchors: ClockAnchors) -> None:
        await self._client.patch(
            f"/logger/matches/{match_id}/clock-mode",
            json=anchors.model_dump(mode="json"),
            operation="update_clock",
        )

    async def reset(self, match_id: str) -> None:
        await self._client.post(f"/logger/matches/{match_id}/reset", operation="reset")

    async def update_event(self, event: MatchEvent) -> MatchEvent:
        data = await self._client.put(
            f"/events/{event.server_id}",
            json=event.model_dump(mode="json", exclude={"server_id"}),
            operation="update_event",
        )
        return parse_server_event(data) if data else event

    async def delete_event(self, server_id: str) -> None:
        await self._client.delete(f"/events/{server_id}", operation="delete_event")


class HTTPEventChannel(EventChannel):
    """Synchronous request/response channel: every send is answered with its ack."""

    def __init__(self, client: LoggerHTTPClient) -> None:
        self._client = client

    async def send(self, event: MatchEvent) -> Optional[Ack]:
        try:
            data = await self._client.post(
                f"/logger/matches/{event.match_id}/events",
                json=event.model_dump(mode="json", exclude={"server_id"}),
                operation="send_event",
            )
        except ValidationError as exc:
            return Ack(
                client_id=event.client_id,
                status=AckStatus.ERROR,
                message=exc.message,
                field_errors=exc.field_errors,
            )
        ack = Ack.model_validate(data or {})
        if ack.client_id is None:
            ack = ack.model_copy(update={"client_id": event.client_id})
        return ack

    async def send_undo(self, event: MatchEvent) -> Optional[bool]:
        if event.server_id:
            await self._client.delete(f"/events/{event.server_id}", operation="undo_event")
        else:
            await self._client.post(
                f"/logger/matches/{event.match_id}/events/undo",
                json={"client_id": event.client_id},
                operation="undo_event",
            )
        return True


class HTTPSubstitutionValidator(SubstitutionValidator):
    def __init__(self, client: LoggerHTTPClient) -> None:
        self._client = client

    async def validate(
        self,
        match_id: str,
        team_id: str,
        player_off_id: str,
        player_on_id: str,
        period: int,
        is_concussion: bool = False,
    ) -> SubstitutionCheck:
        try:
            data = await self._client.post(
                f"/logger/matches/{match_id}/validate-substitution",
                json={
                    "team_id": team_id,
                    "player_off_id": player_off_id,
                    "player_on_id": player_on_id,
                    "period": period,
                    "is_concussion": is_concussion,
                },
                operation="validate_substitution",
            )
        except ValidationError as exc:
            return SubstitutionCheck(is_valid=False, error_message=exc.message)
        return SubstitutionCheck.model_validate(data)

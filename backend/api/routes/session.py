"""
Operator command endpoints for the active logger session.

GET  /v1/session/status: Counters, phase, clock and banners.
GET  /v1/session/timeline: Canonically ordered timeline with delivery status.
POST /v1/session/events: Record an event draft (cards escalate automatically).
POST /v1/session/undo: Undo the newest unit.
POST /v1/session/transition: Move to another match phase.
POST /v1/session/reset: Wipe the match (typed confirmation required).
"""
from __future__ import annotations

from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from shared.models.domain import EventDraft, SessionStatus
from shared.models.enums import ClockMode, MatchPhase

from api.dependencies import get_session
from session.context import LoggerSession

router = APIRouter(prefix="/v1/session", tags=["session"])


# ── Request bodies ──────────────────────────────────────────────────────
class ActionRequest(BaseModel):
    team_id: str
    player_id: str
    action: str
    outcome: str
    recipient_id: Optional[str] = None


class TurboRequest(BaseModel):
    text: str = Field(min_length=1)


class SubstitutionRequest(BaseModel):
    team_id: str
    player_off_id: str
    player_on_id: str
    is_concussion: bool = False


class CardCancelRequest(BaseModel):
    team_id: str
    player_id: str


class NotesRequest(BaseModel):
    notes: Optional[str] = None


class TransitionRequest(BaseModel):
    target: MatchPhase


class ClockModeRequest(BaseModel):
    mode: ClockMode
    trigger_action: Optional[str] = None
    trigger_team_id: Optional[str] = None


class ResetRequest(BaseModel):
    confirm: str
    force: bool = False
    actor: Optional[str] = None


# ── Reads ───────────────────────────────────────────────────────────────
@router.get("/status", response_model=SessionStatus)
async def get_status(session: LoggerSession = Depends(get_session)) -> SessionStatus:
    return session.status()


@router.get("/timeline")
async def get_timeline(session: LoggerSession = Depends(get_session)) -> list[dict[str, Any]]:
    return [entry.to_dict() for entry in session.timeline()]


@router.get("/discipline")
async def get_discipline(session: LoggerSession = Depends(get_session)) -> dict[str, Any]:
    return {player_id: state.to_dict() for player_id, state in session.discipline().items()}


@router.get("/ineffective")
async def get_ineffective(session: LoggerSession = Depends(get_session)) -> dict[str, object]:
    return session.ineffective_breakdown().to_dict()


# ── Events ──────────────────────────────────────────────────────────────
@router.post("/events", status_code=201)
async def submit_event(
    draft: EventDraft, session: LoggerSession = Depends(get_session)
) -> dict[str, Any]:
    client_ids = await session.submit_drafts(session.prepare(draft))
    return {"client_id": client_ids[0], "client_ids": client_ids}


@router.post("/actions", status_code=201)
async def perform_action(
    body: ActionRequest, session: LoggerSession = Depends(get_session)
) -> dict[str, Any]:
    client_ids, result = await session.perform_action(
        body.team_id, body.player_id, body.action, body.outcome, body.recipient_id
    )
    return {
        "client_ids": client_ids,
        "escalated": result.escalated,
        "stoppage_trigger": result.stoppage_trigger.value if result.stoppage_trigger else None,
    }


@router.post("/turbo", status_code=201)
async def submit_turbo(
    body: TurboRequest, session: LoggerSession = Depends(get_session)
) -> dict[str, Any]:
    client_ids, result = await session.submit_turbo(body.text)
    return {"client_ids": client_ids, "escalated": result.escalated}


@router.post("/substitutions", status_code=201)
async def submit_substitution(
    body: SubstitutionRequest, session: LoggerSession = Depends(get_session)
) -> dict[str, Any]:
    client_id, check = await session.submit_substitution(
        body.team_id, body.player_off_id, body.player_on_id, body.is_concussion
    )
    return {"client_id": client_id, "team_status": check.team_status}


@router.post("/cards/cancel", status_code=201)
async def cancel_card(
    body: CardCancelRequest, session: LoggerSession = Depends(get_session)
) -> dict[str, Any]:
    return {"client_ids": await session.cancel_card(body.team_id, body.player_id)}


@router.post("/events/{client_id}/retry")
async def retry_event(client_id: str, session: LoggerSession = Depends(get_session)) -> dict[str, Any]:
    await session.retry(client_id)
    return {"client_id": client_id}


@router.patch("/events/{client_id}")
async def update_notes(
    client_id: str, body: NotesRequest, session: LoggerSession = Depends(get_session)
) -> dict[str, Any]:
    event = await session.update_notes(client_id, body.notes)
    return event.model_dump(mode="json")


@router.delete("/events/{client_id}", status_code=204)
async def delete_event(
    client_id: str,
    confirm: str = Query(..., description="Typed confirmation text"),
    session: LoggerSession = Depends(get_session),
) -> None:
    await session.delete_event(client_id, confirm)


@router.post("/undo")
async def undo(session: LoggerSession = Depends(get_session)) -> dict[str, Any]:
    client_ids = await session.undo()
    return {"client_ids": client_ids}


@router.post("/duplicates/dismiss", status_code=204)
async def dismiss_duplicate(session: LoggerSession = Depends(get_session)) -> None:
    session.dismiss_duplicate()


@router.post("/refresh")
async def refresh(session: LoggerSession = Depends(get_session)) -> SessionStatus:
    await session.refresh("operator")
    return session.status()


# ── Phases and clock ────────────────────────────────────────────────────
@router.post("/transition")
async def transition(
    body: TransitionRequest, session: LoggerSession = Depends(get_session)
) -> SessionStatus:
    await session.transition(body.target)
    return session.status()


@router.post("/transition/retry")
async def retry_transition(session: LoggerSession = Depends(get_session)) -> SessionStatus:
    await session.retry_transition()
    return session.status()


@router.post("/clock/mode")
async def switch_clock_mode(
    body: ClockModeRequest, session: LoggerSession = Depends(get_session)
) -> SessionStatus:
    await session.switch_clock_mode(body.mode, body.trigger_action, body.trigger_team_id)
    return session.status()


@router.post("/clock/{command}")
async def clock_command(
    command: Literal["start", "stop"], session: LoggerSession = Depends(get_session)
) -> SessionStatus:
    if command == "start":
        await session.start_clock()
    else:
        await session.stop_clock()
    return session.status()


@router.post("/var/{command}")
async def var_command(
    command: Literal["start", "stop", "pause", "resume"],
    session: LoggerSession = Depends(get_session),
) -> SessionStatus:
    handlers = {
        "start": session.var_start,
        "stop": session.var_stop,
        "pause": session.var_pause,
        "resume": session.var_resume,
    }
    await handlers[command]()
    return session.status()


@router.post("/reset")
async def reset(body: ResetRequest, session: LoggerSession = Depends(get_session)) -> SessionStatus:
    await session.reset(body.confirm, force=body.force, actor=body.actor)
    return session.status()

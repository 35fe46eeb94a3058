"""FastAPI endpoints under /api.

Session operations: join, state, action. Directory: list and clear.
All handlers go through the SessionHub stored on ``app.state.hub``; error
mapping to HTTP status codes lives in rpg_session.app.
"""

from fastapi import APIRouter, HTTPException, Request

from rpg_session.coordinator import SessionHub
from rpg_session.models import ActionPayload, ActionResult, JoinPayload, JoinResult, StateResult

router = APIRouter()


def _hub(request: Request) -> SessionHub:
    return request.app.state.hub


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/session/state", response_model=StateResult)
async def session_state(request: Request, sessionId: str | None = None):
    """Current players, recent messages and combat state of one session."""
    if not sessionId:
        raise HTTPException(400, "Missing sessionId")
    return await _hub(request).state(sessionId)


@router.post("/session/join", response_model=JoinResult)
async def join_session(request: Request, body: JoinPayload):
    """Join (or rename within) a session. Creates the session on first join."""
    return await _hub(request).join(body.session_id, body.player_id, body.name)


@router.post("/session/action", response_model=ActionResult)
async def session_action(request: Request, body: ActionPayload):
    """Submit a player action and get the narrator's reply."""
    return await _hub(request).act(body.session_id, body.player_id, body.player_action)


@router.get("/sessions")
async def list_sessions(request: Request):
    """Ids of sessions that currently have players."""
    return {"sessions": await _hub(request).list_sessions()}


@router.post("/sessions/clear")
async def clear_sessions(request: Request):
    """Forget every session id in the directory. Session snapshots are kept."""
    await _hub(request).clear_sessions()
    return {"ok": True}

import logging
import secrets
from typing import Any

from fastapi import APIRouter, Body, HTTPException, Request
from pydantic import ValidationError as PydanticValidationError

from server.src.modules.gateway_events import Reply, parse_event
from server.src.modules.notes_db import NotesContext
from server.src.modules.notes_dispatcher import dispatch

logger = logging.getLogger(__name__)


router = APIRouter(
    tags=["interactions"],
)


def get_notes_context(request: Request) -> NotesContext:
    ctx = getattr(request.app.state, "notes", None)
    if ctx is None:
        raise HTTPException(status_code=503, detail="Storage is not configured")
    return ctx


def require_relay(request: Request) -> None:
    expected = getattr(request.app.state, "relay_token", None)
    if not expected:
        return
    header = request.headers.get("Authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(token.strip(), expected):
        logger.warning("rejected interaction with bad relay token from %s", request.client.host if request.client else "?")
        raise HTTPException(status_code=401, detail="Not authenticated")


@router.post("/interactions", response_model=Reply)
async def receive_interaction(request: Request, payload: dict[str, Any] = Body(...)) -> Reply:
    require_relay(request)
    try:
        event = parse_event(payload)
    except PydanticValidationError as exc:
        logger.info("malformed interaction payload: %s", exc.errors()[:3])
        raise HTTPException(status_code=422, detail="Malformed interaction") from exc
    return await dispatch(event, get_notes_context(request))

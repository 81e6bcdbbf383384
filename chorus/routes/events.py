#  Chorus - Session Stream Routes
#
#  Server-Sent Events streams of one session: the status stream, and the
#  full event feed with replay from a seq (query param or Last-Event-ID).
#  EventSource cannot send headers, so the stream authenticates with a
#  short-lived token scoped to one session, issued by the token endpoint.
#
#  Depends on: container.py, services/stream.py, services/auth.py, middleware/auth.py
#  Used by:    app.py

from dependency_injector.wiring import inject, Provide
from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import StreamingResponse

from chorus.config import AUTH_STREAM_TOKEN_EXPIRE_SECONDS
from chorus.container import Container
from chorus.exceptions import ValidationError
from chorus.middleware.auth import get_current_user, get_user_from_stream_token
from chorus.models.schemas import StreamTokenOut
from chorus.services.auth import AuthService
from chorus.services.sessions import SessionRegistry
from chorus.services.stream import SessionStream

router = APIRouter(prefix="/events", tags=["events"])

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.post("/{session_id}/token")
@inject
async def create_stream_token(
    session_id: str,
    current_user: dict = Depends(get_current_user),
    registry: SessionRegistry = Depends(Provide[Container.registry]),
    auth: AuthService = Depends(Provide[Container.auth]),
) -> StreamTokenOut:
    """Issue a short-lived stream token scoped to a single session."""
    await registry.get(session_id, current_user["id"])
    token = auth.create_stream_token(current_user["id"], session_id)
    return StreamTokenOut(token=token, expires_in=AUTH_STREAM_TOKEN_EXPIRE_SECONDS)


@router.get("/{session_id}")
@inject
async def stream_session(
    session_id: str,
    request: Request,
    user: dict = Depends(get_user_from_stream_token),
    registry: SessionRegistry = Depends(Provide[Container.registry]),
    stream: SessionStream = Depends(Provide[Container.stream]),
):
    """Status snapshot, then status changes, keepalives and a final result or error."""
    # Ownership is checked before the response starts so a miss is a clean 404.
    await registry.get(session_id, user["id"])
    return StreamingResponse(
        stream.stream(session_id, user["id"], is_disconnected=request.is_disconnected),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


@router.get("/{session_id}/feed")
@inject
async def stream_session_events(
    session_id: str,
    request: Request,
    after_seq: int = Query(0, ge=0),
    last_event_id: str | None = Header(None, alias="Last-Event-ID"),
    user: dict = Depends(get_user_from_stream_token),
    registry: SessionRegistry = Depends(Provide[Container.registry]),
    stream: SessionStream = Depends(Provide[Container.stream]),
):
    """Every event after after_seq (or Last-Event-ID on reconnect), then live events."""
    if last_event_id:
        try:
            after_seq = int(last_event_id)
        except ValueError:
            raise ValidationError(f"Last-Event-ID must be an event seq, got {last_event_id!r}")
        if after_seq < 0:
            raise ValidationError("Last-Event-ID must not be negative")

    await registry.get(session_id, user["id"])
    return StreamingResponse(
        stream.events(
            session_id, user["id"], after_seq=after_seq, is_disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )

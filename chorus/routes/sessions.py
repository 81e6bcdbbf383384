#  Chorus - Session Routes
#
#  Create, list, inspect and delete orchestration sessions, plus event
#  history with replay-from-seq. Every endpoint is scoped to the caller:
#  another owner's session is indistinguishable from a missing one.
#
#  Depends on: container.py, models/schemas.py, services/sessions.py,
#              services/events.py, services/projection.py, services/task_queue.py,
#              middleware/auth.py
#  Used by:    app.py

import logging

from dependency_injector.wiring import inject, Provide
from fastapi import APIRouter, Depends, Query, Request, Response

from chorus.config import SESSION_CREATE_RATE_LIMIT
from chorus.container import Container
from chorus.middleware.auth import get_current_user
from chorus.models.enums import SessionStatus, TimelineOrder
from chorus.models.schemas import (
    EventOut,
    SessionCreate,
    SessionDetailOut,
    SessionOut,
    SessionStats,
)
from chorus.rate_limit import limiter
from chorus.services.events import EventEmitter
from chorus.services.feed import ChangeFeed
from chorus.services.projection import project
from chorus.services.sessions import SessionRegistry
from chorus.services.task_queue import TaskQueue

logger = logging.getLogger("chorus.routes.sessions")

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.post("", status_code=201)
@limiter.limit(SESSION_CREATE_RATE_LIMIT)
@inject
async def create_session(
    request: Request,
    body: SessionCreate,
    current_user: dict = Depends(get_current_user),
    registry: SessionRegistry = Depends(Provide[Container.registry]),
    queue: TaskQueue = Depends(Provide[Container.queue]),
) -> SessionOut:
    """Create a pending session and enqueue its orchestration task."""
    session = await registry.create_session(current_user["id"], thread_id=body.thread_id)
    await queue.send({
        "session_id": session["id"],
        "owner_id": current_user["id"],
        "type": body.type.value,
        "config": body.config,
    })
    logger.info("Enqueued %s task for session %s", body.type.value, session["id"])
    return SessionOut(**session)


@router.get("")
@inject
async def list_sessions(
    thread_id: str | None = None,
    status: SessionStatus | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    current_user: dict = Depends(get_current_user),
    registry: SessionRegistry = Depends(Provide[Container.registry]),
) -> list[SessionOut]:
    sessions = await registry.list_sessions(
        current_user["id"], thread_id=thread_id, status=status, limit=limit, offset=offset,
    )
    return [SessionOut(**s) for s in sessions]


@router.get("/stats")
@inject
async def session_stats(
    current_user: dict = Depends(get_current_user),
    registry: SessionRegistry = Depends(Provide[Container.registry]),
) -> SessionStats:
    return SessionStats(**await registry.stats(current_user["id"]))


@router.get("/{session_id}")
@inject
async def get_session(
    session_id: str,
    order: TimelineOrder = TimelineOrder.OLDEST,
    current_user: dict = Depends(get_current_user),
    registry: SessionRegistry = Depends(Provide[Container.registry]),
    emitter: EventEmitter = Depends(Provide[Container.emitter]),
) -> SessionDetailOut:
    """One session with its full event history and the projection built from it."""
    session = await registry.get(session_id, current_user["id"])
    events = await emitter.list_events(session_id)
    projection = project(events)
    return SessionDetailOut(
        **session,
        events=[EventOut(**e) for e in events],
        projection=projection.to_dict(order=order),
    )


@router.get("/{session_id}/events")
@inject
async def list_session_events(
    session_id: str,
    after_seq: int | None = Query(default=None, ge=0),
    limit: int = Query(default=500, ge=1, le=5000),
    current_user: dict = Depends(get_current_user),
    registry: SessionRegistry = Depends(Provide[Container.registry]),
    emitter: EventEmitter = Depends(Provide[Container.emitter]),
) -> list[EventOut]:
    """Events in insertion order. Pass after_seq to resume from the last one seen."""
    await registry.get(session_id, current_user["id"])
    events = await emitter.list_events(session_id, after_seq=after_seq, limit=limit)
    return [EventOut(**e) for e in events]


@router.delete("/{session_id}", status_code=204)
@inject
async def delete_session(
    session_id: str,
    current_user: dict = Depends(get_current_user),
    registry: SessionRegistry = Depends(Provide[Container.registry]),
    feed: ChangeFeed = Depends(Provide[Container.feed]),
):
    await registry.delete_session(session_id, current_user["id"])
    feed.forget(session_id)
    return Response(status_code=204)

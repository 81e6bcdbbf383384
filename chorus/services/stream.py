#  Chorus - Session Streams
#
#  Two Server-Sent Events renderings of one session:
#  - stream(): a status snapshot, a message per status change and a final
#    result/error message, for lightweight observers.
#  - events(): every committed event with its seq as the SSE id, replayed
#    from a seq and then followed live, for clients that keep their own
#    projection.
#  Both send an inert keepalive comment whenever nothing has been written
#  for a heartbeat interval, and close themselves once the session ends.
#
#  Depends on: services/feed.py, services/events.py, services/sessions.py, config.py
#  Used by:    routes/events.py, container.py

import asyncio
import json
import logging
import time
from typing import AsyncIterator, Awaitable, Callable

from chorus.config import (
    STREAM_CLOSE_GRACE,
    STREAM_HEARTBEAT_INTERVAL,
    STREAM_MAX_DURATION,
)
from chorus.models.enums import TERMINAL_STATUSES, EventType, SessionStatus, StreamMessage
from chorus.services.events import fetch_events

logger = logging.getLogger("chorus.stream")

KEEPALIVE = ": keepalive\n\n"

_TERMINAL_VALUES = {s.value for s in TERMINAL_STATUSES}

# render(event) -> (frame or None, stream is finished)
Renderer = Callable[[dict], tuple[str | None, bool]]


def format_sse(kind: StreamMessage | str, body: dict) -> str:
    kind = kind.value if isinstance(kind, StreamMessage) else kind
    return f"event: {kind}\ndata: {json.dumps(body, default=str)}\n\n"


def format_event(event: dict) -> str:
    """One committed event as an SSE frame whose id is the event's seq."""
    return (
        f"id: {event['seq']}\n"
        f"event: {event['event_type']}\n"
        f"data: {json.dumps(event, default=str)}\n\n"
    )


def is_terminal_event(event: dict) -> bool:
    return (
        event["event_type"] == EventType.STATUS_UPDATE.value
        and event["event_data"].get("to") in _TERMINAL_VALUES
    )


def _snapshot(session: dict) -> dict:
    return {
        "session_id": session["id"],
        "status": session["status"],
        "thread_id": session.get("thread_id"),
        "started_at": session.get("started_at"),
        "execution_count": session.get("execution_count", 0),
    }


class SessionStream:
    """Produces the SSE streams for one observer at a time."""

    def __init__(
        self,
        *,
        registry,
        feed,
        heartbeat_interval: float = STREAM_HEARTBEAT_INTERVAL,
        close_grace: float = STREAM_CLOSE_GRACE,
        max_duration: float = STREAM_MAX_DURATION,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._registry = registry
        self._feed = feed
        self._heartbeat = heartbeat_interval
        self._grace = close_grace
        self._max_duration = max_duration
        self._clock = clock

    async def stream(
        self,
        session_id: str,
        owner_id: str,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> AsyncIterator[str]:
        """Yield SSE frames until the session finishes or the caller goes away.

        Raises NotFoundError before yielding anything if owner_id cannot see
        the session.
        """
        sub = self._feed.subscribe(session_id)
        try:
            session = await self._registry.get(session_id, owner_id)
            status = session["status"]
            yield format_sse(StreamMessage.STATUS, _snapshot(session))

            if status == SessionStatus.COMPLETED.value:
                yield format_sse(StreamMessage.RESULT, {
                    "status": status, "final_response": session.get("final_response"),
                })
                return
            if status == SessionStatus.FAILED.value:
                yield format_sse(StreamMessage.ERROR, {
                    "status": status, "error": session.get("error"),
                })
                return

            def render(event: dict) -> tuple[str | None, bool]:
                nonlocal status
                if event["event_type"] != EventType.STATUS_UPDATE.value:
                    return None, False
                data = event["event_data"]
                new_status = data.get("to")
                # Same-status updates are progress records, not changes
                if new_status == status:
                    return None, False
                status = new_status

                if status == SessionStatus.COMPLETED.value:
                    return format_sse(StreamMessage.RESULT, {
                        "status": status, "final_response": data.get("final_response"),
                    }), True
                if status == SessionStatus.FAILED.value:
                    return format_sse(StreamMessage.ERROR, {
                        "status": status, "error": data.get("error"),
                    }), True
                return format_sse(StreamMessage.STATUS, {
                    "session_id": session_id,
                    "status": status,
                    "message": data.get("message"),
                }), False

            async for frame in self._follow(sub, session_id, render, is_disconnected):
                yield frame
        finally:
            sub.close()

    async def events(
        self,
        session_id: str,
        owner_id: str,
        after_seq: int = 0,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> AsyncIterator[str]:
        """Yield every event after after_seq, then new ones as they commit.

        A finished session replays its remaining log and closes. Raises
        NotFoundError before yielding anything if owner_id cannot see the
        session.
        """
        sub = self._feed.subscribe(session_id, after_seq=after_seq)
        try:
            session = await self._registry.get(session_id, owner_id)
            if session["status"] in _TERMINAL_VALUES:
                for event in await fetch_events(self._feed.db, session_id, after_seq=after_seq):
                    yield format_event(event)
                return

            def render(event: dict) -> tuple[str | None, bool]:
                return format_event(event), is_terminal_event(event)

            async for frame in self._follow(sub, session_id, render, is_disconnected):
                yield frame
        finally:
            sub.close()

    async def _follow(
        self,
        sub,
        session_id: str,
        render: Renderer,
        is_disconnected: Callable[[], Awaitable[bool]] | None,
    ) -> AsyncIterator[str]:
        """Pump the subscription through render(), keeping the connection warm.

        The keepalive clock measures time since the last frame written, so a
        busy session whose events are all filtered out still gets heartbeats.
        """
        deadline = self._clock() + self._max_duration
        last_write = self._clock()
        while True:
            if is_disconnected is not None and await is_disconnected():
                logger.info("Stream observer for session %s disconnected", session_id)
                return
            now = self._clock()
            remaining = deadline - now
            if remaining <= 0:
                logger.info("Stream for session %s reached its maximum duration", session_id)
                return

            idle = now - last_write
            if idle >= self._heartbeat:
                yield KEEPALIVE
                last_write = self._clock()
                continue

            event = await sub.next_event(timeout=min(self._heartbeat - idle, remaining))
            if event is None:
                continue

            frame, finished = render(event)
            if frame is not None:
                yield frame
                last_write = self._clock()
            if finished:
                await asyncio.sleep(self._grace)
                return

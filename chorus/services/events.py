#  Chorus - Event Emitter
#
#  The single write path into the append-only event log. Each append
#  validates the payload, applies any status transition, inserts the row
#  and bumps the session counters in one transaction, then hands the
#  committed event to the change feed.
#
#  Depends on: db/connection.py, models/events.py, services/sessions.py,
#              services/feed.py
#  Used by:    services/runner.py, services/orchestrations.py, services/feed.py,
#              services/stream.py, routes/sessions.py

import json
import logging
import time
import uuid

from chorus.exceptions import InvalidPayloadError, NotFoundError
from chorus.models.enums import EventType, SessionStatus
from chorus.models.events import coerce_event_type, normalize_event_data
from chorus.services.sessions import DEFAULT_FAILURE_MESSAGE

logger = logging.getLogger("chorus.events")


def row_to_event(row) -> dict:
    return {
        "id": row["id"],
        "seq": row["seq"],
        "session_id": row["session_id"],
        "event_type": row["event_type"],
        "event_data": json.loads(row["event_data_json"] or "{}"),
        "metadata": json.loads(row["metadata_json"]) if row["metadata_json"] else None,
        "created_at": row["created_at"],
    }


async def fetch_events(
    db, session_id: str, after_seq: int | None = None, limit: int | None = None,
) -> list[dict]:
    """Read a session's events in insertion (seq) order."""
    sql = "SELECT * FROM orchestration_events WHERE session_id = ?"
    params: list = [session_id]
    if after_seq is not None:
        sql += " AND seq > ?"
        params.append(after_seq)
    sql += " ORDER BY seq"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(limit)
    rows = await db.fetchall(sql, params)
    return [row_to_event(r) for r in rows]


class EventEmitter:
    """Appends typed events and keeps session aggregates in step with them."""

    def __init__(self, *, db, registry, feed=None):
        self._db = db
        self._registry = registry
        self._feed = feed

    async def append(
        self,
        session_id: str,
        event_type: EventType | str,
        event_data: dict,
        metadata: dict | None = None,
    ) -> str:
        """Append one event and return its id.

        Raises InvalidEventTypeError / InvalidPayloadError before touching the
        store, NotFoundError for an unknown session, and InvalidTransitionError
        when a status_update would leave a terminal state. Nothing is written
        when any of these is raised.
        """
        etype = coerce_event_type(event_type)
        data = normalize_event_data(etype, event_data)
        if metadata is not None and not isinstance(metadata, dict):
            raise InvalidPayloadError("metadata must be an object")

        event_id = uuid.uuid4().hex
        async with self._db.transaction():
            row = await self._db.fetchone(
                "SELECT status FROM orchestration_sessions WHERE id = ?", (session_id,)
            )
            if row is None:
                raise NotFoundError(f"Session {session_id} not found")

            if etype == EventType.STATUS_UPDATE:
                # Stored event and session row must carry the same failure text
                if data["to"] == SessionStatus.FAILED.value and not data.get("error"):
                    data["error"] = DEFAULT_FAILURE_MESSAGE
                previous = await self._registry.transition(
                    session_id,
                    data["to"],
                    final_response=data.get("final_response"),
                    error=data.get("error"),
                )
                data["from"] = previous.value

            now = time.time()
            cursor = await self._db.execute_write(
                "INSERT INTO orchestration_events "
                "(id, session_id, event_type, event_data_json, metadata_json, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    event_id, session_id, etype.value, json.dumps(data),
                    json.dumps(metadata) if metadata is not None else None, now,
                ),
            )
            seq = cursor.lastrowid

            if etype == EventType.TOOL_CALL:
                await self._registry.bump_counters(session_id, executions=1)
            elif etype == EventType.ERROR:
                await self._registry.bump_counters(session_id, errors=1)

        event = {
            "id": event_id,
            "seq": seq,
            "session_id": session_id,
            "event_type": etype.value,
            "event_data": data,
            "metadata": metadata,
            "created_at": now,
        }
        # No await between commit and publish, so feed order matches commit order.
        if self._feed is not None:
            self._feed.publish(event)
        logger.debug(
            "Event %s appended to session %s", event_id, session_id,
            extra={"event_type": etype.value, "seq": seq},
        )
        return event_id

    async def list_events(
        self, session_id: str, after_seq: int | None = None, limit: int | None = None,
    ) -> list[dict]:
        return await fetch_events(self._db, session_id, after_seq, limit)

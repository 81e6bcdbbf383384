#  Chorus - Session Registry
#
#  One row per orchestration run. Owns the status state machine, the
#  terminal payload (final_response / error), the counters and the
#  runner-owned tool_state. Status changes are compare-and-set on the
#  current status, so two writers can never both win a transition.
#
#  Depends on: db/connection.py, models/enums.py, exceptions.py
#  Used by:    services/events.py, services/runner.py, services/stream.py,
#              routes/sessions.py, routes/events.py

import json
import logging
import time
import uuid

from chorus.exceptions import (
    InvalidPayloadError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
)
from chorus.models.enums import ALLOWED_TRANSITIONS, TERMINAL_STATUSES, SessionStatus

logger = logging.getLogger("chorus.sessions")

DEFAULT_FAILURE_MESSAGE = "Orchestration failed without an error message"


def row_to_session(row) -> dict:
    """Convert an orchestration_sessions row into the API/session dict."""
    d = dict(row)
    d["tool_state"] = json.loads(d.pop("tool_state_json") or "{}")
    return d


class SessionRegistry:
    """CRUD and status transitions for orchestration sessions."""

    def __init__(self, *, db):
        self._db = db

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    async def create_session(self, owner_id: str, thread_id: str | None = None) -> dict:
        session_id = uuid.uuid4().hex
        now = time.time()
        await self._db.execute_write(
            "INSERT INTO orchestration_sessions "
            "(id, owner_id, thread_id, status, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (session_id, owner_id, thread_id, SessionStatus.PENDING.value, now, now),
        )
        logger.info("Session %s created for owner %s", session_id, owner_id)
        return await self.get_any(session_id)

    async def get_any(self, session_id: str) -> dict:
        """Fetch a session without an ownership check. Internal callers only."""
        row = await self._db.fetchone(
            "SELECT * FROM orchestration_sessions WHERE id = ?", (session_id,)
        )
        if row is None:
            raise NotFoundError(f"Session {session_id} not found")
        return row_to_session(row)

    async def get(self, session_id: str, owner_id: str) -> dict:
        """Fetch a session visible to owner_id.

        A session owned by someone else is reported exactly like a missing
        one so callers cannot probe for other owners' session ids.
        """
        row = await self._db.fetchone(
            "SELECT * FROM orchestration_sessions WHERE id = ? AND owner_id = ?",
            (session_id, owner_id),
        )
        if row is None:
            raise NotFoundError(f"Session {session_id} not found")
        return row_to_session(row)

    async def list_sessions(
        self,
        owner_id: str,
        *,
        thread_id: str | None = None,
        status: SessionStatus | str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict]:
        clauses = ["owner_id = ?"]
        params: list = [owner_id]
        if thread_id is not None:
            clauses.append("thread_id = ?")
            params.append(thread_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(SessionStatus(status).value)
        params.extend([limit, offset])
        rows = await self._db.fetchall(
            f"SELECT * FROM orchestration_sessions WHERE {' AND '.join(clauses)} "
            "ORDER BY created_at DESC, id LIMIT ? OFFSET ?",
            params,
        )
        return [row_to_session(r) for r in rows]

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def transition(
        self,
        session_id: str,
        new_status: SessionStatus | str,
        *,
        final_response: str | None = None,
        error: str | None = None,
    ) -> SessionStatus:
        """Move a session to new_status. Returns the status it moved from.

        A move to the session's current non-terminal status is a progress
        record and changes nothing. Leaving a terminal status, or any move
        outside ALLOWED_TRANSITIONS, raises InvalidTransitionError.
        """
        new_status = SessionStatus(new_status)
        if new_status == SessionStatus.COMPLETED and error is not None:
            raise InvalidPayloadError("A completed session cannot carry an error")
        if new_status == SessionStatus.FAILED and final_response is not None:
            raise InvalidPayloadError("A failed session cannot carry a final_response")

        async with self._db.transaction():
            row = await self._db.fetchone(
                "SELECT status FROM orchestration_sessions WHERE id = ?", (session_id,)
            )
            if row is None:
                raise NotFoundError(f"Session {session_id} not found")
            current = SessionStatus(row["status"])

            if current not in TERMINAL_STATUSES and new_status == current:
                return current

            if new_status not in ALLOWED_TRANSITIONS[current]:
                logger.warning(
                    "Rejected transition for session %s: %s -> %s",
                    session_id, current.value, new_status.value,
                )
                raise InvalidTransitionError(session_id, current.value, new_status.value)

            now = time.time()
            sets = ["status = ?", "updated_at = ?"]
            params: list = [new_status.value, now]
            if new_status == SessionStatus.RUNNING:
                sets.append("started_at = COALESCE(started_at, ?)")
                params.append(now)
            elif new_status == SessionStatus.COMPLETED:
                sets.extend(["final_response = ?", "completed_at = ?"])
                params.extend([final_response, now])
            elif new_status == SessionStatus.FAILED:
                sets.extend(["error = ?", "completed_at = ?"])
                params.extend([error or DEFAULT_FAILURE_MESSAGE, now])

            cursor = await self._db.execute_write(
                f"UPDATE orchestration_sessions SET {', '.join(sets)} "
                "WHERE id = ? AND status = ?",
                (*params, session_id, current.value),
            )
            if cursor.rowcount == 0:
                logger.warning(
                    "Lost status race for session %s (%s -> %s)",
                    session_id, current.value, new_status.value,
                )
                raise InvalidTransitionError(session_id, current.value, new_status.value)

        logger.info("Session %s: %s -> %s", session_id, current.value, new_status.value)
        return current

    # ------------------------------------------------------------------
    # Aggregates and runner state
    # ------------------------------------------------------------------

    async def bump_counters(self, session_id: str, *, executions: int = 0, errors: int = 0):
        """Increment execution_count / error_count. Never decrements."""
        if executions < 0 or errors < 0:
            raise ValueError("Counters are monotonic")
        cursor = await self._db.execute_write(
            "UPDATE orchestration_sessions SET execution_count = execution_count + ?, "
            "error_count = error_count + ?, updated_at = ? WHERE id = ?",
            (executions, errors, time.time(), session_id),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"Session {session_id} not found")

    async def update_tool_state(self, session_id: str, patch: dict) -> dict:
        """Shallow-merge patch into the session's tool_state and return the result."""
        async with self._db.transaction():
            row = await self._db.fetchone(
                "SELECT tool_state_json FROM orchestration_sessions WHERE id = ?",
                (session_id,),
            )
            if row is None:
                raise NotFoundError(f"Session {session_id} not found")
            state = json.loads(row["tool_state_json"] or "{}")
            state.update(patch)
            await self._db.execute_write(
                "UPDATE orchestration_sessions SET tool_state_json = ?, updated_at = ? "
                "WHERE id = ?",
                (json.dumps(state), time.time(), session_id),
            )
        return state

    async def delete_session(self, session_id: str, owner_id: str):
        """Delete a finished session and, by cascade, its event log."""
        session = await self.get(session_id, owner_id)
        if SessionStatus(session["status"]) not in TERMINAL_STATUSES:
            raise InvalidStateError(
                f"Session {session_id} is {session['status']}; only finished sessions can be deleted"
            )
        await self._db.execute_write(
            "DELETE FROM orchestration_sessions WHERE id = ? AND owner_id = ?",
            (session_id, owner_id),
        )
        logger.info("Session %s deleted", session_id)

    async def stats(self, owner_id: str) -> dict:
        rows = await self._db.fetchall(
            "SELECT status, COUNT(*) AS n FROM orchestration_sessions "
            "WHERE owner_id = ? GROUP BY status",
            (owner_id,),
        )
        by_status = {s.value: 0 for s in SessionStatus}
        for r in rows:
            by_status[r["status"]] = r["n"]

        avg_row = await self._db.fetchone(
            "SELECT AVG(completed_at - started_at) AS avg_duration FROM orchestration_sessions "
            "WHERE owner_id = ? AND status = ? AND started_at IS NOT NULL "
            "AND completed_at IS NOT NULL",
            (owner_id, SessionStatus.COMPLETED.value),
        )
        events_row = await self._db.fetchone(
            "SELECT COUNT(*) AS n FROM orchestration_events e "
            "JOIN orchestration_sessions s ON s.id = e.session_id WHERE s.owner_id = ?",
            (owner_id,),
        )
        avg = avg_row["avg_duration"] if avg_row else None
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "avg_duration_seconds": round(avg, 3) if avg is not None else None,
            "total_events": events_row["n"] if events_row else 0,
        }

#  Chorus - Event Emitter Tests
#
#  Tests for EventEmitter.append(): payload validation, atomic status
#  transitions, counters, insertion order and change-feed publication.
#
#  Depends on: chorus/services/events.py, chorus/services/sessions.py,
#              chorus/services/feed.py
#  Used by:    pytest

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chorus.exceptions import (
    InvalidEventTypeError,
    InvalidPayloadError,
    InvalidTransitionError,
    NotFoundError,
)
from chorus.services.events import EventEmitter


async def _event_count(db, session_id):
    row = await db.fetchone(
        "SELECT COUNT(*) AS n FROM orchestration_events WHERE session_id = ?", (session_id,)
    )
    return row["n"]


class TestValidation:
    async def test_unknown_type_rejected(self, emitter, tmp_db, session):
        with pytest.raises(InvalidEventTypeError):
            await emitter.append(session["id"], "telemetry", {})
        assert await _event_count(tmp_db, session["id"]) == 0

    async def test_bad_payload_rejected(self, emitter, tmp_db, session):
        with pytest.raises(InvalidPayloadError, match="tool_call"):
            await emitter.append(session["id"], "tool_call", {"tool": "search"})
        assert await _event_count(tmp_db, session["id"]) == 0

    async def test_non_dict_payload_rejected(self, emitter, session):
        with pytest.raises(InvalidPayloadError):
            await emitter.append(session["id"], "message", "hello")

    async def test_non_dict_metadata_rejected(self, emitter, session):
        with pytest.raises(InvalidPayloadError):
            await emitter.append(session["id"], "message", {"content": "x"}, metadata=["a"])

    async def test_unknown_session(self, emitter):
        with pytest.raises(NotFoundError):
            await emitter.append("missing", "message", {"content": "x"})

    async def test_payload_is_normalized(self, emitter, session):
        await emitter.append(session["id"], "tool_call", {
            "id": "t1", "tool": "search", "args": {"q": "x"}, "extra": 5,
        })
        [event] = await emitter.list_events(session["id"])
        assert event["event_data"] == {
            "tool": "search", "tool_call_id": "t1", "arguments": {"q": "x"}, "extra": 5,
        }


class TestStatusUpdates:
    async def test_status_update_moves_session(self, emitter, registry, session):
        await emitter.append(session["id"], "status_update", {"to": "running"})
        assert (await registry.get_any(session["id"]))["status"] == "running"

        [event] = await emitter.list_events(session["id"])
        assert event["event_data"]["from"] == "pending"
        assert event["event_data"]["to"] == "running"

    async def test_completion_records_final_response(self, emitter, registry, running_session):
        await emitter.append(running_session["id"], "status_update", {
            "to": "completed", "final_response": "all good",
        })
        s = await registry.get_any(running_session["id"])
        assert s["status"] == "completed"
        assert s["final_response"] == "all good"

    async def test_rejected_transition_writes_nothing(self, emitter, registry, tmp_db, session):
        with pytest.raises(InvalidTransitionError):
            await emitter.append(session["id"], "status_update", {"to": "completed"})
        assert await _event_count(tmp_db, session["id"]) == 0
        assert (await registry.get_any(session["id"]))["status"] == "pending"

    async def test_terminal_session_rejects_status_updates(self, emitter, tmp_db, running_session):
        sid = running_session["id"]
        await emitter.append(sid, "status_update", {"to": "failed", "error": "x"})
        before = await _event_count(tmp_db, sid)
        with pytest.raises(InvalidTransitionError):
            await emitter.append(sid, "status_update", {"to": "running"})
        assert await _event_count(tmp_db, sid) == before

    async def test_conflicting_terminal_fields_rejected(self, emitter, running_session):
        with pytest.raises(InvalidPayloadError):
            await emitter.append(running_session["id"], "status_update", {
                "to": "completed", "final_response": "x", "error": "y",
            })

    async def test_progress_record_on_running_session(self, emitter, registry, running_session):
        await emitter.append(running_session["id"], "status_update", {
            "to": "running", "message": "Round 1 of 3", "round": 1, "total_rounds": 3,
        })
        assert (await registry.get_any(running_session["id"]))["status"] == "running"
        events = await emitter.list_events(running_session["id"])
        assert events[-1]["event_data"]["round"] == 1


class TestCountersAndOrder:
    async def test_tool_calls_and_errors_bump_counters(self, emitter, registry, running_session):
        sid = running_session["id"]
        await emitter.append(sid, "tool_call", {"tool_call_id": "a", "tool": "x"})
        await emitter.append(sid, "tool_call", {"tool_call_id": "b", "tool": "x"})
        await emitter.append(sid, "tool_result", {"tool_call_id": "a"})
        await emitter.append(sid, "error", {"error": "oops"})
        s = await registry.get_any(sid)
        assert s["execution_count"] == 2
        assert s["error_count"] == 1

    async def test_events_are_in_insertion_order(self, emitter, session):
        ids = [
            await emitter.append(session["id"], "message", {"content": str(i)})
            for i in range(5)
        ]
        events = await emitter.list_events(session["id"])
        assert [e["id"] for e in events] == ids
        seqs = [e["seq"] for e in events]
        assert seqs == sorted(seqs)

    async def test_list_after_seq(self, emitter, session):
        for i in range(4):
            await emitter.append(session["id"], "message", {"content": str(i)})
        events = await emitter.list_events(session["id"])
        tail = await emitter.list_events(session["id"], after_seq=events[1]["seq"])
        assert [e["event_data"]["content"] for e in tail] == ["2", "3"]

    async def test_metadata_round_trips(self, emitter, session):
        await emitter.append(session["id"], "message", {"content": "x"}, metadata={"source": "test"})
        [event] = await emitter.list_events(session["id"])
        assert event["metadata"] == {"source": "test"}


class TestPublish:
    async def test_publishes_after_commit(self, tmp_db, registry, session):
        feed = MagicMock()
        emitter = EventEmitter(db=tmp_db, registry=registry, feed=feed)
        event_id = await emitter.append(session["id"], "message", {"content": "hi"})

        feed.publish.assert_called_once()
        published = feed.publish.call_args[0][0]
        assert published["id"] == event_id
        assert published["session_id"] == session["id"]
        assert published["seq"] >= 1

    async def test_nothing_published_on_rejection(self, tmp_db, registry, session):
        feed = MagicMock()
        emitter = EventEmitter(db=tmp_db, registry=registry, feed=feed)
        with pytest.raises(InvalidTransitionError):
            await emitter.append(session["id"], "status_update", {"to": "completed"})
        feed.publish.assert_not_called()


class TestAtomicity:
    async def test_counter_failure_rolls_back_event(self, tmp_db, registry, running_session):
        sid = running_session["id"]
        feed = MagicMock()
        emitter = EventEmitter(db=tmp_db, registry=registry, feed=feed)
        before = await _event_count(tmp_db, sid)

        with patch.object(registry, "bump_counters", AsyncMock(side_effect=RuntimeError("disk full"))):
            with pytest.raises(RuntimeError, match="disk full"):
                await emitter.append(sid, "tool_call", {"tool_call_id": "t1", "tool": "search"})

        assert await _event_count(tmp_db, sid) == before
        assert (await registry.get_any(sid))["execution_count"] == 0
        feed.publish.assert_not_called()

    async def test_transition_rolled_back_with_failed_insert(self, tmp_db, registry, session):
        emitter = EventEmitter(db=tmp_db, registry=registry)
        real_write = tmp_db.execute_write

        async def failing_insert(sql, params=()):
            if sql.startswith("INSERT INTO orchestration_events"):
                raise RuntimeError("insert failed")
            return await real_write(sql, params)

        with patch.object(tmp_db, "execute_write", new=failing_insert):
            with pytest.raises(RuntimeError):
                await emitter.append(session["id"], "status_update", {"to": "running"})

        s = await registry.get_any(session["id"])
        assert s["status"] == "pending"
        assert s["started_at"] is None


class TestDefaultFailure:
    async def test_failed_without_error_stores_default_everywhere(self, emitter, registry, running_session):
        from chorus.services.projection import project
        from chorus.services.sessions import DEFAULT_FAILURE_MESSAGE

        sid = running_session["id"]
        await emitter.append(sid, "status_update", {"to": "failed"})

        events = await emitter.list_events(sid)
        assert events[-1]["event_data"]["error"] == DEFAULT_FAILURE_MESSAGE
        assert (await registry.get_any(sid))["error"] == DEFAULT_FAILURE_MESSAGE
        assert project(events).error == DEFAULT_FAILURE_MESSAGE

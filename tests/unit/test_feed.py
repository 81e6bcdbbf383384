#  Chorus - Change Feed Tests
#
#  Tests for ChangeFeed subscriptions: live delivery, replay from a seq,
#  overflow backfill, dedupe and unsubscribe.
#
#  Depends on: chorus/services/feed.py, chorus/services/events.py
#  Used by:    pytest

import asyncio

from chorus.services.events import EventEmitter
from chorus.services.feed import ChangeFeed


class TestLiveDelivery:
    async def test_receives_events_committed_after_subscribe(self, feed, emitter, session):
        async with feed.subscribe(session["id"]) as sub:
            await emitter.append(session["id"], "message", {"content": "one"})
            await emitter.append(session["id"], "message", {"content": "two"})

            first = await sub.next_event(timeout=1)
            second = await sub.next_event(timeout=1)

        assert first["event_data"]["content"] == "one"
        assert second["event_data"]["content"] == "two"
        assert first["seq"] < second["seq"]

    async def test_events_before_subscribe_are_not_replayed(self, feed, emitter, session):
        await emitter.append(session["id"], "message", {"content": "old"})
        async with feed.subscribe(session["id"]) as sub:
            await emitter.append(session["id"], "message", {"content": "new"})
            event = await sub.next_event(timeout=1)
            assert event["event_data"]["content"] == "new"
            assert await sub.next_event(timeout=0.05) is None

    async def test_other_sessions_are_not_delivered(self, feed, emitter, registry, session):
        other = await registry.create_session("user-1")
        async with feed.subscribe(session["id"]) as sub:
            await emitter.append(other["id"], "message", {"content": "elsewhere"})
            assert await sub.next_event(timeout=0.05) is None

    async def test_timeout_returns_none(self, feed, session):
        async with feed.subscribe(session["id"]) as sub:
            assert await sub.next_event(timeout=0.01) is None

    async def test_multiple_subscribers_each_get_event(self, feed, emitter, session):
        a = feed.subscribe(session["id"])
        b = feed.subscribe(session["id"])
        try:
            await emitter.append(session["id"], "message", {"content": "fan-out"})
            ea = await a.next_event(timeout=1)
            eb = await b.next_event(timeout=1)
            assert ea["id"] == eb["id"]
        finally:
            a.close()
            b.close()

    async def test_async_iteration(self, feed, emitter, session):
        sub = feed.subscribe(session["id"])
        for i in range(3):
            await emitter.append(session["id"], "message", {"content": str(i)})

        seen = []
        async for event in sub:
            seen.append(event["event_data"]["content"])
            if len(seen) == 3:
                sub.close()
        assert seen == ["0", "1", "2"]


class TestReplay:
    async def test_after_seq_replays_then_goes_live(self, feed, emitter, session):
        for i in range(3):
            await emitter.append(session["id"], "message", {"content": str(i)})
        events = await emitter.list_events(session["id"])

        async with feed.subscribe(session["id"], after_seq=events[0]["seq"]) as sub:
            await emitter.append(session["id"], "message", {"content": "live"})
            got = [await sub.next_event(timeout=1) for _ in range(3)]

        assert [e["event_data"]["content"] for e in got] == ["1", "2", "live"]

    async def test_after_seq_zero_replays_everything(self, feed, emitter, session):
        for i in range(2):
            await emitter.append(session["id"], "message", {"content": str(i)})
        async with feed.subscribe(session["id"], after_seq=0) as sub:
            got = [await sub.next_event(timeout=1) for _ in range(2)]
            assert await sub.next_event(timeout=0.05) is None
        assert [e["event_data"]["content"] for e in got] == ["0", "1"]

    async def test_replay_skips_duplicates(self, feed, emitter, session):
        await emitter.append(session["id"], "message", {"content": "a"})
        # Subscribe with a replay point, then publish before the first read:
        # the event arrives both from the log and the live queue.
        sub = feed.subscribe(session["id"], after_seq=0)
        await emitter.append(session["id"], "message", {"content": "b"})
        got = [await sub.next_event(timeout=1) for _ in range(2)]
        assert await sub.next_event(timeout=0.05) is None
        sub.close()
        assert [e["event_data"]["content"] for e in got] == ["a", "b"]


class TestOverflow:
    async def test_slow_subscriber_backfills_from_log(self, tmp_db, registry, session):
        feed = ChangeFeed(tmp_db, queue_size=2)
        emitter = EventEmitter(db=tmp_db, registry=registry, feed=feed)

        async with feed.subscribe(session["id"]) as sub:
            for i in range(6):
                await emitter.append(session["id"], "message", {"content": str(i)})
            got = []
            while (event := await sub.next_event(timeout=0.05)) is not None:
                got.append(event["event_data"]["content"])

        assert got == ["0", "1", "2", "3", "4", "5"]


class TestUnsubscribe:
    async def test_close_removes_subscription(self, feed, session):
        sub = feed.subscribe(session["id"])
        assert feed.subscriber_count(session["id"]) == 1
        sub.close()
        assert sub.closed
        assert feed.subscriber_count(session["id"]) == 0
        sub.close()  # idempotent

    async def test_closed_subscription_returns_none(self, feed, session):
        sub = feed.subscribe(session["id"])
        sub.close()
        assert await sub.next_event(timeout=1) is None

    async def test_publish_with_no_subscribers(self, feed, emitter, session):
        await emitter.append(session["id"], "message", {"content": "x"})
        assert feed.last_published_seq(session["id"]) >= 1

    async def test_forget_clears_bookkeeping(self, feed, emitter, session):
        await emitter.append(session["id"], "message", {"content": "x"})
        feed.forget(session["id"])
        assert feed.last_published_seq(session["id"]) == 0

    async def test_close_while_waiting(self, feed, session):
        sub = feed.subscribe(session["id"])
        waiter = asyncio.create_task(sub.next_event(timeout=0.2))
        await asyncio.sleep(0.01)
        sub.close()
        assert await waiter is None

    async def test_terminal_status_clears_bookkeeping(self, feed, emitter, running_session):
        sid = running_session["id"]
        await emitter.append(sid, "message", {"content": "x"})
        assert feed.last_published_seq(sid) >= 1

        await emitter.append(sid, "status_update", {"to": "completed", "final_response": "ok"})
        assert feed.last_published_seq(sid) == 0
        assert sid not in feed._last_seq

    async def test_subscriber_still_gets_terminal_event(self, feed, emitter, running_session):
        sid = running_session["id"]
        async with feed.subscribe(sid) as sub:
            await emitter.append(sid, "status_update", {"to": "failed", "error": "x"})
            event = await sub.next_event(timeout=1)
        assert event["event_data"]["to"] == "failed"

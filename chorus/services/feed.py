#  Chorus - Change Feed
#
#  In-process fan-out of committed events to per-session subscribers.
#  Delivery is at-least-once: a subscriber that falls behind far enough
#  to overflow its queue backfills from the event log instead of losing
#  events, and may see an event twice around a reconnect. Ordering holds
#  within a session only.
#
#  Depends on: services/events.py (fetch_events), models/enums.py, config.py
#  Used by:    container.py, services/events.py, services/stream.py

import asyncio
import logging
from collections import deque

from chorus.config import SUBSCRIBER_QUEUE_SIZE
from chorus.models.enums import TERMINAL_STATUSES, EventType
from chorus.services.events import fetch_events

logger = logging.getLogger("chorus.feed")

_TERMINAL_VALUES = {s.value for s in TERMINAL_STATUSES}


class Subscription:
    """A live registration for one session's new events.

    Registered the moment it is created, so nothing committed afterwards
    can be missed while the caller is still reading a snapshot. Use as an
    async context manager (or call close()) to unregister.
    """

    def __init__(self, feed: "ChangeFeed", session_id: str, after_seq: int | None, queue_size: int):
        self._feed = feed
        self.session_id = session_id
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._pending: deque[dict] = deque()
        self._overflowed = False
        self._closed = False
        # With no replay point, start from whatever this process last published.
        self._needs_backfill = after_seq is not None
        self.last_seq = after_seq if after_seq is not None else feed.last_published_seq(session_id)

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, event: dict):
        if self._overflowed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._overflowed = True
            logger.warning(
                "Subscriber for session %s fell behind; will backfill from the log",
                self.session_id,
            )

    async def next_event(self, timeout: float | None = None) -> dict | None:
        """Return the next unseen event, or None if nothing arrives within timeout."""
        while True:
            if self._pending:
                event = self._pending.popleft()
                if event["seq"] <= self.last_seq:
                    continue
                self.last_seq = event["seq"]
                return event

            if self._closed:
                return None

            if self._overflowed or self._needs_backfill:
                self._overflowed = False
                self._needs_backfill = False
                while not self._queue.empty():
                    self._queue.get_nowait()
                self._pending.extend(
                    await fetch_events(self._feed.db, self.session_id, after_seq=self.last_seq)
                )
                continue

            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=timeout)
            except asyncio.TimeoutError:
                return None
            if event["seq"] <= self.last_seq:
                continue
            self.last_seq = event["seq"]
            return event

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while not self._closed:
            event = await self.next_event()
            if event is None:
                return
            yield event

    def close(self):
        if not self._closed:
            self._closed = True
            self._feed._remove(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.close()


class ChangeFeed:
    """Per-session subscriber registry fed by EventEmitter after each commit."""

    def __init__(self, db, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self.db = db
        self._queue_size = queue_size
        # session_id -> live subscriptions
        self._subscribers: dict[str, set[Subscription]] = {}
        self._last_seq: dict[str, int] = {}

    def publish(self, event: dict):
        session_id = event["session_id"]
        for sub in list(self._subscribers.get(session_id, ())):
            sub._offer(event)
        # A finished session gets no further status changes; stop tracking it
        if (
            event["event_type"] == EventType.STATUS_UPDATE.value
            and event["event_data"].get("to") in _TERMINAL_VALUES
        ):
            self._last_seq.pop(session_id, None)
        elif event["seq"] > self._last_seq.get(session_id, 0):
            self._last_seq[session_id] = event["seq"]

    def last_published_seq(self, session_id: str) -> int:
        return self._last_seq.get(session_id, 0)

    def subscribe(self, session_id: str, after_seq: int | None = None) -> Subscription:
        """Register for new events on session_id.

        With after_seq, stored events after that seq are replayed first,
        which is how a reconnecting observer resumes without re-reading
        the whole history.
        """
        sub = Subscription(self, session_id, after_seq, self._queue_size)
        self._subscribers.setdefault(session_id, set()).add(sub)
        logger.debug("Subscribed to session %s (after_seq=%s)", session_id, after_seq)
        return sub

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, ()))

    def forget(self, session_id: str):
        """Drop bookkeeping for a deleted session."""
        self._last_seq.pop(session_id, None)

    def _remove(self, sub: Subscription):
        subs = self._subscribers.get(sub.session_id)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            del self._subscribers[sub.session_id]
        logger.debug("Unsubscribed from session %s", sub.session_id)

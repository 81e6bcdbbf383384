#  Chorus - Session Monitor Client
#
#  Follows a session's text stream from another process. Parses SSE
#  frames, treats a run of missed heartbeats as a dead connection and
#  reconnects with exponential backoff until a terminal message arrives.
#
#  Depends on: config.py, models/enums.py
#  Used by:    run.py (monitor command), tests

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable

import httpx

from chorus.config import STREAM_HEARTBEAT_INTERVAL, STREAM_MISSED_HEARTBEATS
from chorus.models.enums import StreamMessage

logger = logging.getLogger("chorus.monitor")

_TERMINAL_KINDS = frozenset({StreamMessage.RESULT.value, StreamMessage.ERROR.value})


class StreamDisconnected(Exception):
    """The stream ended or went silent before a terminal message."""


class MonitorGaveUp(Exception):
    """Reconnect attempts were exhausted."""


@dataclass
class SSEMessage:
    kind: str
    data: dict = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.kind in _TERMINAL_KINDS


class SSEParser:
    """Incremental parser for the event:/data: framing used by the stream."""

    def __init__(self):
        self._event: str | None = None
        self._data: list[str] = []
        self.heartbeats = 0

    def feed(self, line: str) -> SSEMessage | None:
        if line.startswith(":"):
            self.heartbeats += 1
            return None
        if line == "":
            if self._event is None and not self._data:
                return None
            kind = self._event or "message"
            raw = "\n".join(self._data)
            self._event, self._data = None, []
            try:
                data = json.loads(raw) if raw else {}
            except ValueError:
                logger.warning("Dropping %s frame with non-JSON data", kind)
                return None
            return SSEMessage(kind=kind, data=data)
        name, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        return None


class SessionMonitor:
    """Reconnecting consumer of /api/events/{session_id}."""

    def __init__(
        self,
        base_url: str,
        access_token: str,
        session_id: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        heartbeat_interval: float = STREAM_HEARTBEAT_INTERVAL,
        missed_heartbeats: int = STREAM_MISSED_HEARTBEATS,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._base_url = base_url.rstrip("/")
        self._access_token = access_token
        self._session_id = session_id
        self._client = http_client
        self._read_timeout = heartbeat_interval * missed_heartbeats
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._sleep = sleep
        self.reconnects = 0

    def backoff(self, attempt: int) -> float:
        return min(self._base_delay * 2 ** (attempt - 1), self._max_delay)

    async def messages(self) -> AsyncIterator[SSEMessage]:
        """Yield stream messages until a result or error message arrives.

        Raises MonitorGaveUp after max_attempts consecutive failed reconnects.
        HTTP errors such as 401/404 are raised immediately.
        """
        owns_client = self._client is None
        client = self._client or httpx.AsyncClient(base_url=self._base_url)
        attempt = 0
        try:
            while True:
                try:
                    async with contextlib.aclosing(self._connect_once(client)) as frames:
                        async for msg in frames:
                            attempt = 0
                            yield msg
                            if msg.terminal:
                                return
                    raise StreamDisconnected("stream closed before a terminal message")
                except (httpx.TransportError, StreamDisconnected) as e:
                    attempt += 1
                    if attempt > self._max_attempts:
                        raise MonitorGaveUp(
                            f"Gave up on session {self._session_id} after {self._max_attempts} reconnects"
                        ) from e
                    delay = self.backoff(attempt)
                    self.reconnects += 1
                    logger.warning(
                        "Stream for session %s lost (%s); reconnecting in %.1fs (attempt %d/%d)",
                        self._session_id, e, delay, attempt, self._max_attempts,
                    )
                    await self._sleep(delay)
        finally:
            if owns_client:
                await client.aclose()

    async def _stream_token(self, client: httpx.AsyncClient) -> str:
        resp = await client.post(
            f"{self._base_url}/api/events/{self._session_id}/token",
            headers={"Authorization": f"Bearer {self._access_token}"},
        )
        resp.raise_for_status()
        return resp.json()["token"]

    async def _connect_once(self, client: httpx.AsyncClient) -> AsyncIterator[SSEMessage]:
        token = await self._stream_token(client)
        timeout = httpx.Timeout(10.0, read=self._read_timeout)
        async with client.stream(
            "GET",
            f"{self._base_url}/api/events/{self._session_id}",
            params={"token": token},
            timeout=timeout,
        ) as resp:
            resp.raise_for_status()
            parser = SSEParser()
            async for line in resp.aiter_lines():
                msg = parser.feed(line)
                if msg is not None:
                    yield msg

    async def wait(self) -> SSEMessage:
        """Follow the stream to the end and return the terminal message."""
        last = None
        async for msg in self.messages():
            last = msg
        return last

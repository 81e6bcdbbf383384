#  Chorus - Session Monitor Tests
#
#  Tests for the SSE parser and the reconnecting stream client.
#
#  Depends on: chorus/monitor.py
#  Used by:    pytest

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from chorus.monitor import MonitorGaveUp, SessionMonitor, SSEParser


def _frame(kind, data):
    return f"event: {kind}\ndata: {json.dumps(data)}\n\n"


class TestSSEParser:
    def _feed_all(self, parser, text):
        out = []
        for line in text.split("\n"):
            msg = parser.feed(line)
            if msg is not None:
                out.append(msg)
        return out

    def test_parses_frames(self):
        parser = SSEParser()
        msgs = self._feed_all(parser, _frame("status", {"status": "running"}) + _frame("result", {"final_response": "x"}))
        assert [m.kind for m in msgs] == ["status", "result"]
        assert msgs[0].data == {"status": "running"}
        assert msgs[1].terminal
        assert not msgs[0].terminal

    def test_counts_keepalives(self):
        parser = SSEParser()
        msgs = self._feed_all(parser, ": keepalive\n\n: keepalive\n\n")
        assert msgs == []
        assert parser.heartbeats == 2

    def test_multiline_data(self):
        parser = SSEParser()
        msgs = self._feed_all(parser, 'event: status\ndata: {"a":\ndata: 1}\n\n')
        assert msgs[0].data == {"a": 1}

    def test_non_json_data_dropped(self):
        parser = SSEParser()
        assert self._feed_all(parser, "event: status\ndata: nope\n\n") == []


class _Server:
    """Scripted stand-in for the token and stream endpoints."""

    def __init__(self, streams):
        self.streams = list(streams)
        self.token_calls = 0
        self.stream_calls = 0

    def __call__(self, request: httpx.Request):
        if request.method == "POST":
            self.token_calls += 1
            assert request.headers["Authorization"] == "Bearer access"
            return httpx.Response(200, json={"token": f"st-{self.token_calls}", "expires_in": 60})
        self.stream_calls += 1
        assert request.url.params["token"] == f"st-{self.token_calls}"
        step = self.streams.pop(0)
        if isinstance(step, Exception):
            raise step
        if isinstance(step, int):
            return httpx.Response(step, json={"detail": "nope"})
        return httpx.Response(200, text=step, headers={"content-type": "text/event-stream"})


def _monitor(server, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(server))
    sleep = AsyncMock()
    monitor = SessionMonitor(
        "http://chorus.test", "access", "s1", http_client=client, sleep=sleep, **kwargs,
    )
    return monitor, client, sleep


class TestSessionMonitor:
    async def test_follows_until_result(self):
        server = _Server([
            _frame("status", {"status": "running"}) + ": keepalive\n\n" + _frame("result", {"final_response": "ok"}),
        ])
        monitor, client, sleep = _monitor(server)
        async with client:
            msgs = [m async for m in monitor.messages()]

        assert [m.kind for m in msgs] == ["status", "result"]
        assert monitor.reconnects == 0
        sleep.assert_not_called()

    async def test_reconnects_after_early_close(self):
        server = _Server([
            _frame("status", {"status": "running"}),
            httpx.ConnectError("refused"),
            _frame("status", {"status": "running"}) + _frame("error", {"error": "bad"}),
        ])
        monitor, client, sleep = _monitor(server, base_delay=1.0, max_delay=30.0)
        async with client:
            final = await monitor.wait()

        assert final.kind == "error"
        assert final.data["error"] == "bad"
        assert monitor.reconnects == 2
        assert server.token_calls == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    async def test_gives_up_after_max_attempts(self):
        server = _Server([httpx.ConnectError("refused")] * 3)
        monitor, client, sleep = _monitor(server, max_attempts=2)
        async with client:
            with pytest.raises(MonitorGaveUp):
                await monitor.wait()
        assert sleep.await_count == 2

    async def test_http_error_is_not_retried(self):
        server = _Server([404])
        monitor, client, sleep = _monitor(server)
        async with client:
            with pytest.raises(httpx.HTTPStatusError):
                await monitor.wait()
        sleep.assert_not_called()

    def test_backoff_is_capped(self):
        monitor = SessionMonitor("http://x", "t", "s", base_delay=1.0, max_delay=5.0)
        assert [monitor.backoff(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

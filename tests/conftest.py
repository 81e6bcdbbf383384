#  Chorus - Test Fixtures
#
#  Shared fixtures for the test suite.
#  Uses DI container overrides instead of monkey-patching singletons.
#
#  Depends on: chorus/db/connection.py, chorus/container.py, chorus/app.py
#  Used by:    all test files

from types import MappingProxyType
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from dependency_injector import providers

TEST_SECRET = "test-secret-key-that-is-long-enough-for-hs256"


# ---------------------------------------------------------------------------
# Database fixture
# ---------------------------------------------------------------------------

@pytest.fixture
async def tmp_db(tmp_path):
    """Create a fresh async database with schema applied."""
    from chorus.db.connection import Database

    test_db = Database()
    db_path = tmp_path / "test.db"
    await test_db.init(str(db_path))

    yield test_db

    await test_db.close()


# ---------------------------------------------------------------------------
# Event sourcing fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def feed(tmp_db):
    from chorus.services.feed import ChangeFeed
    return ChangeFeed(tmp_db, queue_size=16)


@pytest.fixture
async def registry(tmp_db):
    from chorus.services.sessions import SessionRegistry
    return SessionRegistry(db=tmp_db)


@pytest.fixture
async def emitter(tmp_db, registry, feed):
    from chorus.services.events import EventEmitter
    return EventEmitter(db=tmp_db, registry=registry, feed=feed)


@pytest.fixture
async def queue(tmp_db):
    from chorus.services.task_queue import TaskQueue
    return TaskQueue(db=tmp_db, max_receives=3)


@pytest.fixture
async def session(registry):
    """A pending session owned by user-1."""
    return await registry.create_session("user-1", thread_id="thread-1")


@pytest.fixture
async def running_session(emitter, session):
    await emitter.append(session["id"], "status_update", {"to": "running"})
    return session


# ---------------------------------------------------------------------------
# Execution fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_secrets():
    """Secrets cache stand-in that always has an Anthropic key."""
    secrets = MagicMock()
    secrets.get = AsyncMock(return_value=MappingProxyType({"anthropic_api_key": "sk-test"}))
    return secrets


def make_llm_result(text="LLM output", model="claude-test", provider="anthropic"):
    from chorus.services.llm import LLMResult
    return LLMResult(text=text, model=model, provider=provider, prompt_tokens=10, completion_tokens=20)


@pytest.fixture
def fake_llm():
    llm = MagicMock()
    llm.complete = AsyncMock(return_value=make_llm_result())
    return llm


# ---------------------------------------------------------------------------
# Auth fixture
# ---------------------------------------------------------------------------

@pytest.fixture
def auth_service():
    from chorus.services.auth import AuthService
    return AuthService(secret_key=TEST_SECRET)


# ---------------------------------------------------------------------------
# FastAPI client fixture
# ---------------------------------------------------------------------------

@pytest.fixture
async def app_client(tmp_db, registry, emitter, feed, queue, auth_service):
    """httpx client over the ASGI app with a fresh database. Uses DI container overrides.

    Uses explicit try/finally with reset_override() so DI state is fully
    cleaned up between tests.
    """
    from httpx import ASGITransport, AsyncClient

    from chorus.app import app, container
    from chorus.services.stream import SessionStream

    mock_runner = MagicMock()
    mock_runner.start = AsyncMock()
    mock_runner.stop = AsyncMock()

    mock_http = AsyncMock()
    mock_http.aclose = AsyncMock()

    stream = SessionStream(
        registry=registry, feed=feed, heartbeat_interval=0.05, close_grace=0.0, max_duration=5.0,
    )

    init_patcher = patch.object(tmp_db, "init", new_callable=AsyncMock)

    container.db.override(providers.Object(tmp_db))
    container.registry.override(providers.Object(registry))
    container.emitter.override(providers.Object(emitter))
    container.feed.override(providers.Object(feed))
    container.queue.override(providers.Object(queue))
    container.auth.override(providers.Object(auth_service))
    container.stream.override(providers.Object(stream))
    container.runner.override(providers.Object(mock_runner))
    container.http_client.override(providers.Object(mock_http))
    init_patcher.start()

    from chorus.rate_limit import limiter as _limiter
    _limiter.reset()

    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
    finally:
        init_patcher.stop()
        container.db.reset_override()
        container.registry.reset_override()
        container.emitter.reset_override()
        container.feed.reset_override()
        container.queue.reset_override()
        container.auth.reset_override()
        container.stream.reset_override()
        container.runner.reset_override()
        container.http_client.reset_override()


@pytest.fixture
async def authed_client(app_client, auth_service):
    """app_client with user-1's Authorization header set."""
    token = auth_service.create_access_token("user-1")
    app_client.headers["Authorization"] = f"Bearer {token}"
    yield app_client


@pytest.fixture
def other_user_headers(auth_service):
    return {"Authorization": f"Bearer {auth_service.create_access_token('user-2')}"}

#  Chorus - Ownership Integration Tests
#
#  Every session endpoint reports another owner's session exactly like a
#  missing one.
#
#  Depends on: chorus/routes/sessions.py, chorus/routes/events.py, tests/conftest.py
#  Used by:    pytest

import pytest


@pytest.fixture
async def foreign_session(registry, emitter):
    """A finished session owned by user-1."""
    s = await registry.create_session("user-1")
    await emitter.append(s["id"], "status_update", {"to": "failed", "error": "x"})
    return s


class TestOwnership:
    @pytest.mark.parametrize("method,path", [
        ("GET", "/api/sessions/{id}"),
        ("GET", "/api/sessions/{id}/events"),
        ("DELETE", "/api/sessions/{id}"),
        ("POST", "/api/events/{id}/token"),
    ])
    async def test_other_owner_gets_404(self, app_client, other_user_headers, foreign_session, method, path):
        resp = await app_client.request(
            method, path.format(id=foreign_session["id"]), headers=other_user_headers,
        )
        assert resp.status_code == 404

    async def test_other_owner_list_is_empty(self, app_client, other_user_headers, foreign_session):
        resp = await app_client.get("/api/sessions", headers=other_user_headers)
        assert resp.json() == []

    async def test_other_owner_cannot_delete(self, app_client, other_user_headers, registry, foreign_session):
        await app_client.delete(f"/api/sessions/{foreign_session['id']}", headers=other_user_headers)
        assert (await registry.get_any(foreign_session["id"]))["status"] == "failed"

    async def test_stream_token_for_other_owner_is_404(self, app_client, auth_service, foreign_session):
        # A stream token minted for user-2 does not open user-1's session.
        token = auth_service.create_stream_token("user-2", foreign_session["id"])
        resp = await app_client.get(f"/api/events/{foreign_session['id']}", params={"token": token})
        assert resp.status_code == 404

    async def test_event_feed_for_other_owner_is_404(self, app_client, auth_service, foreign_session):
        token = auth_service.create_stream_token("user-2", foreign_session["id"])
        resp = await app_client.get(f"/api/events/{foreign_session['id']}/feed", params={"token": token})
        assert resp.status_code == 404

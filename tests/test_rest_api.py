"""Tests for echo_chat.server -- REST API endpoints.

These tests use httpx.AsyncClient with ASGITransport to call the FastAPI app
directly (no real server needed). ASGITransport does not run the lifespan,
so nothing here depends on FINN having been created.
"""

import pytest

from echo_chat.auth import _LOGIN_RATE_LIMIT
from echo_chat.finn import FINN_PROFILE


async def signup(client, username="amy", password="sunrise1") -> dict:
    resp = await client.post("/api/signup", json={"username": username, "password": password})
    assert resp.status_code == 201, resp.text
    return resp.json()


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


async def post_world(app, text="hello there", username="amy"):
    return await app.state.message_store.create_message(
        message=text, filtered_message=text, username=username, chat_type="world",
    )


# ---------------------------------------------------------------------------
# Health check endpoint
# ---------------------------------------------------------------------------

class TestHealthCheckEndpoint:

    @pytest.mark.asyncio
    async def test_health_check_returns_ok(self, client):
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "connections": 0}


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

class TestSignup:

    @pytest.mark.asyncio
    async def test_signup_returns_token_and_profile(self, client):
        data = await signup(client)
        assert data["token"]
        assert data["user"]["username"] == "amy"
        assert data["user"]["bloom"] == "🌸"

    @pytest.mark.asyncio
    async def test_duplicate_username_conflicts(self, client):
        await signup(client)
        resp = await client.post("/api/signup", json={"username": "amy", "password": "another1"})
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_invalid_username_rejected(self, client):
        resp = await client.post("/api/signup", json={"username": "amy smith", "password": "sunrise1"})
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_short_password_rejected(self, client):
        resp = await client.post("/api/signup", json={"username": "amy", "password": "abc"})
        assert resp.status_code == 422


class TestLogin:

    @pytest.mark.asyncio
    async def test_login_success(self, client):
        await signup(client)
        resp = await client.post("/api/login", json={"username": "amy", "password": "sunrise1"})
        assert resp.status_code == 200
        assert resp.json()["token"]

    @pytest.mark.asyncio
    async def test_login_wrong_password(self, client):
        await signup(client)
        resp = await client.post("/api/login", json={"username": "amy", "password": "nope-nope"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_login_with_corrupt_stored_hash(self, client, app):
        await signup(client)
        amy = await app.state.user_store.find_by_username("amy")
        amy.password_hash = "pbkdf2_sha256$x$zz$00"
        resp = await client.post("/api/login", json={"username": "amy", "password": "sunrise1"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_login_rate_limited(self, client):
        for _ in range(_LOGIN_RATE_LIMIT):
            await client.post("/api/login", json={"username": "ghost", "password": "whatever"})
        resp = await client.post("/api/login", json={"username": "ghost", "password": "whatever"})
        assert resp.status_code == 429

    @pytest.mark.asyncio
    async def test_logout_revokes_token(self, client):
        token = (await signup(client))["token"]
        resp = await client.post("/api/logout", headers=bearer(token))
        assert resp.status_code == 200
        resp = await client.get("/api/chat/world", headers=bearer(token))
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Token is no longer valid"


# ---------------------------------------------------------------------------
# Protected endpoints
# ---------------------------------------------------------------------------

class TestAuthRequired:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method, path", [
        ("get", "/api/chat/world"),
        ("get", "/api/chat/streams/peace"),
        ("get", "/api/chat/activity"),
        ("post", "/api/logout"),
        ("post", "/api/streams/peace/join"),
        ("delete", "/api/chat/messages/abc"),
    ])
    async def test_requires_token(self, client, method, path):
        resp = await getattr(client, method)(path)
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_garbage_token(self, client):
        resp = await client.get("/api/chat/world", headers=bearer("garbage"))
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Invalid token"


# ---------------------------------------------------------------------------
# Chat history
# ---------------------------------------------------------------------------

class TestHistory:

    @pytest.mark.asyncio
    async def test_world_history_oldest_first(self, client, app):
        token = (await signup(client))["token"]
        for text in ("one", "two", "three"):
            await post_world(app, text)
        resp = await client.get("/api/chat/world", params={"limit": 2}, headers=bearer(token))
        assert resp.status_code == 200
        assert [m["message"] for m in resp.json()["messages"]] == ["two", "three"]

    @pytest.mark.asyncio
    async def test_limit_is_bounded(self, client):
        token = (await signup(client))["token"]
        resp = await client.get("/api/chat/world", params={"limit": 1000}, headers=bearer(token))
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_invalid_stream_name(self, client):
        token = (await signup(client))["token"]
        resp = await client.get("/api/chat/streams/x", headers=bearer(token))
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_activity(self, client, app):
        token = (await signup(client))["token"]
        await post_world(app, username="amy")
        await post_world(app, username="bo")
        resp = await client.get("/api/chat/activity", headers=bearer(token))
        assert resp.json()["activity"] == [{"chatType": "world", "messageCount": 2, "uniqueUserCount": 2}]


class TestReactionsAndDeletion:

    @pytest.mark.asyncio
    async def test_add_and_remove_reaction(self, client, app):
        token = (await signup(client))["token"]
        msg = await post_world(app)
        resp = await client.post(
            f"/api/chat/messages/{msg.id}/reactions", json={"emoji": "🌊"}, headers=bearer(token),
        )
        assert resp.status_code == 200
        assert resp.json()["message"]["reactions"] == [{"emoji": "🌊", "users": ["amy"]}]

        resp = await client.delete(
            f"/api/chat/messages/{msg.id}/reactions", params={"emoji": "🌊"}, headers=bearer(token),
        )
        assert resp.json()["message"]["reactions"] == []

    @pytest.mark.asyncio
    async def test_reaction_on_missing_message(self, client):
        token = (await signup(client))["token"]
        resp = await client.post("/api/chat/messages/nope/reactions", json={"emoji": "🌊"}, headers=bearer(token))
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_author_can_delete(self, client, app):
        token = (await signup(client))["token"]
        msg = await post_world(app, username="amy")
        resp = await client.delete(f"/api/chat/messages/{msg.id}", headers=bearer(token))
        assert resp.status_code == 200
        resp = await client.get("/api/chat/world", headers=bearer(token))
        assert resp.json()["messages"] == []

    @pytest.mark.asyncio
    async def test_others_cannot_delete(self, client, app):
        token = (await signup(client, "bo"))["token"]
        msg = await post_world(app, username="amy")
        resp = await client.delete(f"/api/chat/messages/{msg.id}", headers=bearer(token))
        assert resp.status_code == 403
        assert msg.is_deleted is False


# ---------------------------------------------------------------------------
# Moderation, FINN, streams
# ---------------------------------------------------------------------------

class TestModerationCheck:

    @pytest.mark.asyncio
    async def test_flags_toxic_message(self, client):
        resp = await client.post("/api/moderation/check", json={"message": "you idiot"})
        data = resp.json()
        assert data["is_appropriate"] is False
        assert data["severity"] == "high"
        assert data["message"] == "you ***"
        assert data["suggestions"]

    @pytest.mark.asyncio
    async def test_clean_message(self, client):
        resp = await client.post("/api/moderation/check", json={"message": "lovely day"})
        data = resp.json()
        assert data["is_appropriate"] is True
        assert data["suggestions"] == ["Your message looks great!"]


class TestFinnEndpoint:

    @pytest.mark.asyncio
    async def test_profile_and_recommendations(self, client):
        data = (await client.get("/api/finn")).json()
        assert data["profile"]["username"] == FINN_PROFILE["username"]
        assert "mindfulness" in data["streamRecommendations"]


class TestStreamMembership:

    @pytest.mark.asyncio
    async def test_join_and_leave(self, client):
        token = (await signup(client))["token"]
        resp = await client.post("/api/streams/peace/join", headers=bearer(token))
        assert resp.json() == {"joinedStreams": ["peace"]}
        resp = await client.post("/api/streams/peace/leave", headers=bearer(token))
        assert resp.json() == {"joinedStreams": []}

    @pytest.mark.asyncio
    async def test_invalid_name(self, client):
        token = (await signup(client))["token"]
        resp = await client.post("/api/streams/%21%21/join", headers=bearer(token))
        assert resp.status_code == 400

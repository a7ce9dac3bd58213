"""
Tests for the HTTP API.
"""

import httpx
import pytest

from LinkChat.api import create_app
from LinkChat.core.models import NewMessage
from LinkChat.core.server.auth import create_access_token


def bearer(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


@pytest.fixture
def app(manager):
    return create_app(manager)


@pytest.fixture
def http(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


class TestApi:
    """Tests for the REST endpoints."""

    @pytest.mark.asyncio
    async def test_health(self, http, connect):
        """Test the health endpoint reports live counts."""
        await connect("alice")
        async with http:
            response = await http.get("/api/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["online_users"] == 1
        assert body["connections"] == 1

    @pytest.mark.asyncio
    async def test_authentication_required(self, http):
        """Test protected endpoints reject missing and bad tokens."""
        async with http:
            missing = await http.get("/api/users/online")
            bad = await http.get("/api/users/online", headers={"Authorization": "Bearer nope"})
            unknown = await http.get("/api/users/online", headers=bearer("nobody"))
        assert missing.status_code == 401
        assert bad.status_code == 401
        assert unknown.status_code == 401

    @pytest.mark.asyncio
    async def test_online_users(self, http, connect):
        """Test the online list mirrors presence."""
        await connect("bob")
        await connect("alice")
        async with http:
            response = await http.get("/api/users/online", headers=bearer("carol"))
        assert response.status_code == 200
        body = response.json()
        assert body["userIds"] == ["alice", "bob"]
        assert [u["_id"] for u in body["users"]] == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_message_history(self, http, manager):
        """Test history pages are returned oldest first within a page."""
        for text in ("one", "two", "three"):
            await manager.messages.send_message("alice", "c1", NewMessage(text=text))

        async with http:
            first = await http.get("/api/chats/c1/messages", params={"limit": 2}, headers=bearer("bob"))
            second = await http.get("/api/chats/c1/messages", params={"limit": 2, "page": 2}, headers=bearer("bob"))

        assert first.status_code == 200
        body = first.json()
        assert [m["text"] for m in body["messages"]] == ["two", "three"]
        assert body["total"] == 3
        assert body["pages"] == 2
        assert [m["text"] for m in second.json()["messages"]] == ["one"]
        assert body["messages"][0]["sender"]["username"] == "Alice"

    @pytest.mark.asyncio
    async def test_message_history_access(self, http):
        """Test outsiders and unknown chats map to 403 and 404."""
        async with http:
            forbidden = await http.get("/api/chats/c1/messages", headers=bearer("carol"))
            missing = await http.get("/api/chats/nope/messages", headers=bearer("carol"))
        assert forbidden.status_code == 403
        assert forbidden.json()["success"] is False
        assert forbidden.json()["code"] == "FORBIDDEN"
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_mark_read(self, http, manager, connect):
        """Test marking read over HTTP also emits the receipt."""
        alice = await connect("alice")
        await manager.messages.send_message("alice", "c1", NewMessage(text="x"))

        async with http:
            response = await http.put("/api/messages/read/c1", headers=bearer("bob"))

        assert response.status_code == 200
        assert response.json() == {"chat_id": "c1", "marked": 1}
        assert alice.last("message:read") == {"chatId": "c1", "userId": "bob"}

    @pytest.mark.asyncio
    async def test_delete_message(self, http, manager, connect):
        """Test deleting over HTTP enforces ownership and notifies the room."""
        bob = await connect("bob")
        payload = await manager.messages.send_message("alice", "c1", NewMessage(text="x"))

        async with http:
            denied = await http.delete(f"/api/messages/{payload['_id']}", headers=bearer("bob"))
            allowed = await http.delete(f"/api/messages/{payload['_id']}", headers=bearer("alice"))

        assert denied.status_code == 403
        assert allowed.status_code == 200
        body = allowed.json()
        assert body["success"] is True
        assert body["message"]["isDeleted"] is True
        assert bob.last("message:deleted") == {"messageId": payload["_id"], "chatId": "c1"}

"""
Tests for the connection lifecycle: authentication, presence, disconnects
and dispatch error handling.
"""

import asyncio
import json

import pytest

from LinkChat.core.server.calls import CallState
from LinkChat.core.server.websocket_manager import RealtimeManager
from LinkChat.test.conftest import FakeSocket, TestDataGenerator, seed_memory_store


class TestAuthentication:
    """Tests for the auth event and handshake tokens."""

    @pytest.mark.asyncio
    async def test_auth_event(self, connect, manager):
        """Test an auth event attaches the user and joins their chats."""
        alice = await connect()
        assert not alice.connection.authenticated

        await alice.auth("alice")

        success = alice.last("auth:success")
        assert success["user"]["_id"] == "alice"
        assert success["user"]["username"] == "Alice"
        assert success["user"]["isOnline"] is True
        assert success["onlineUsers"] == ["alice"]
        assert alice.connection.user_id == "alice"
        assert manager.presence.lookup("alice") == alice.conn_id
        assert manager.rooms.rooms_of(alice.conn_id) == {"chat:c1", "chat:g1"}

    @pytest.mark.asyncio
    async def test_sub_claim(self, connect):
        """Test tokens naming the user in ``sub`` are accepted."""
        client = await connect()

        await client.emit("auth", TestDataGenerator.generate_jwt_token("bob", claim="sub"))

        assert client.last("auth:success")["user"]["_id"] == "bob"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token, code", [
        ("garbage", "INVALID_TOKEN"),
        (TestDataGenerator.generate_jwt_token("alice", expires_in=-60), "TOKEN_EXPIRED"),
        (TestDataGenerator.generate_jwt_token("alice", secret="other-secret"), "INVALID_TOKEN"),
        (TestDataGenerator.generate_jwt_token("nobody"), "USER_NOT_FOUND"),
        (TestDataGenerator.generate_jwt_token("alice", claim="name"), "INVALID_PAYLOAD"),
    ])
    async def test_auth_failure_keeps_connection_open(self, connect, manager, token, code):
        """Test a rejected credential reports auth:error and leaves the socket open."""
        client = await connect()

        await client.emit("auth", {"token": token})

        assert client.last("auth:error")["code"] == code
        assert client.data("auth:success") == []
        assert client.socket.close_code is None
        assert client.conn_id in manager.connections
        assert len(manager.presence) == 0

        # a later valid token still works on the same connection
        await client.auth("alice")
        assert client.last("auth:success")["user"]["_id"] == "alice"

    @pytest.mark.asyncio
    async def test_missing_token(self, connect):
        """Test an auth event without a token is a validation error."""
        client = await connect()

        await client.emit("auth", {})

        error = client.last("error")
        assert error["code"] == "VALIDATION_ERROR"
        assert error["event"] == "auth"

    @pytest.mark.asyncio
    async def test_reauth_same_user(self, connect, manager):
        """Test re-authenticating as the same user repeats auth:success."""
        alice = await connect("alice")

        await alice.auth("alice")

        assert len(alice.data("auth:success")) == 2
        assert manager.presence.lookup("alice") == alice.conn_id

    @pytest.mark.asyncio
    async def test_reauth_other_user_forbidden(self, connect, manager):
        """Test a connection cannot switch identity."""
        alice = await connect("alice")

        await alice.auth("bob")

        error = alice.last("error")
        assert error["code"] == "FORBIDDEN"
        assert error["event"] == "auth"
        assert alice.connection.user_id == "alice"
        assert not manager.presence.is_online("bob")

    @pytest.mark.asyncio
    async def test_events_require_authentication(self, connect):
        """Test only auth and ping are accepted before authenticating."""
        anon = await connect()

        await anon.emit("chat:join", "c1")
        await anon.emit("call:initiate", "bob")
        await anon.emit("ping")

        assert anon.last("error") == {"code": "UNAUTHORIZED", "message": "Authenticate first", "event": "chat:join"}
        assert anon.last("call:error")["code"] == "UNAUTHORIZED"
        assert anon.data("pong")

    @pytest.mark.asyncio
    async def test_handshake_query_token(self, manager):
        """Test a ?token= query parameter authenticates during the handshake."""
        token = TestDataGenerator.generate_jwt_token("alice")
        socket = FakeSocket(path=f"/socket?token={token}")
        socket.incoming = [json.dumps({"event": "ping"})]

        await manager._handle_connection(socket)

        events = [json.loads(f)["event"] for f in socket.frames]
        assert events[0] == "auth:success"
        assert "pong" in events
        # the socket ran out of frames, so the connection is gone again
        assert len(manager.connections) == 0
        assert not manager.presence.is_online("alice")

    @pytest.mark.asyncio
    async def test_handshake_cookie_token(self, manager):
        """Test an authToken cookie authenticates during the handshake."""
        token = TestDataGenerator.generate_jwt_token("bob")
        socket = FakeSocket(headers={"cookie": f"theme=dark; authToken={token}"})

        await manager._handle_connection(socket)

        first = json.loads(socket.frames[0])
        assert first["event"] == "auth:success"
        assert first["data"]["user"]["_id"] == "bob"

    @pytest.mark.asyncio
    async def test_handshake_without_token(self, manager):
        """Test a handshake without credentials stays unauthenticated."""
        socket = FakeSocket()
        socket.incoming = [json.dumps({"event": "message:send", "data": {"chatId": "c1", "text": "x"}})]

        await manager._handle_connection(socket)

        frames = [json.loads(f) for f in socket.frames]
        assert [f["event"] for f in frames] == ["error"]
        assert frames[0]["data"]["code"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_auth_timeout(self, store, connect):
        """Test an unauthenticated connection is closed after the deadline."""
        manager = RealtimeManager(store, ring_timeout=0, auth_timeout=0.05)
        anon = await connect(target=manager)
        alice = await connect("alice", target=manager)

        await asyncio.sleep(0.15)

        assert anon.socket.close_code == 1008
        assert alice.socket.close_code is None
        assert alice.connection.auth_timer is None

    @pytest.mark.asyncio
    async def test_disconnect_before_chats_load(self, manager):
        """Test a connection closed mid-authentication never becomes online."""
        socket = FakeSocket()
        connection = await manager.on_connect(socket)

        async def list_chats_then_drop(user_id):
            await manager.on_disconnect(connection)
            return []

        manager.store.list_chats_for_user = list_chats_then_drop

        await manager.on_authenticate(connection, TestDataGenerator.generate_jwt_token("alice"))

        assert not manager.presence.is_online("alice")
        assert socket.frames == []


class TestPresenceBroadcast:
    """Tests for online/offline fan-out."""

    @pytest.mark.asyncio
    async def test_online_and_offline(self, connect):
        """Test others hear about arrivals and departures."""
        alice = await connect("alice")
        bob = await connect("bob")

        online = alice.last("user:online")
        assert online["userId"] == "bob"
        assert online["isOnline"] is True
        assert online["lastSeen"].endswith("Z")
        assert alice.last("users:online") == ["alice", "bob"]
        assert bob.data("user:online") == []
        assert bob.last("auth:success")["onlineUsers"] == ["alice", "bob"]

        await bob.disconnect()

        offline = alice.last("user:offline")
        assert offline["userId"] == "bob"
        assert offline["isOnline"] is False
        assert alice.last("users:online") == ["alice"]

    @pytest.mark.asyncio
    async def test_anonymous_connections_hear_nothing(self, connect):
        """Test presence is only broadcast to authenticated connections."""
        anon = await connect()
        await connect("alice")

        assert anon.received() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mode, expected", [
        ("delta", {"user:online"}),
        ("full", {"users:online"}),
        ("both", {"user:online", "users:online"}),
    ])
    async def test_broadcast_modes(self, store, connect, mode, expected):
        """Test the configured broadcast mode selects the presence events."""
        manager = RealtimeManager(store, ring_timeout=0, auth_timeout=0, presence_broadcast=mode)
        alice = await connect("alice", target=manager)
        await connect("bob", target=manager)

        assert {f["event"] for f in alice.received()} - {"auth:success"} == expected

    def test_unknown_broadcast_mode(self, store):
        """Test an unknown mode is rejected at construction."""
        with pytest.raises(ValueError):
            RealtimeManager(store, presence_broadcast="sometimes")

    @pytest.mark.asyncio
    async def test_presence_written_to_store(self, connect, store):
        """Test online state and last-seen are persisted."""
        alice = await connect("alice")
        profile = await store.get_user("alice")
        assert profile.is_online is True
        assert profile.last_seen is not None

        await alice.disconnect()
        profile = await store.get_user("alice")
        assert profile.is_online is False

    @pytest.mark.asyncio
    async def test_presence_write_failure_is_not_fatal(self, connect, store):
        """Test a storage failure while saving presence does not block auth."""
        async def broken(*args):
            raise RuntimeError("disk full")

        store.set_user_presence = broken
        alice = await connect("alice")

        assert alice.last("auth:success")["user"]["_id"] == "alice"
        await alice.disconnect()


class TestMultipleConnections:
    """Tests for a user holding more than one connection."""

    @pytest.mark.asyncio
    async def test_latest_connection_wins(self, connect, manager):
        """Test presence follows the newest connection."""
        old = await connect("bob")
        new = await connect("bob")

        assert manager.presence.lookup("bob") == new.conn_id
        assert old.socket.close_code is None

    @pytest.mark.asyncio
    async def test_stale_disconnect_keeps_user_online(self, connect, manager):
        """Test an old connection closing does not mark the user offline."""
        alice = await connect("alice")
        old = await connect("bob")
        new = await connect("bob")
        alice.clear()

        await old.disconnect()

        assert manager.presence.lookup("bob") == new.conn_id
        assert alice.data("user:offline") == []
        assert manager.rooms.rooms_of(old.conn_id) == set()
        assert "chat:c1" in manager.rooms.rooms_of(new.conn_id)

    @pytest.mark.asyncio
    async def test_superseded_connection_closed(self, store, connect):
        """Test the older connection is closed when configured to."""
        manager = RealtimeManager(store, ring_timeout=0, auth_timeout=0, close_superseded=True)
        old = await connect("bob", target=manager)
        await connect("bob", target=manager)

        assert old.socket.close_code == 4000


class TestDisconnect:
    """Tests for connection teardown."""

    @pytest.mark.asyncio
    async def test_cleanup(self, connect, manager):
        """Test a closed connection leaves no registry entries."""
        alice = await connect("alice")

        await alice.disconnect()

        assert alice.conn_id not in manager.connections
        assert manager.rooms.rooms_of(alice.conn_id) == set()
        assert manager.rooms.members_of("chat:c1") == set()
        assert not manager.presence.is_online("alice")
        assert manager.presence.last_seen("alice") is not None

    @pytest.mark.asyncio
    async def test_anonymous_disconnect_is_silent(self, connect):
        """Test an unauthenticated close broadcasts nothing."""
        alice = await connect("alice")
        anon = await connect()
        alice.clear()

        await anon.disconnect()

        assert alice.received() == []

    @pytest.mark.asyncio
    async def test_stop_closes_connections(self, connect, manager):
        """Test stopping the manager closes every connection as going away."""
        alice = await connect("alice")
        anon = await connect()

        await manager.stop()

        assert alice.socket.close_code == 1001
        assert anon.socket.close_code == 1001
        assert not manager.is_running


class TestDispatch:
    """Tests for frame parsing and error reporting."""

    @pytest.mark.asyncio
    async def test_ping(self, connect):
        """Test ping answers with a timestamp."""
        client = await connect()

        await client.emit("ping")

        assert client.last("pong")["ts"].endswith("Z")

    @pytest.mark.asyncio
    async def test_malformed_frames(self, connect, manager):
        """Test bad frames are reported without closing the connection."""
        alice = await connect("alice")

        await manager.handle_frame(alice.connection, "{not json")
        await manager.handle_frame(alice.connection, json.dumps({"event": "teleport"}))

        errors = alice.data("error")
        assert [e["code"] for e in errors] == ["VALIDATION_ERROR", "VALIDATION_ERROR"]
        assert alice.socket.close_code is None

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_internal_error(self, connect, store):
        """Test a crashing collaborator surfaces as INTERNAL_ERROR."""
        alice = await connect("alice")

        async def broken(chat_id):
            raise RuntimeError("database is locked")

        store.get_chat = broken
        await alice.emit("message:send", {"chatId": "c1", "text": "x"})

        error = alice.last("error")
        assert error["code"] == "INTERNAL_ERROR"
        assert "database" not in error["message"]

    @pytest.mark.asyncio
    async def test_errors_go_only_to_origin(self, connect):
        """Test one client's error is not visible to others."""
        alice = await connect("alice")
        bob = await connect("bob")

        await alice.emit("message:send", {"chatId": "c2", "text": "x"})

        assert alice.last("error")["code"] == "FORBIDDEN"
        assert bob.data("error") == []


class TestIsolation:
    """Tests that managers do not share state."""

    @pytest.mark.asyncio
    async def test_independent_managers(self, connect):
        """Test two managers keep separate registries."""
        first = RealtimeManager(seed_memory_store(), ring_timeout=0, auth_timeout=0)
        second = RealtimeManager(seed_memory_store(), ring_timeout=0, auth_timeout=0)

        await connect("alice", target=first)

        assert first.presence.is_online("alice")
        assert not second.presence.is_online("alice")


def slow_presence_writes(store, offline_delay=0.05, online_delay=0.01):
    """Make storing presence slow, slower for going offline."""
    original = store.set_user_presence

    async def set_user_presence(user_id, online, last_seen):
        await asyncio.sleep(online_delay if online else offline_delay)
        await original(user_id, online, last_seen)

    store.set_user_presence = set_user_presence


class TestConcurrentLifecycle:
    """Tests for handlers of different connections interleaving."""

    @pytest.mark.asyncio
    async def test_reconnect_during_disconnect(self, connect, manager, store):
        """Test a user who comes back while the old connection is cleaned up stays online."""
        slow_presence_writes(store)
        old = await connect("alice")
        bob = await connect("bob")
        new = await connect()
        bob.clear()

        await asyncio.gather(old.disconnect(), new.auth("alice"))

        events = [f["event"] for f in bob.received() if f["event"].startswith("user:")]
        assert events[-1] == "user:online"
        assert "user:offline" not in events
        assert manager.presence.lookup("alice") == new.conn_id
        assert (await store.get_user("alice")).is_online is True
        assert new.last("auth:success")["user"]["_id"] == "alice"

    @pytest.mark.asyncio
    async def test_disconnect_during_authentication(self, connect, manager, store):
        """Test a connection closed while its presence is stored ends offline."""
        slow_presence_writes(store, offline_delay=0.01, online_delay=0.05)
        bob = await connect("bob")
        alice = await connect()
        bob.clear()

        async def drop_soon():
            await asyncio.sleep(0.02)
            await alice.disconnect()

        await asyncio.gather(alice.auth("alice"), drop_soon())

        assert not manager.presence.is_online("alice")
        assert (await store.get_user("alice")).is_online is False
        events = [f["event"] for f in bob.received() if f["event"].startswith("user:")]
        assert events[-1] == "user:offline"

    @pytest.mark.asyncio
    async def test_reconnect_keeps_new_call(self, connect, manager, store):
        """Test cleanup of the old connection does not end a call placed after reconnecting."""
        slow_presence_writes(store)
        old = await connect("alice")
        bob = await connect("bob")
        await old.emit("user:typing", "g1")
        new = await connect()

        async def come_back_and_call():
            await new.auth("alice")
            await new.emit("call:initiate", {"recipientId": "bob", "type": "audio"})

        await asyncio.gather(old.disconnect(), come_back_and_call())

        call_id = new.last("call:status")["callId"]
        assert manager.calls.get(call_id).state is CallState.RINGING
        assert bob.last("call:initiated")["callId"] == call_id
        assert bob.data("call:ended") == []
        assert not manager.messages.is_typing("alice", "g1")

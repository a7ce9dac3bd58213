"""
Test configuration and fixtures for LinkChat server tests.

Provides:
- FakeSocket: in-process stand-in for a websockets ServerConnection
- Client: one connection driven through the manager's real dispatch path
- Seeded in-memory and SQLite stores
- JWT generation
"""

import json
import time
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import jwt
import pytest
from websockets.datastructures import Headers
from websockets.protocol import State

from LinkChat.config import config
from LinkChat.core.models import ChatType
from LinkChat.core.server.storage import InMemoryChatStore
from LinkChat.core.server.storage.sqlite import SQLiteChatStore
from LinkChat.core.server.websocket_manager import RealtimeManager

USERS = {
    "alice": "Alice",
    "bob": "Bob",
    "carol": "Carol",
    "dave": "Dave",
}
# dave is in no chat
CHATS = {
    "c1": (["alice", "bob"], ChatType.PRIVATE),
    "c2": (["bob", "carol"], ChatType.PRIVATE),
    "g1": (["alice", "bob", "carol"], ChatType.GROUP),
}


class TestDataGenerator:
    """Generate test data for server tests."""

    @staticmethod
    def generate_jwt_token(user_id: str, secret: str = None, expires_in: int = 3600, claim: str = "id") -> str:
        """Generate a test JWT token using the config secret."""
        payload = {
            claim: user_id,
            "exp": int(time.time()) + expires_in,
            "iat": int(time.time()),
        }
        return jwt.encode(payload, secret or config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


class FakeSocket:
    """Records what the server writes; mimics the parts of ServerConnection the core uses."""

    def __init__(self, path: str = "/", headers: Optional[Dict[str, str]] = None):
        self.state = State.OPEN
        self.request = SimpleNamespace(path=path, headers=Headers(headers or {}))
        self.frames: List[str] = []
        # frames the "client" sends when the socket is iterated
        self.incoming: List[str] = []
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None

    async def send(self, message: str) -> None:
        if self.state is not State.OPEN:
            raise RuntimeError("socket is closed")
        self.frames.append(message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.state = State.CLOSED
        self.close_code = code
        self.close_reason = reason

    def __aiter__(self):
        return self._incoming()

    async def _incoming(self):
        for frame in self.incoming:
            yield frame


@dataclass
class Client:
    """One connection to a RealtimeManager, without a network in between."""
    manager: RealtimeManager
    socket: FakeSocket
    connection: Any

    @property
    def conn_id(self) -> str:
        return self.connection.conn_id

    async def emit(self, event: str, data: Any = None) -> None:
        await self.manager.handle_frame(self.connection, json.dumps({"event": event, "data": data}))

    async def auth(self, user_id: str) -> None:
        await self.emit("auth", {"token": TestDataGenerator.generate_jwt_token(user_id)})

    def received(self, event: Optional[str] = None) -> List[Dict[str, Any]]:
        frames = [json.loads(f) for f in self.socket.frames]
        return [f for f in frames if event is None or f["event"] == event]

    def data(self, event: str) -> List[Any]:
        return [f["data"] for f in self.received(event)]

    def last(self, event: str) -> Any:
        items = self.data(event)
        assert items, f"no {event!r} received; got {[f['event'] for f in self.received()]}"
        return items[-1]

    def clear(self) -> None:
        self.socket.frames.clear()

    async def disconnect(self) -> None:
        self.socket.state = State.CLOSED
        await self.manager.on_disconnect(self.connection)


def seed_memory_store() -> InMemoryChatStore:
    store = InMemoryChatStore()
    for user_id, name in USERS.items():
        store.add_user(user_id, name, avatar=f"/avatars/{user_id}.png")
    for chat_id, (members, chat_type) in CHATS.items():
        store.add_chat(chat_id, members, chat_type)
    return store


def seed_sqlite_store(path: str) -> SQLiteChatStore:
    store = SQLiteChatStore(path)
    for user_id, name in USERS.items():
        store.create_user(user_id, name, avatar=f"/avatars/{user_id}.png")
    for chat_id, (members, chat_type) in CHATS.items():
        store.create_chat(chat_id, members, chat_type)
    return store


@pytest.fixture
def store() -> InMemoryChatStore:
    return seed_memory_store()


@pytest.fixture
def manager(store) -> RealtimeManager:
    """Fresh manager per test: no ring or auth timers unless a test asks for them."""
    return RealtimeManager(store, ring_timeout=0, auth_timeout=0, presence_broadcast="both")


@pytest.fixture
def connect(manager):
    """``await connect("alice")`` -> authenticated Client; ``await connect()`` -> anonymous."""
    async def _connect(user_id: Optional[str] = None, socket: Optional[FakeSocket] = None,
                       target: Optional[RealtimeManager] = None) -> Client:
        mgr = target or manager
        sock = socket or FakeSocket()
        connection = await mgr.on_connect(sock)
        client = Client(mgr, sock, connection)
        if user_id:
            await client.auth(user_id)
        return client
    return _connect


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )

"""
Server module for LinkChat.

This module provides the realtime WebSocket server with a modular
architecture:

Architecture Overview:
---------------------

The server is organized into the following components:

1. **Presence** (`presence.py`)
   - PresenceRegistry: user -> current connection, last-seen times

2. **Rooms** (`rooms.py`)
   - RoomMembershipTracker: connection <-> chat room subscriptions
   - room_for: chat id -> room id

3. **Transport Layer** (`transport/`)
   - WebSocketConnection: Connection wrapper
   - ConnectionRegistry: conn_id -> live connection

4. **Event Routing** (`routing/`)
   - EventRouter: Delivers events to a connection, a user, a room or everyone

5. **Message Delivery** (`messaging/`)
   - MessageDeliveryService: send / read / delete, typing relay

6. **Calls** (`calls/`)
   - CallCoordinator: Per-call state machine and signaling relay

7. **Authentication** (`auth/`)
   - JWTAuthenticator: JWT validation and user resolution
   - DefaultTokenExtractor: Handshake token extraction

8. **Storage** (`storage/`)
   - InMemoryChatStore, SQLiteChatStore

9. **Manager** (`websocket_manager.py`)
   - RealtimeManager: Connection lifecycle and event dispatch

Usage:
------

    from LinkChat.core.server import RealtimeManager, InMemoryChatStore

    manager = RealtimeManager(InMemoryChatStore())

    async with manager.run("localhost", 8765):
        await asyncio.Future()
"""

from LinkChat.core.server.auth import (
    JWTAuthenticator,
    DefaultTokenExtractor,
    create_access_token,
)
from LinkChat.core.server.calls import (
    CallCoordinator,
    CallSession,
    CallState,
)
from LinkChat.core.server.interfaces import (
    Authenticator,
    AuthResult,
    ChatStore,
    TransportConnection,
)
from LinkChat.core.server.messaging import MessageDeliveryService
from LinkChat.core.server.presence import PresenceRegistry
from LinkChat.core.server.rooms import RoomMembershipTracker, room_for
from LinkChat.core.server.routing import (
    EventRouter,
    DeliveryResult,
    DeliveryStatus,
)
from LinkChat.core.server.storage import InMemoryChatStore
from LinkChat.core.server.storage.sqlite import SQLiteChatStore
from LinkChat.core.server.transport import (
    WebSocketConnection,
    ConnectionRegistry,
)
from LinkChat.core.server.websocket_manager import (
    RealtimeManager,
    create_server,
)

__all__ = [
    'Authenticator',
    'AuthResult',
    'ChatStore',
    'TransportConnection',

    'JWTAuthenticator',
    'DefaultTokenExtractor',
    'create_access_token',

    'PresenceRegistry',
    'RoomMembershipTracker',
    'room_for',

    'WebSocketConnection',
    'ConnectionRegistry',

    'EventRouter',
    'DeliveryResult',
    'DeliveryStatus',

    'MessageDeliveryService',

    'CallCoordinator',
    'CallSession',
    'CallState',

    'InMemoryChatStore',
    'SQLiteChatStore',

    'RealtimeManager',
    'create_server',
]

"""
Transport layer abstraction for WebSocket connections.

Wraps the raw ``websockets`` connection so the rest of the core only sees
an opaque connection id, the authenticated user (once known) and a
``send``/``close`` pair that never raises.
"""

import asyncio
import logging
import time
import uuid
from typing import Dict, Iterator, Optional

from websockets.asyncio.server import ServerConnection
from websockets.protocol import State

from LinkChat.core.models import UserProfile

logger = logging.getLogger(__name__)


class WebSocketConnection:
    """
    Wrapper around ServerConnection that implements TransportConnection.

    Created unauthenticated on connect; ``user`` is attached by the
    lifecycle manager once the credential has been verified.
    """

    def __init__(self, websocket: ServerConnection, conn_id: Optional[str] = None):
        """
        Initialize WebSocket connection wrapper.

        Args:
            websocket: Underlying WebSocket connection
            conn_id: Opaque identifier; generated when omitted
        """
        self._websocket = websocket
        self._closed = False
        self.conn_id: str = conn_id or uuid.uuid4().hex
        self.user: Optional[UserProfile] = None
        self.connected_at: float = time.time()
        self.auth_timer: Optional[asyncio.Task] = None

    @property
    def authenticated(self) -> bool:
        return self.user is not None

    @property
    def user_id(self) -> Optional[str]:
        """Associated user id, None until authenticated."""
        return self.user.id if self.user else None

    @property
    def raw_websocket(self) -> ServerConnection:
        """Get underlying WebSocket connection."""
        return self._websocket

    async def send(self, message: str) -> bool:
        """
        Send a frame through the connection.

        Args:
            message: Serialized event

        Returns:
            True if the frame was handed to the socket
        """
        if self._closed:
            return False

        try:
            await self._websocket.send(message)
            return True
        except Exception as e:
            logger.debug("Failed to send to %s: %s", self.conn_id, e)
            return False

    async def close(self, code: int = 1000, reason: str = "") -> None:
        """
        Close the connection.

        Args:
            code: Close code
            reason: Close reason
        """
        if not self._closed:
            self._closed = True
            try:
                await self._websocket.close(code=code, reason=reason)
            except Exception as e:
                logger.debug("Error closing connection %s: %s", self.conn_id, e)

    def is_open(self) -> bool:
        """Check if connection is open."""
        if self._closed:
            return False
        return self._websocket.state is State.OPEN

    def cancel_auth_timer(self) -> None:
        if self.auth_timer is not None:
            self.auth_timer.cancel()
            self.auth_timer = None

    def __repr__(self) -> str:
        return f"<WebSocketConnection {self.conn_id} user={self.user_id}>"


class ConnectionRegistry:
    """
    conn_id -> live connection.

    Presence and rooms only store connection ids; this is where they are
    turned back into something that can be written to.
    """

    def __init__(self):
        self._connections: Dict[str, WebSocketConnection] = {}

    def add(self, connection: WebSocketConnection) -> None:
        self._connections[connection.conn_id] = connection
        logger.debug("Registered connection %s", connection.conn_id)

    def remove(self, conn_id: str) -> Optional[WebSocketConnection]:
        return self._connections.pop(conn_id, None)

    def get(self, conn_id: Optional[str]) -> Optional[WebSocketConnection]:
        if conn_id is None:
            return None
        return self._connections.get(conn_id)

    def authenticated(self) -> Iterator[WebSocketConnection]:
        """Snapshot of authenticated connections."""
        return iter([c for c in self._connections.values() if c.authenticated])

    def __contains__(self, conn_id: str) -> bool:
        return conn_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def __iter__(self) -> Iterator[WebSocketConnection]:
        return iter(list(self._connections.values()))


__all__ = [
    'WebSocketConnection',
    'ConnectionRegistry',
]

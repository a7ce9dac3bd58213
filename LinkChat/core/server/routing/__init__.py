"""
Outbound event routing.

Resolves a target (one connection, a user's live connection, a room or
every authenticated connection) to connections and writes the serialized
event to each. Fan-out is at most once: a failed write is reported in the
result and never retried.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Dict, Iterable, List, Optional

from LinkChat.core.message.protocol import Event
from LinkChat.core.server.presence import PresenceRegistry
from LinkChat.core.server.rooms import RoomMembershipTracker
from LinkChat.core.server.transport import ConnectionRegistry, WebSocketConnection

logger = logging.getLogger(__name__)


class DeliveryStatus(Enum):
    """Status of event delivery."""
    DELIVERED = auto()
    FAILED = auto()
    USER_OFFLINE = auto()


@dataclass
class DeliveryResult:
    """Result of one delivery attempt."""
    status: DeliveryStatus
    target: str
    error: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.status is DeliveryStatus.DELIVERED


class EventRouter:
    """
    Routes events to connections.

    Every lookup goes through the presence registry and room tracker at
    the moment of sending, never through a connection captured earlier.
    """

    def __init__(
        self,
        connections: ConnectionRegistry,
        presence: PresenceRegistry,
        rooms: RoomMembershipTracker
    ):
        """
        Initialize event router.

        Args:
            connections: Registry of live connections
            presence: user -> current connection
            rooms: room -> subscribed connections
        """
        self._connections = connections
        self._presence = presence
        self._rooms = rooms

    async def send_to_connection(self, conn_id: str, event: Event) -> DeliveryResult:
        return await self._write(conn_id, event.serialize())

    async def send_to_user(self, user_id: str, event: Event) -> DeliveryResult:
        """Send to the user's current connection (if online)."""
        conn_id = self._presence.lookup(user_id)
        if conn_id is None:
            return DeliveryResult(DeliveryStatus.USER_OFFLINE, user_id, error="User offline")
        return await self._write(conn_id, event.serialize())

    async def send_to_room(
        self,
        room_id: str,
        event: Event,
        exclude: Optional[Iterable[str]] = None
    ) -> Dict[str, DeliveryResult]:
        """
        Send to every connection subscribed to ``room_id``.

        Args:
            room_id: Target room
            event: Event to send
            exclude: Connection ids to skip
        """
        skip = set(exclude or ())
        targets = [cid for cid in self._rooms.members_of(room_id) if cid not in skip]
        return await self._fan_out(targets, event)

    async def broadcast(
        self,
        event: Event,
        exclude: Optional[Iterable[str]] = None
    ) -> Dict[str, DeliveryResult]:
        """Send to every authenticated connection."""
        skip = set(exclude or ())
        targets = [c.conn_id for c in self._connections.authenticated() if c.conn_id not in skip]
        return await self._fan_out(targets, event)

    async def _fan_out(self, conn_ids: List[str], event: Event) -> Dict[str, DeliveryResult]:
        if not conn_ids:
            return {}
        frame = event.serialize()
        results = await asyncio.gather(*(self._write(cid, frame) for cid in conn_ids))
        failed = sum(1 for r in results if not r.delivered)
        if failed:
            logger.debug("%s: %d of %d deliveries failed", event.type.value, failed, len(results))
        return {r.target: r for r in results}

    async def _write(self, conn_id: str, frame: str) -> DeliveryResult:
        connection: Optional[WebSocketConnection] = self._connections.get(conn_id)
        if connection is None or not connection.is_open():
            return DeliveryResult(DeliveryStatus.FAILED, conn_id, error="No connection")
        if await connection.send(frame):
            return DeliveryResult(DeliveryStatus.DELIVERED, conn_id)
        return DeliveryResult(DeliveryStatus.FAILED, conn_id, error="Send failed")


__all__ = [
    'EventRouter',
    'DeliveryResult',
    'DeliveryStatus',
]

"""Room membership for LinkChat.

A room is the broadcast group of one chat conversation; its id is derived
from the chat id (``chat:<id>``) so no lookup table is needed. Membership
is tracked per connection, in both directions, so dropping a connection
is a single call.
"""

from __future__ import annotations

from typing import Dict, Set

ROOM_PREFIX = "chat:"


def room_for(chat_id: str) -> str:
    return f"{ROOM_PREFIX}{chat_id}"


class RoomMembershipTracker:

    def __init__(self):
        # room -> conn_ids
        self._members: Dict[str, Set[str]] = {}
        # conn_id -> rooms
        self._rooms: Dict[str, Set[str]] = {}

    def join(self, conn_id: str, room_id: str) -> bool:
        """Subscribe a connection. Returns False if it was already a member."""
        members = self._members.setdefault(room_id, set())
        if conn_id in members:
            return False
        members.add(conn_id)
        self._rooms.setdefault(conn_id, set()).add(room_id)
        return True

    def leave(self, conn_id: str, room_id: str) -> bool:
        """Unsubscribe a connection. Returns False if it was not a member."""
        members = self._members.get(room_id)
        if not members or conn_id not in members:
            return False
        members.discard(conn_id)
        if not members:
            self._members.pop(room_id, None)
        rooms = self._rooms.get(conn_id)
        if rooms is not None:
            rooms.discard(room_id)
            if not rooms:
                self._rooms.pop(conn_id, None)
        return True

    def members_of(self, room_id: str) -> Set[str]:
        return set(self._members.get(room_id, ()))

    def rooms_of(self, conn_id: str) -> Set[str]:
        return set(self._rooms.get(conn_id, ()))

    def is_member(self, conn_id: str, room_id: str) -> bool:
        return conn_id in self._members.get(room_id, ())

    def drop_connection(self, conn_id: str) -> Set[str]:
        """Remove a connection from every room. Returns the rooms it left."""
        rooms = self._rooms.pop(conn_id, set())
        for room_id in rooms:
            members = self._members.get(room_id)
            if members is None:
                continue
            members.discard(conn_id)
            if not members:
                self._members.pop(room_id, None)
        return rooms

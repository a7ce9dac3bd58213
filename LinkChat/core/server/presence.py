"""Presence tracking for LinkChat.

Maps each authenticated user to the connection that currently represents
them. This module is intentionally simple and uses in-memory state owned
by one ``PresenceRegistry`` per server instance.

Design:
- A user has at most one presence entry (last authenticated wins).
- ``unregister`` only removes the entry when the given connection is still
  the recorded one, so a late disconnect of a superseded connection never
  evicts the newer registration.
- Last-seen timestamps are kept after a user goes offline.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set


@dataclass
class PresenceEntry:
    user_id: str
    conn_id: str
    since: float


class PresenceRegistry:
    """user -> current connection id."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: Dict[str, PresenceEntry] = {}
        self._last_seen: Dict[str, float] = {}

    def register(self, user_id: str, conn_id: str) -> Optional[str]:
        """Set the user's connection. Returns the superseded conn_id (if any)."""
        previous = self._entries.get(user_id)
        entry = PresenceEntry(user_id=user_id, conn_id=conn_id, since=self._clock())
        self._entries[user_id] = entry
        self._last_seen[user_id] = entry.since
        if previous is not None and previous.conn_id != conn_id:
            return previous.conn_id
        return None

    def unregister(self, user_id: str, conn_id: str) -> bool:
        """Remove the entry if ``conn_id`` is still current. True if removed."""
        entry = self._entries.get(user_id)
        if entry is None or entry.conn_id != conn_id:
            return False
        del self._entries[user_id]
        self._last_seen[user_id] = self._clock()
        return True

    def lookup(self, user_id: str) -> Optional[str]:
        entry = self._entries.get(user_id)
        return entry.conn_id if entry else None

    def is_online(self, user_id: str) -> bool:
        return user_id in self._entries

    def all_online_user_ids(self) -> Set[str]:
        return set(self._entries)

    def last_seen(self, user_id: str) -> Optional[float]:
        return self._last_seen.get(user_id)

    def __len__(self) -> int:
        return len(self._entries)

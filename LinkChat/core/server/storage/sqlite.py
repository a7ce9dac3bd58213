"""SQLite persistence layer for LinkChat.

Stores users, chats (with their member lists) and chat messages with
per-user read receipts.

Design goals:
  - Zero extra dependencies (uses stdlib sqlite3)
  - Safe for a single process: every statement runs under one lock
  - The async ``ChatStore`` methods hand the blocking work to a worker
    thread so the event loop keeps serving other connections

The DB file location is controlled by Config.SQLITE_DB_FILE.
"""

from __future__ import annotations

import asyncio
import sqlite3
import threading
import time
from pathlib import Path
from typing import Iterable, List, Optional

from LinkChat.core.models import ChatRecord, ChatType, MessageKind, MessageRecord, NewMessage, UserProfile
from LinkChat.core.server.storage import new_object_id


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS users (
  id TEXT PRIMARY KEY,
  username TEXT UNIQUE NOT NULL,
  avatar TEXT NOT NULL DEFAULT '',
  is_online INTEGER NOT NULL DEFAULT 0,
  last_seen REAL,
  created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS chats (
  id TEXT PRIMARY KEY,
  type TEXT NOT NULL DEFAULT 'private', -- private / group / global
  name TEXT,
  created_by TEXT,
  last_message_id TEXT,
  created_at REAL NOT NULL,
  updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS chat_members (
  chat_id TEXT NOT NULL,
  user_id TEXT NOT NULL,
  PRIMARY KEY(chat_id, user_id),
  FOREIGN KEY(chat_id) REFERENCES chats(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS messages (
  id TEXT PRIMARY KEY,
  chat_id TEXT NOT NULL,
  sender_id TEXT NOT NULL,
  text TEXT NOT NULL DEFAULT '',
  type TEXT NOT NULL DEFAULT 'text',
  file_url TEXT,
  file_name TEXT,
  file_size INTEGER,
  reply_to_id TEXT,
  is_deleted INTEGER NOT NULL DEFAULT 0,
  created_at REAL NOT NULL,
  updated_at REAL NOT NULL,
  FOREIGN KEY(chat_id) REFERENCES chats(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS message_reads (
  message_id TEXT NOT NULL,
  user_id TEXT NOT NULL,
  PRIMARY KEY(message_id, user_id),
  FOREIGN KEY(message_id) REFERENCES messages(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_messages_chat_time ON messages(chat_id, created_at);
CREATE INDEX IF NOT EXISTS idx_chat_members_user ON chat_members(user_id);
"""


class SQLiteChatStore:
    """A small SQLite-backed ``ChatStore``."""

    def __init__(self, db_path: str):
        self.db_path = str(Path(db_path))
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self) -> None:
        with self._lock:
            self._conn.executescript(SCHEMA_SQL)
            self._conn.commit()

    # --------------------------- seeding ---------------------------
    def create_user(self, user_id: str, username: str, avatar: str = "") -> bool:
        with self._lock:
            try:
                self._conn.execute(
                    "INSERT INTO users(id, username, avatar, is_online, created_at) VALUES(?,?,?,0,?)",
                    (user_id, username, avatar, time.time()),
                )
                self._conn.commit()
                return True
            except sqlite3.IntegrityError:
                return False

    def create_chat(
        self,
        chat_id: str,
        members: Iterable[str],
        chat_type: ChatType = ChatType.PRIVATE,
        name: Optional[str] = None
    ) -> None:
        members = list(members)
        now = time.time()
        with self._lock:
            self._conn.execute(
                "INSERT INTO chats(id, type, name, created_by, created_at, updated_at) VALUES(?,?,?,?,?,?)",
                (chat_id, chat_type.value, name, members[0] if members else None, now, now),
            )
            self._conn.executemany(
                "INSERT OR IGNORE INTO chat_members(chat_id, user_id) VALUES(?,?)",
                [(chat_id, m) for m in members],
            )
            self._conn.commit()

    # --------------------------- users ---------------------------
    def _get_user(self, user_id: str) -> Optional[UserProfile]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM users WHERE id=?", (user_id,)).fetchone()
        if row is None:
            return None
        return UserProfile(
            id=str(row["id"]),
            username=str(row["username"]),
            avatar=str(row["avatar"] or ""),
            is_online=bool(row["is_online"]),
            last_seen=row["last_seen"],
        )

    def _set_user_presence(self, user_id: str, online: bool, last_seen: float) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE users SET is_online=?, last_seen=? WHERE id=?",
                (1 if online else 0, last_seen, user_id),
            )
            self._conn.commit()

    # --------------------------- chats ---------------------------
    def _chat_from_row_locked(self, row: sqlite3.Row) -> ChatRecord:
        members = [
            str(r["user_id"])
            for r in self._conn.execute(
                "SELECT user_id FROM chat_members WHERE chat_id=? ORDER BY rowid", (row["id"],)
            ).fetchall()
        ]
        return ChatRecord(
            id=str(row["id"]),
            members=members,
            type=ChatType(row["type"]),
            name=row["name"],
            created_by=row["created_by"],
            last_message_id=row["last_message_id"],
            updated_at=float(row["updated_at"]),
        )

    def _get_chat(self, chat_id: str) -> Optional[ChatRecord]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM chats WHERE id=?", (chat_id,)).fetchone()
            return None if row is None else self._chat_from_row_locked(row)

    def _list_chats_for_user(self, user_id: str) -> List[ChatRecord]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT c.* FROM chats c
                JOIN chat_members m ON m.chat_id = c.id
                WHERE m.user_id=?
                ORDER BY c.updated_at DESC
                """,
                (user_id,),
            ).fetchall()
            return [self._chat_from_row_locked(r) for r in rows]

    def _set_last_message(self, chat_id: str, message_id: str, at: float) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE chats SET last_message_id=?, updated_at=? WHERE id=?",
                (message_id, at, chat_id),
            )
            self._conn.commit()

    # -------------------------- messages --------------------------
    def _message_from_row_locked(self, row: sqlite3.Row) -> MessageRecord:
        read_by = [
            str(r["user_id"])
            for r in self._conn.execute(
                "SELECT user_id FROM message_reads WHERE message_id=? ORDER BY rowid", (row["id"],)
            ).fetchall()
        ]
        return MessageRecord(
            id=str(row["id"]),
            chat_id=str(row["chat_id"]),
            sender_id=str(row["sender_id"]),
            created_at=float(row["created_at"]),
            updated_at=float(row["updated_at"]),
            text=str(row["text"]),
            type=MessageKind(row["type"]),
            file_url=row["file_url"],
            file_name=row["file_name"],
            file_size=row["file_size"],
            reply_to_id=row["reply_to_id"],
            read_by=read_by,
            is_deleted=bool(row["is_deleted"]),
        )

    def _create_message(
        self,
        chat_id: str,
        sender_id: str,
        message: NewMessage,
        created_at: float
    ) -> MessageRecord:
        message_id = new_object_id()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO messages(id, chat_id, sender_id, text, type, file_url, file_name,
                                     file_size, reply_to_id, is_deleted, created_at, updated_at)
                VALUES(?,?,?,?,?,?,?,?,?,0,?,?)
                """,
                (
                    message_id, chat_id, sender_id, message.text, message.type.value,
                    message.file_url, message.file_name, message.file_size,
                    message.reply_to_id, created_at, created_at,
                ),
            )
            # Sender has read their own message
            self._conn.execute(
                "INSERT INTO message_reads(message_id, user_id) VALUES(?,?)",
                (message_id, sender_id),
            )
            self._conn.commit()
            row = self._conn.execute("SELECT * FROM messages WHERE id=?", (message_id,)).fetchone()
            return self._message_from_row_locked(row)

    def _get_message(self, message_id: str) -> Optional[MessageRecord]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM messages WHERE id=?", (message_id,)).fetchone()
            return None if row is None else self._message_from_row_locked(row)

    def _mark_read(self, chat_id: str, user_id: str) -> int:
        with self._lock:
            cur = self._conn.execute(
                """
                INSERT OR IGNORE INTO message_reads(message_id, user_id)
                SELECT id, ? FROM messages WHERE chat_id=?
                """,
                (user_id, chat_id),
            )
            self._conn.commit()
            return int(cur.rowcount)

    def _soft_delete(self, message_id: str, at: float) -> Optional[MessageRecord]:
        with self._lock:
            self._conn.execute(
                """
                UPDATE messages
                SET is_deleted=1, text='', file_url=NULL, file_name=NULL, file_size=NULL, updated_at=?
                WHERE id=? AND is_deleted=0
                """,
                (at, message_id),
            )
            self._conn.commit()
            row = self._conn.execute("SELECT * FROM messages WHERE id=?", (message_id,)).fetchone()
            return None if row is None else self._message_from_row_locked(row)

    def _list_messages(self, chat_id: str, offset: int, limit: int) -> List[MessageRecord]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM messages
                WHERE chat_id=?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ? OFFSET ?
                """,
                (chat_id, int(limit), int(offset)),
            ).fetchall()
            return [self._message_from_row_locked(r) for r in rows]

    def _count_messages(self, chat_id: str) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) AS n FROM messages WHERE chat_id=?", (chat_id,)).fetchone()
            return int(row["n"])

    # ------------------------ async ChatStore ------------------------
    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        return await asyncio.to_thread(self._get_user, user_id)

    async def set_user_presence(self, user_id: str, online: bool, last_seen: float) -> None:
        await asyncio.to_thread(self._set_user_presence, user_id, online, last_seen)

    async def get_chat(self, chat_id: str) -> Optional[ChatRecord]:
        return await asyncio.to_thread(self._get_chat, chat_id)

    async def list_chats_for_user(self, user_id: str) -> List[ChatRecord]:
        return await asyncio.to_thread(self._list_chats_for_user, user_id)

    async def set_last_message(self, chat_id: str, message_id: str, at: float) -> None:
        await asyncio.to_thread(self._set_last_message, chat_id, message_id, at)

    async def create_message(
        self,
        chat_id: str,
        sender_id: str,
        message: NewMessage,
        created_at: float
    ) -> MessageRecord:
        return await asyncio.to_thread(self._create_message, chat_id, sender_id, message, created_at)

    async def get_message(self, message_id: str) -> Optional[MessageRecord]:
        return await asyncio.to_thread(self._get_message, message_id)

    async def mark_read(self, chat_id: str, user_id: str) -> int:
        return await asyncio.to_thread(self._mark_read, chat_id, user_id)

    async def soft_delete(self, message_id: str, at: float) -> Optional[MessageRecord]:
        return await asyncio.to_thread(self._soft_delete, message_id, at)

    async def list_messages(self, chat_id: str, offset: int, limit: int) -> List[MessageRecord]:
        return await asyncio.to_thread(self._list_messages, chat_id, offset, limit)

    async def count_messages(self, chat_id: str) -> int:
        return await asyncio.to_thread(self._count_messages, chat_id)

    async def close(self) -> None:
        with self._lock:
            self._conn.close()

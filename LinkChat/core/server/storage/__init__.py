"""
Storage collaborators for the realtime core.

``InMemoryChatStore`` keeps everything in dictionaries and is used by the
tests and the demo server; ``SQLiteChatStore`` (``storage.sqlite``) is the
persistent implementation. Both implement ``interfaces.ChatStore``.
"""

import asyncio
import logging
import time
import uuid
from typing import Dict, Iterable, List, Optional

from LinkChat.core.models import ChatRecord, ChatType, MessageRecord, NewMessage, UserProfile

logger = logging.getLogger(__name__)


def new_object_id() -> str:
    """24 hex chars, the shape of the ids the web client already handles."""
    return uuid.uuid4().hex[:24]


class InMemoryChatStore:
    """
    Dictionary-backed store.

    Every coroutine yields to the event loop once, so handlers interleave at
    storage calls the same way they do against a real database.
    """

    def __init__(self):
        self._users: Dict[str, UserProfile] = {}
        self._chats: Dict[str, ChatRecord] = {}
        self._messages: Dict[str, MessageRecord] = {}
        # chat_id -> message ids in insertion order
        self._chat_messages: Dict[str, List[str]] = {}

    # ------------------------- seeding -------------------------
    def add_user(self, user_id: str, username: str, avatar: str = "") -> UserProfile:
        user = UserProfile(id=user_id, username=username, avatar=avatar)
        self._users[user_id] = user
        return user

    def add_chat(
        self,
        chat_id: str,
        members: Iterable[str],
        chat_type: ChatType = ChatType.PRIVATE,
        name: Optional[str] = None
    ) -> ChatRecord:
        members = list(members)
        chat = ChatRecord(
            id=chat_id,
            members=members,
            type=chat_type,
            name=name,
            created_by=members[0] if members else None,
            updated_at=time.time(),
        )
        self._chats[chat_id] = chat
        self._chat_messages.setdefault(chat_id, [])
        return chat

    # -------------------------- users --------------------------
    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        await asyncio.sleep(0)
        return self._users.get(user_id)

    async def set_user_presence(self, user_id: str, online: bool, last_seen: float) -> None:
        await asyncio.sleep(0)
        user = self._users.get(user_id)
        if user:
            user.is_online = online
            user.last_seen = last_seen

    # -------------------------- chats --------------------------
    async def get_chat(self, chat_id: str) -> Optional[ChatRecord]:
        await asyncio.sleep(0)
        return self._chats.get(chat_id)

    async def list_chats_for_user(self, user_id: str) -> List[ChatRecord]:
        await asyncio.sleep(0)
        return [c for c in self._chats.values() if c.has_member(user_id)]

    async def set_last_message(self, chat_id: str, message_id: str, at: float) -> None:
        await asyncio.sleep(0)
        chat = self._chats.get(chat_id)
        if chat:
            chat.last_message_id = message_id
            chat.updated_at = at

    # ------------------------- messages -------------------------
    async def create_message(
        self,
        chat_id: str,
        sender_id: str,
        message: NewMessage,
        created_at: float
    ) -> MessageRecord:
        await asyncio.sleep(0)
        record = MessageRecord(
            id=new_object_id(),
            chat_id=chat_id,
            sender_id=sender_id,
            created_at=created_at,
            updated_at=created_at,
            text=message.text,
            type=message.type,
            file_url=message.file_url,
            file_name=message.file_name,
            file_size=message.file_size,
            reply_to_id=message.reply_to_id,
            read_by=[sender_id],
        )
        self._messages[record.id] = record
        self._chat_messages.setdefault(chat_id, []).append(record.id)
        return record

    async def get_message(self, message_id: str) -> Optional[MessageRecord]:
        await asyncio.sleep(0)
        return self._messages.get(message_id)

    async def mark_read(self, chat_id: str, user_id: str) -> int:
        await asyncio.sleep(0)
        count = 0
        for mid in self._chat_messages.get(chat_id, []):
            record = self._messages[mid]
            if user_id not in record.read_by:
                record.read_by.append(user_id)
                count += 1
        return count

    async def soft_delete(self, message_id: str, at: float) -> Optional[MessageRecord]:
        await asyncio.sleep(0)
        record = self._messages.get(message_id)
        if record is None:
            return None
        if not record.is_deleted:
            record.is_deleted = True
            record.text = ""
            record.file_url = None
            record.file_name = None
            record.file_size = None
            record.updated_at = at
        return record

    async def list_messages(self, chat_id: str, offset: int, limit: int) -> List[MessageRecord]:
        await asyncio.sleep(0)
        ids = list(reversed(self._chat_messages.get(chat_id, [])))
        return [self._messages[mid] for mid in ids[offset:offset + limit]]

    async def count_messages(self, chat_id: str) -> int:
        await asyncio.sleep(0)
        return len(self._chat_messages.get(chat_id, []))

    async def close(self) -> None:
        logger.debug("In-memory store closed (%d messages)", len(self._messages))


__all__ = [
    'InMemoryChatStore',
    'new_object_id',
]

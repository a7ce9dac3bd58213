"""
Records exchanged with the storage collaborators.

Timestamps are epoch seconds (``time.time()``); they are rendered as
ISO-8601 UTC strings only when a record is put on the wire.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ChatType(str, Enum):
    PRIVATE = "private"
    GROUP = "group"
    GLOBAL = "global"


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"
    VOICE_NOTE = "voice_note"


def iso(ts: Optional[float]) -> Optional[str]:
    """Render an epoch timestamp as ISO-8601 UTC with millisecond precision."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class UserProfile:
    id: str
    username: str
    avatar: str = ""
    is_online: bool = False
    last_seen: Optional[float] = None

    def summary(self) -> Dict[str, Any]:
        """Public fields used to populate outbound events."""
        return {"_id": self.id, "username": self.username, "avatar": self.avatar}

    def to_dict(self) -> Dict[str, Any]:
        data = self.summary()
        data["isOnline"] = self.is_online
        data["lastSeen"] = iso(self.last_seen)
        return data


@dataclass
class ChatRecord:
    id: str
    members: List[str]
    type: ChatType = ChatType.PRIVATE
    name: Optional[str] = None
    created_by: Optional[str] = None
    last_message_id: Optional[str] = None
    updated_at: Optional[float] = None

    def has_member(self, user_id: str) -> bool:
        return user_id in self.members


@dataclass
class MessageRecord:
    id: str
    chat_id: str
    sender_id: str
    created_at: float
    text: str = ""
    type: MessageKind = MessageKind.TEXT
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    reply_to_id: Optional[str] = None
    read_by: List[str] = field(default_factory=list)
    is_deleted: bool = False
    updated_at: Optional[float] = None

    def to_dict(
        self,
        sender: Optional[UserProfile] = None,
        reply_to: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Wire form of the message.

        Args:
            sender: Resolved sender profile; only the id is emitted when absent
            reply_to: Already populated wire form of the replied-to message
        """
        return {
            "_id": self.id,
            "chat": self.chat_id,
            "sender": sender.summary() if sender else {"_id": self.sender_id},
            "text": self.text,
            "type": self.type.value,
            "fileUrl": self.file_url,
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "replyTo": reply_to,
            "readBy": list(self.read_by),
            "isDeleted": self.is_deleted,
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at or self.created_at),
        }


@dataclass
class NewMessage:
    """Fields a client may choose; id, sender and timestamps are server-assigned."""
    text: str = ""
    type: MessageKind = MessageKind.TEXT
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    reply_to_id: Optional[str] = None


__all__ = [
    'ChatType',
    'MessageKind',
    'UserProfile',
    'ChatRecord',
    'MessageRecord',
    'NewMessage',
    'iso',
]

"""
Abstract base classes and interfaces for the server module.

This module defines the contracts between the realtime core and its
collaborators: the credential verifier, the storage layer (users, chats,
messages) and the transport connections events are written to.
"""

from abc import abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Protocol, runtime_checkable

from LinkChat.core.models import ChatRecord, MessageRecord, NewMessage, UserProfile


@dataclass
class AuthResult:
    """Result of an authentication attempt."""
    success: bool
    user: Optional[UserProfile] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.user.id if self.user else None


@runtime_checkable
class Authenticator(Protocol):
    """Protocol for credential verifiers."""

    @abstractmethod
    async def authenticate(self, token: str) -> AuthResult:
        """
        Validate a credential and resolve the user it belongs to.

        Args:
            token: Credential sent by the client

        Returns:
            AuthResult with the user's profile on success
        """
        ...

    @abstractmethod
    def extract_token(self, transport_context: object) -> Optional[str]:
        """
        Extract a credential from the connection handshake, if any.

        Args:
            transport_context: Transport-specific context object
        """
        ...


@runtime_checkable
class TransportConnection(Protocol):
    """Protocol for transport layer connections."""

    @abstractmethod
    async def send(self, message: str) -> bool:
        """Send a frame; returns False instead of raising on failure."""
        ...

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Close the connection."""
        ...

    @abstractmethod
    def is_open(self) -> bool:
        """Check if connection is open."""
        ...


@runtime_checkable
class UserDirectory(Protocol):
    """User identity and profile lookups."""

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        ...

    @abstractmethod
    async def set_user_presence(self, user_id: str, online: bool, last_seen: float) -> None:
        """Write back the user's online flag and last-seen time."""
        ...


@runtime_checkable
class ChatDirectory(Protocol):
    """Authoritative chat membership."""

    @abstractmethod
    async def get_chat(self, chat_id: str) -> Optional[ChatRecord]:
        ...

    @abstractmethod
    async def list_chats_for_user(self, user_id: str) -> List[ChatRecord]:
        ...

    @abstractmethod
    async def set_last_message(self, chat_id: str, message_id: str, at: float) -> None:
        ...


@runtime_checkable
class MessageStore(Protocol):
    """Message persistence."""

    @abstractmethod
    async def create_message(
        self,
        chat_id: str,
        sender_id: str,
        message: NewMessage,
        created_at: float
    ) -> MessageRecord:
        """Persist a message; the store assigns the id."""
        ...

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[MessageRecord]:
        ...

    @abstractmethod
    async def mark_read(self, chat_id: str, user_id: str) -> int:
        """Add ``user_id`` to ``read_by`` of every message lacking it; returns the count."""
        ...

    @abstractmethod
    async def soft_delete(self, message_id: str, at: float) -> Optional[MessageRecord]:
        ...

    @abstractmethod
    async def list_messages(self, chat_id: str, offset: int, limit: int) -> List[MessageRecord]:
        """Newest first."""
        ...

    @abstractmethod
    async def count_messages(self, chat_id: str) -> int:
        ...


@runtime_checkable
class ChatStore(UserDirectory, ChatDirectory, MessageStore, Protocol):
    """Everything the realtime core needs from storage."""

    async def close(self) -> None:
        ...


__all__ = [
    'AuthResult',
    'Authenticator',
    'TransportConnection',
    'UserDirectory',
    'ChatDirectory',
    'MessageStore',
    'ChatStore',
]

"""
Message delivery.

Persists chat messages through the storage collaborator and fans the
canonical (server-stamped, populated) form out to the chat's room. Also
relays read receipts, soft deletes and typing indicators.

Authorization always consults the chat record in storage. Room
subscriptions only say which connections hear about a chat, they never
grant the right to write to it.

Typing policy: a successful send clears the sender's typing indicator for
that chat and, if it was set, emits ``user:stop-typing`` to the room. A
disconnecting user's indicators are cleared the same way.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional, Set

from LinkChat.core.errors import Forbidden, NotFound, ValidationError
from LinkChat.core.message.protocol import Event, OutboundEvent
from LinkChat.core.models import ChatRecord, MessageRecord, NewMessage, UserProfile
from LinkChat.core.server.interfaces import ChatStore
from LinkChat.core.server.rooms import RoomMembershipTracker, room_for
from LinkChat.core.server.routing import EventRouter

logger = logging.getLogger(__name__)


class MessageDeliveryService:
    """Message send / read / delete and typing relay for chat rooms."""

    def __init__(
        self,
        store: ChatStore,
        rooms: RoomMembershipTracker,
        router: EventRouter,
        clock: Callable[[], float] = time.time
    ):
        self._store = store
        self._rooms = rooms
        self._router = router
        self._clock = clock
        # chat_id -> user ids currently typing
        self._typing: Dict[str, Set[str]] = {}

    async def ensure_participant(self, user_id: str, chat_id: str) -> ChatRecord:
        """Raise NotFound / Forbidden unless ``user_id`` belongs to the chat."""
        chat = await self._store.get_chat(chat_id)
        if chat is None:
            raise NotFound("Chat not found", {"chatId": chat_id})
        if not chat.has_member(user_id):
            raise Forbidden("You are not a participant of this chat", {"chatId": chat_id})
        return chat

    async def populate(self, record: MessageRecord) -> Dict[str, Any]:
        """Wire form with sender profile and replied-to message resolved."""
        sender = await self._store.get_user(record.sender_id)
        reply_to = None
        if record.reply_to_id:
            original = await self._store.get_message(record.reply_to_id)
            if original is not None:
                original_sender = await self._store.get_user(original.sender_id)
                reply_to = original.to_dict(sender=original_sender)
        return record.to_dict(sender=sender, reply_to=reply_to)

    async def send_message(
        self,
        sender_id: str,
        chat_id: str,
        message: NewMessage,
        conn_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Persist a message and deliver it to the chat's room.

        Args:
            sender_id: Authenticated sender
            chat_id: Target chat
            message: Client-chosen fields; id, sender and time are assigned here
            conn_id: Sender's connection, excluded from the stop-typing relay

        Returns:
            The populated message as delivered

        Raises:
            NotFound: chat does not exist
            Forbidden: sender is not a participant
            ValidationError: ``replyTo`` names no message of this chat
        """
        await self.ensure_participant(sender_id, chat_id)
        if message.reply_to_id:
            original = await self._store.get_message(message.reply_to_id)
            if original is None or original.chat_id != chat_id:
                raise ValidationError("replyTo must reference a message in the same chat",
                                      {"replyTo": message.reply_to_id})

        record = await self._store.create_message(chat_id, sender_id, message, self._clock())
        await self._store.set_last_message(chat_id, record.id, record.created_at)
        payload = await self.populate(record)

        await self._clear_typing(sender_id, chat_id, conn_id)
        results = await self._router.send_to_room(
            room_for(chat_id), Event(OutboundEvent.MESSAGE_RECEIVE, payload)
        )
        logger.debug("Message %s in %s delivered to %d connection(s)",
                     record.id, chat_id, sum(1 for r in results.values() if r.delivered))
        return payload

    async def mark_read(self, user_id: str, chat_id: str, conn_id: Optional[str] = None) -> int:
        """
        Mark every message of the chat read by ``user_id``.

        Idempotent: a repeat call changes nothing but still emits the receipt.

        Returns:
            Number of messages newly marked
        """
        await self.ensure_participant(user_id, chat_id)
        count = await self._store.mark_read(chat_id, user_id)
        await self._router.send_to_room(
            room_for(chat_id),
            Event(OutboundEvent.MESSAGE_READ, {"chatId": chat_id, "userId": user_id}),
            exclude=[conn_id] if conn_id else None,
        )
        return count

    async def delete_message(self, requester_id: str, message_id: str) -> MessageRecord:
        """
        Soft-delete a message; only its sender may do so.

        Deleting an already deleted message is a no-op and emits nothing.
        """
        record = await self._store.get_message(message_id)
        if record is None:
            raise NotFound("Message not found", {"messageId": message_id})
        if record.sender_id != requester_id:
            raise Forbidden("Only the sender can delete this message", {"messageId": message_id})
        if record.is_deleted:
            return record

        deleted = await self._store.soft_delete(message_id, self._clock())
        if deleted is None:
            raise NotFound("Message not found", {"messageId": message_id})
        await self._router.send_to_room(
            room_for(deleted.chat_id),
            Event(OutboundEvent.MESSAGE_DELETED, {"messageId": deleted.id, "chatId": deleted.chat_id}),
        )
        logger.info("Message %s deleted by %s", message_id, requester_id)
        return deleted

    # ------------------------------------------------------------------
    # Typing relay
    # ------------------------------------------------------------------

    def _require_subscribed(self, conn_id: str, chat_id: str) -> str:
        room_id = room_for(chat_id)
        if not self._rooms.is_member(conn_id, room_id):
            raise Forbidden("Join the chat before sending typing events", {"chatId": chat_id})
        return room_id

    @staticmethod
    def _typing_payload(user: UserProfile, chat_id: str) -> Dict[str, Any]:
        return {
            "chatId": chat_id,
            "userId": user.id,
            "user": {"_id": user.id, "username": user.username},
        }

    async def typing(self, user: UserProfile, chat_id: str, conn_id: str) -> None:
        room_id = self._require_subscribed(conn_id, chat_id)
        self._typing.setdefault(chat_id, set()).add(user.id)
        await self._router.send_to_room(
            room_id, Event(OutboundEvent.TYPING, self._typing_payload(user, chat_id)), exclude=[conn_id]
        )

    async def stop_typing(self, user: UserProfile, chat_id: str, conn_id: str) -> None:
        room_id = self._require_subscribed(conn_id, chat_id)
        self._discard_typing(user.id, chat_id)
        await self._router.send_to_room(
            room_id, Event(OutboundEvent.STOP_TYPING, self._typing_payload(user, chat_id)), exclude=[conn_id]
        )

    def is_typing(self, user_id: str, chat_id: str) -> bool:
        return user_id in self._typing.get(chat_id, ())

    def _discard_typing(self, user_id: str, chat_id: str) -> bool:
        typing = self._typing.get(chat_id)
        if not typing or user_id not in typing:
            return False
        typing.discard(user_id)
        if not typing:
            self._typing.pop(chat_id, None)
        return True

    async def _clear_typing(self, user_id: str, chat_id: str, conn_id: Optional[str]) -> None:
        if not self._discard_typing(user_id, chat_id):
            return
        user = await self._store.get_user(user_id)
        if user is None:
            user = UserProfile(id=user_id, username="")
        await self._router.send_to_room(
            room_for(chat_id),
            Event(OutboundEvent.STOP_TYPING, self._typing_payload(user, chat_id)),
            exclude=[conn_id] if conn_id else None,
        )

    async def clear_typing_for_user(self, user: UserProfile) -> None:
        """Emit stop-typing for every chat the user was typing in."""
        # clear everything before the first send
        chats = [chat_id for chat_id, users in list(self._typing.items()) if user.id in users]
        for chat_id in chats:
            self._discard_typing(user.id, chat_id)
        for chat_id in chats:
            await self._router.send_to_room(
                room_for(chat_id), Event(OutboundEvent.STOP_TYPING, self._typing_payload(user, chat_id))
            )


__all__ = [
    'MessageDeliveryService',
]

"""
Event protocol module for LinkChat.

Defines the event kinds exchanged over a realtime connection, the JSON
envelope they travel in, and the payload models inbound events are
validated against.

Envelope (one JSON text frame per event):

    {"event": "message:send", "data": {"chatId": "c1", "text": "hello"}}
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from LinkChat.core.errors import ValidationError
from LinkChat.core.models import MessageKind, NewMessage


class InboundEvent(Enum):
    """
    Closed set of events a client may send.

    The connection manager maps every member to a handler and refuses to
    start if one is missing.
    """
    AUTH = "auth"
    CHAT_JOIN = "chat:join"
    CHAT_LEAVE = "chat:leave"
    MESSAGE_SEND = "message:send"
    MESSAGE_READ = "message:read"
    MESSAGE_DELETE = "message:delete"
    TYPING = "user:typing"
    STOP_TYPING = "user:stop-typing"
    CALL_INITIATE = "call:initiate"
    CALL_ACCEPT = "call:accept"
    CALL_REJECT = "call:reject"
    CALL_END = "call:end"
    CALL_SIGNAL = "call:signal"
    PING = "ping"

    @property
    def is_call_event(self) -> bool:
        return self.value.startswith("call:")


class OutboundEvent(Enum):
    """Events the server emits."""
    AUTH_SUCCESS = "auth:success"
    AUTH_ERROR = "auth:error"
    USERS_ONLINE = "users:online"
    USER_ONLINE = "user:online"
    USER_OFFLINE = "user:offline"
    MESSAGE_RECEIVE = "message:receive"
    MESSAGE_DELETED = "message:deleted"
    MESSAGE_READ = "message:read"
    TYPING = "user:typing"
    STOP_TYPING = "user:stop-typing"
    CALL_INITIATED = "call:initiated"
    CALL_STATUS = "call:status"
    CALL_ACCEPTED = "call:accepted"
    CALL_REJECTED = "call:rejected"
    CALL_ENDED = "call:ended"
    CALL_SIGNAL = "call:signal"
    CALL_ERROR = "call:error"
    ERROR = "error"
    PONG = "pong"


@dataclass
class Event:
    """
    One event on the wire.

    Attributes:
        type: Inbound or outbound event kind
        data: JSON-compatible payload
    """
    type: Union[InboundEvent, OutboundEvent]
    data: Any = None

    def serialize(self) -> str:
        """Serialize the event to its JSON envelope."""
        return json.dumps({"event": self.type.value, "data": self.data}, default=str)

    @classmethod
    def deserialize(cls, raw: Union[str, bytes]) -> 'Event':
        """
        Parse an inbound frame.

        Raises:
            ValidationError: frame is not JSON, lacks ``event`` or names an
                unknown inbound event
        """
        try:
            obj = json.loads(raw)
        except (TypeError, ValueError):
            raise ValidationError("Malformed frame: expected a JSON object")
        if not isinstance(obj, dict) or not isinstance(obj.get("event"), str):
            raise ValidationError("Malformed frame: missing 'event'")
        try:
            kind = InboundEvent(obj["event"])
        except ValueError:
            raise ValidationError(f"Unknown event '{obj['event']}'")
        return cls(type=kind, data=obj.get("data"))


class Payload(BaseModel):
    """
    Base for inbound payload models.

    Fields use the camelCase wire names as aliases. Events that the web
    client sends with a bare string (``socket.emit('chat:join', chatId)``)
    set ``scalar_field`` so ``parse`` can lift the string into that field.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    scalar_field: ClassVar[Optional[str]] = None

    @classmethod
    def parse(cls, data: Any) -> 'Payload':
        if isinstance(data, str) and cls.scalar_field:
            data = {cls.scalar_field: data}
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValidationError("Payload must be an object")
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            first = e.errors()[0]
            where = ".".join(str(p) for p in first.get("loc", ())) or "payload"
            raise ValidationError(f"Invalid {where}: {first.get('msg', 'invalid value')}")


class AuthPayload(Payload):
    scalar_field = "token"

    token: str = Field(min_length=1)


class ChatRefPayload(Payload):
    scalar_field = "chatId"

    chat_id: str = Field(alias="chatId", min_length=1)


class SendMessagePayload(Payload):
    chat_id: str = Field(alias="chatId", min_length=1)
    text: str = ""
    type: MessageKind = MessageKind.TEXT
    file_url: Optional[str] = Field(default=None, alias="fileUrl")
    file_name: Optional[str] = Field(default=None, alias="fileName")
    file_size: Optional[int] = Field(default=None, alias="fileSize", ge=0)
    reply_to: Optional[str] = Field(default=None, alias="replyTo")

    @field_validator("text", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> Any:
        if value is None:
            return ""
        return value.strip() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _body_or_file(self) -> 'SendMessagePayload':
        if not self.text and not self.file_url:
            raise ValueError("a message needs text or a fileUrl")
        return self

    def to_new_message(self) -> NewMessage:
        return NewMessage(
            text=self.text,
            type=self.type,
            file_url=self.file_url,
            file_name=self.file_name,
            file_size=self.file_size,
            reply_to_id=self.reply_to,
        )


class MessageRefPayload(Payload):
    scalar_field = "messageId"

    message_id: str = Field(alias="messageId", min_length=1)


class CallInitiatePayload(Payload):
    scalar_field = "recipientId"

    recipient_id: str = Field(alias="recipientId", min_length=1)
    media: Literal["audio", "video"] = Field(default="audio", alias="type")


class CallActionPayload(Payload):
    scalar_field = "callId"

    call_id: str = Field(alias="callId", min_length=1)
    signal: Any = None
    reason: Optional[str] = None


class CallSignalPayload(Payload):
    call_id: str = Field(alias="callId", min_length=1)
    signal: Any

    @field_validator("signal")
    @classmethod
    def _signal_present(cls, value: Any) -> Any:
        if value is None:
            raise ValueError("signal is required")
        return value


__all__ = [
    'InboundEvent',
    'OutboundEvent',
    'Event',
    'Payload',
    'AuthPayload',
    'ChatRefPayload',
    'SendMessagePayload',
    'MessageRefPayload',
    'CallInitiatePayload',
    'CallActionPayload',
    'CallSignalPayload',
]

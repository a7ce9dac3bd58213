"""
Exception classes for the realtime core.

Handlers raise these; the connection dispatcher turns them into an
``error`` / ``call:error`` event on the originating connection and the HTTP
API turns them into status codes.
"""


class ChatCoreError(Exception):
    """Base exception for all realtime core errors."""

    code = "ERROR"
    http_status = 400

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message

    def to_payload(self) -> dict:
        payload = {"code": self.code, "message": self.message}
        payload.update(self.details)
        return payload


class NotFound(ChatCoreError):
    """Referenced chat, call or message does not exist."""
    code = "NOT_FOUND"
    http_status = 404


class Forbidden(ChatCoreError):
    """Actor is authenticated but not entitled to the action."""
    code = "FORBIDDEN"
    http_status = 403


class Unauthorized(ChatCoreError):
    """Actor is unauthenticated, or not a participant of the call."""
    code = "UNAUTHORIZED"
    http_status = 401


class InvalidState(ChatCoreError):
    """Operation is not valid in the current state."""
    code = "INVALID_STATE"
    http_status = 409


class RecipientOffline(ChatCoreError):
    """Call target has no live connection."""
    code = "RECIPIENT_OFFLINE"
    http_status = 409


class ValidationError(ChatCoreError):
    """Malformed inbound payload."""
    code = "VALIDATION_ERROR"
    http_status = 422


class InternalError(ChatCoreError):
    """Storage collaborator failure or another unexpected error."""
    code = "INTERNAL_ERROR"
    http_status = 500


__all__ = [
    'ChatCoreError',
    'NotFound',
    'Forbidden',
    'Unauthorized',
    'InvalidState',
    'RecipientOffline',
    'ValidationError',
    'InternalError',
]

from .errors import ChatCoreError
from .message.protocol import Event, InboundEvent, OutboundEvent

__all__ = ['ChatCoreError', 'Event', 'InboundEvent', 'OutboundEvent']

r"""
    __    _       __   ________          __
   / /   (_)___  / /__/ ____/ /_  ____ _/ /_
  / /   / / __ \/ //_/ /   / __ \/ __ `/ __/
 / /___/ / / / / ,< / /___/ / / / /_/ / /_
/_____/_/_/ /_/_/|_|\____/_/ /_/\__,_/\__/

LinkChat Project - realtime presence, message delivery and call signaling
for a chat application.

License: Apache-2.0 License
"""

__version__ = "1.0.0"
from .core.message.protocol import Event, InboundEvent, OutboundEvent

__all__ = ['Event', 'InboundEvent', 'OutboundEvent', '__version__']

"""
Call session coordination.

One ``CallSession`` per two-party voice/video call, keyed by an opaque
call id. Signaling payloads (SDP offers/answers, ICE candidates) are
relayed between the two participants without being interpreted.

States::

    RINGING --accept--> CONNECTING --both signalled--> ACTIVE
       |                    |                            |
       +-- reject ------> REJECTED                       |
       +-- ring timeout -> TIMED_OUT                     |
       +-- counterpart gone on accept/signal -> FAILED   |
       +-- end / participant offline ------------------> ENDED

Terminal sessions leave the active table immediately. Their ids are kept
as bounded tombstones so late ``accept``/``reject``/``signal`` calls fail
with ``InvalidState`` (and ``end`` is a no-op) instead of ``NotFound``.

Participants are always reached through the presence registry at the
moment of sending, never through a connection captured at initiation.
"""

import asyncio
import hashlib
import itertools
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from LinkChat.config import config
from LinkChat.core.errors import InvalidState, NotFound, RecipientOffline, Unauthorized, ValidationError
from LinkChat.core.message.protocol import Event, OutboundEvent
from LinkChat.core.models import UserProfile
from LinkChat.core.server.presence import PresenceRegistry
from LinkChat.core.server.routing import EventRouter

logger = logging.getLogger(__name__)

TOMBSTONE_LIMIT = 1024


class CallState(Enum):
    RINGING = "ringing"
    CONNECTING = "connecting"
    ACTIVE = "active"
    ENDED = "ended"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = {CallState.ENDED, CallState.REJECTED, CallState.TIMED_OUT, CallState.FAILED}


@dataclass
class CallSession:
    call_id: str
    caller_id: str
    callee_id: str
    media: str = "audio"
    state: CallState = CallState.RINGING
    created_at: float = field(default_factory=time.time)
    ended_at: Optional[float] = None
    end_reason: Optional[str] = None
    # participants that have relayed at least one signaling payload
    signalled_by: Set[str] = field(default_factory=set)

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.caller_id, self.callee_id)

    def other(self, user_id: str) -> str:
        return self.callee_id if user_id == self.caller_id else self.caller_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "callId": self.call_id,
            "callerId": self.caller_id,
            "calleeId": self.callee_id,
            "type": self.media,
            "state": self.state.value,
        }


class CallCoordinator:
    """
    Owns every in-flight call session of one server instance.

    Operations raise ``ChatCoreError`` subclasses; the caller reports them
    to the acting connection.
    """

    def __init__(
        self,
        presence: PresenceRegistry,
        router: EventRouter,
        ring_timeout: Optional[float] = None,
        tombstone_limit: int = TOMBSTONE_LIMIT,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize call coordinator.

        Args:
            presence: Used to reach participants and to check they are online
            router: Outbound event router
            ring_timeout: Seconds a call may ring (config.CALL_RING_TIMEOUT_SECONDS
                by default); 0 disables the timeout
            tombstone_limit: Number of finished call ids remembered
            clock: Time source
        """
        self._presence = presence
        self._router = router
        self._ring_timeout = config.CALL_RING_TIMEOUT_SECONDS if ring_timeout is None else ring_timeout
        self._tombstone_limit = tombstone_limit
        self._clock = clock
        self._sessions: Dict[str, CallSession] = {}
        self._tombstones: "OrderedDict[str, CallState]" = OrderedDict()
        self._timers: Dict[str, asyncio.Task] = {}
        self._seq = itertools.count()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, call_id: str) -> Optional[CallSession]:
        return self._sessions.get(call_id)

    def finished_state(self, call_id: str) -> Optional[CallState]:
        return self._tombstones.get(call_id)

    def sessions_for(self, user_id: str) -> List[CallSession]:
        return [s for s in self._sessions.values() if s.is_participant(user_id)]

    def __len__(self) -> int:
        return len(self._sessions)

    def _new_call_id(self, caller_id: str, callee_id: str) -> str:
        seed = f"{caller_id}\0{callee_id}\0{time.time_ns()}\0{next(self._seq)}"
        return hashlib.sha256(seed.encode("utf-8")).hexdigest()[:32]

    def _require(self, call_id: str, user_id: str) -> CallSession:
        session = self._sessions.get(call_id)
        if session is None:
            finished = self._tombstones.get(call_id)
            if finished is not None:
                raise InvalidState(f"Call already {finished.value}",
                                   {"callId": call_id, "state": finished.value})
            raise NotFound("Call not found", {"callId": call_id})
        if not session.is_participant(user_id):
            raise Unauthorized("Not a participant of this call", {"callId": call_id})
        return session

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def initiate(self, caller: UserProfile, callee_id: str, media: str = "audio") -> CallSession:
        """
        Start ringing ``callee_id``.

        Raises:
            ValidationError: calling oneself
            RecipientOffline: callee has no live connection (no session is created)
            InvalidState: either party is already in a call
        """
        if callee_id == caller.id:
            raise ValidationError("You cannot call yourself")
        if not self._presence.is_online(callee_id):
            raise RecipientOffline("User is offline", {"recipientId": callee_id})
        if self.sessions_for(callee_id):
            raise InvalidState("User is busy", {"recipientId": callee_id})
        if self.sessions_for(caller.id):
            raise InvalidState("You are already in a call")

        session = CallSession(
            call_id=self._new_call_id(caller.id, callee_id),
            caller_id=caller.id,
            callee_id=callee_id,
            media=media,
            created_at=self._clock(),
        )
        self._sessions[session.call_id] = session
        if self._ring_timeout > 0:
            self._timers[session.call_id] = asyncio.create_task(self._ring_timer(session.call_id))
        logger.info("Call %s: %s -> %s (%s) ringing", session.call_id, caller.id, callee_id, media)

        await self._router.send_to_user(callee_id, Event(OutboundEvent.CALL_INITIATED, {
            "callId": session.call_id,
            "caller": caller.summary(),
            "type": media,
        }))
        await self._router.send_to_user(caller.id, Event(OutboundEvent.CALL_STATUS, {
            "callId": session.call_id,
            "status": CallState.RINGING.value,
            "recipient": {"_id": callee_id},
        }))
        return session

    async def accept(self, call_id: str, user: UserProfile, signal: Any = None) -> CallSession:
        """
        Callee accepts a ringing call; an optional answer signal is forwarded.

        Fails the call when the caller is no longer online.
        """
        session = self._require(call_id, user.id)
        if user.id != session.callee_id:
            raise Unauthorized("Only the callee can accept this call", {"callId": call_id})
        if session.state is not CallState.RINGING:
            raise InvalidState(f"Cannot accept a call that is {session.state.value}",
                               {"callId": call_id, "state": session.state.value})

        if not self._presence.is_online(session.caller_id):
            await self._fail(session)
            return session

        self._cancel_timer(call_id)
        session.state = CallState.CONNECTING
        payload = {"callId": call_id, "recipient": user.summary()}
        if signal is not None:
            payload["signal"] = signal
            session.signalled_by.add(user.id)
        logger.info("Call %s accepted", call_id)
        await self._router.send_to_user(session.caller_id, Event(OutboundEvent.CALL_ACCEPTED, payload))
        return session

    async def reject(self, call_id: str, user: UserProfile, reason: Optional[str] = None) -> CallSession:
        """Callee declines a ringing call."""
        session = self._require(call_id, user.id)
        if user.id != session.callee_id:
            raise Unauthorized("Only the callee can reject this call", {"callId": call_id})
        if session.state is not CallState.RINGING:
            raise InvalidState(f"Cannot reject a call that is {session.state.value}",
                               {"callId": call_id, "state": session.state.value})

        self._finish(session, CallState.REJECTED, reason or "rejected")
        await self._router.send_to_user(session.caller_id, Event(OutboundEvent.CALL_REJECTED, {
            "callId": call_id,
            "recipient": {"_id": user.id, "username": user.username},
            "reason": reason,
        }))
        return session

    async def signal(self, call_id: str, user: UserProfile, payload: Any) -> CallSession:
        """
        Relay an opaque signaling payload to the other participant.

        The call becomes ACTIVE once both participants have signalled.
        """
        session = self._require(call_id, user.id)
        if session.state not in (CallState.CONNECTING, CallState.ACTIVE):
            raise InvalidState(f"Cannot signal a call that is {session.state.value}",
                               {"callId": call_id, "state": session.state.value})

        other = session.other(user.id)
        if not self._presence.is_online(other):
            await self._fail(session)
            return session

        session.signalled_by.add(user.id)
        became_active = (
            session.state is CallState.CONNECTING
            and {session.caller_id, session.callee_id} <= session.signalled_by
        )
        if became_active:
            session.state = CallState.ACTIVE

        await self._router.send_to_user(other, Event(OutboundEvent.CALL_SIGNAL, {
            "callId": call_id,
            "signal": payload,
            "from": {"_id": user.id, "username": user.username},
        }))
        if became_active:
            logger.info("Call %s active", call_id)
            status = Event(OutboundEvent.CALL_STATUS, {"callId": call_id, "status": CallState.ACTIVE.value})
            await self._router.send_to_user(session.caller_id, status)
            await self._router.send_to_user(session.callee_id, status)
        return session

    async def end(self, call_id: str, user: UserProfile) -> Optional[CallSession]:
        """
        Hang up. Valid from any non-terminal state.

        Ending a call that already finished is a no-op and returns None.
        """
        if call_id in self._tombstones:
            return None
        session = self._require(call_id, user.id)
        self._finish(session, CallState.ENDED, "ended")
        await self._router.send_to_user(session.other(user.id), Event(OutboundEvent.CALL_ENDED, {
            "callId": call_id,
            "endedBy": {"_id": user.id, "username": user.username},
            "reason": "ended",
        }))
        return session

    async def on_user_offline(self, user_id: str) -> List[CallSession]:
        """End every call of a user whose presence entry was removed."""
        ended = self.end_calls_of(user_id)
        await self.notify_disconnected(user_id, ended)
        return ended

    def end_calls_of(self, user_id: str) -> List[CallSession]:
        """
        Finish every non-terminal call of ``user_id`` without notifying anyone.

        Synchronous, so it can run in the same step that removed the user's
        presence: calls placed after a reconnect are never caught by it.
        """
        ended = self.sessions_for(user_id)
        for session in ended:
            self._finish(session, CallState.ENDED, "disconnected")
        return ended

    async def notify_disconnected(self, user_id: str, sessions: List[CallSession]) -> None:
        """Tell the remaining participant of each session that ``user_id`` dropped."""
        for session in sessions:
            await self._router.send_to_user(session.other(user_id), Event(OutboundEvent.CALL_ENDED, {
                "callId": session.call_id,
                "endedBy": {"_id": user_id},
                "reason": "disconnected",
            }))

    async def shutdown(self) -> None:
        """Cancel pending ring timers; sessions die with the process."""
        timers = list(self._timers.values())
        self._timers.clear()
        for task in timers:
            task.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _fail(self, session: CallSession) -> None:
        self._finish(session, CallState.FAILED, "failed")
        await self._notify_both(session, {"callId": session.call_id, "reason": "failed"})

    async def _notify_both(self, session: CallSession, payload: Dict[str, Any]) -> None:
        event = Event(OutboundEvent.CALL_ENDED, payload)
        for user_id in (session.caller_id, session.callee_id):
            await self._router.send_to_user(user_id, event)

    def _finish(self, session: CallSession, state: CallState, reason: str) -> None:
        """Move to a terminal state; synchronous so no other handler sees a half-finished call."""
        session.state = state
        session.end_reason = reason
        session.ended_at = self._clock()
        self._sessions.pop(session.call_id, None)
        self._tombstones[session.call_id] = state
        while len(self._tombstones) > self._tombstone_limit:
            self._tombstones.popitem(last=False)
        self._cancel_timer(session.call_id)
        logger.info("Call %s %s (%s)", session.call_id, state.value, reason)

    def _cancel_timer(self, call_id: str) -> None:
        task = self._timers.pop(call_id, None)
        # the timer finishing its own call must not cancel itself
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _ring_timer(self, call_id: str) -> None:
        await asyncio.sleep(self._ring_timeout)
        session = self._sessions.get(call_id)
        if session is None or session.state is not CallState.RINGING:
            return
        self._finish(session, CallState.TIMED_OUT, "timeout")
        try:
            await self._notify_both(session, {"callId": call_id, "reason": "timeout"})
        except Exception as e:
            logger.exception("Error notifying timeout of call %s: %s", call_id, e)


__all__ = [
    'CallState',
    'CallSession',
    'CallCoordinator',
    'TOMBSTONE_LIMIT',
]

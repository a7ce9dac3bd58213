"""
Realtime connection manager that composes all server components.

This is the main entry point: it owns the connection lifecycle
(connect, authenticate, disconnect) and dispatches every inbound event to
the component that handles it.

Architecture:
    ┌─────────────────────────────────────────────────────────────────┐
    │                        RealtimeManager                          │
    │  ┌─────────────┐  ┌─────────────┐  ┌─────────────────────────┐  │
    │  │ JWT         │  │ Presence    │  │ Room Membership         │  │
    │  │ Auth        │  │ Registry    │  │ Tracker                 │  │
    │  └─────────────┘  └─────────────┘  └─────────────────────────┘  │
    │  ┌─────────────┐  ┌─────────────┐  ┌─────────────────────────┐  │
    │  │ Connection  │  │ Message     │  │ Call                    │  │
    │  │ Registry    │  │ Delivery    │  │ Coordinator             │  │
    │  └─────────────┘  └─────────────┘  └─────────────────────────┘  │
    │                 all outbound events via EventRouter             │
    └─────────────────────────────────────────────────────────────────┘

Lifecycle:
    1. connect → unauthenticated connection, auth deadline armed
    2. authenticate (handshake token or ``auth`` event) → presence
       registered, rooms of every chat joined, presence broadcast
    3. events dispatched through a table keyed by ``InboundEvent``
    4. disconnect → rooms dropped, presence unregistered (guarded),
       typing cleared, calls ended, offline broadcast

Registries live on the manager instance and die with the process.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from LinkChat.config import config
from LinkChat.core.errors import ChatCoreError, Forbidden, InternalError, Unauthorized
from LinkChat.core.message.protocol import (
    AuthPayload,
    CallActionPayload,
    CallInitiatePayload,
    CallSignalPayload,
    ChatRefPayload,
    Event,
    InboundEvent,
    MessageRefPayload,
    OutboundEvent,
    SendMessagePayload,
)
from LinkChat.core.models import iso
from LinkChat.core.server.auth import JWTAuthenticator
from LinkChat.core.server.calls import CallCoordinator
from LinkChat.core.server.interfaces import Authenticator, AuthResult, ChatStore
from LinkChat.core.server.messaging import MessageDeliveryService
from LinkChat.core.server.presence import PresenceRegistry
from LinkChat.core.server.rooms import RoomMembershipTracker, room_for
from LinkChat.core.server.routing import EventRouter
from LinkChat.core.server.transport import ConnectionRegistry, WebSocketConnection

logger = logging.getLogger(__name__)

Handler = Callable[[WebSocketConnection, Any], Awaitable[None]]

PRESENCE_MODES = ("delta", "full", "both")
# events accepted before authentication
_OPEN_EVENTS = {InboundEvent.AUTH, InboundEvent.PING}

CLOSE_AUTH_TIMEOUT = 1008
CLOSE_SUPERSEDED = 4000
CLOSE_GOING_AWAY = 1001


class RealtimeManager:
    """
    Realtime manager for one server instance.

    Example:
        store = InMemoryChatStore()
        manager = RealtimeManager(store)

        async with manager.run("localhost", 8765):
            await asyncio.Future()
    """

    def __init__(
        self,
        store: ChatStore,
        authenticator: Optional[Authenticator] = None,
        ring_timeout: Optional[float] = None,
        auth_timeout: Optional[float] = None,
        close_superseded: Optional[bool] = None,
        presence_broadcast: Optional[str] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the manager.

        Args:
            store: Users, chats and messages
            authenticator: Credential verifier (JWT against ``store`` if None)
            ring_timeout: Call ringing window, config.CALL_RING_TIMEOUT_SECONDS if None
            auth_timeout: Seconds an unauthenticated connection may live,
                config.AUTH_TIMEOUT_SECONDS if None; 0 disables
            close_superseded: Close a user's older connection when they
                authenticate elsewhere, config.CLOSE_SUPERSEDED_CONNECTIONS if None
            presence_broadcast: ``delta``, ``full`` or ``both``
            clock: Time source
        """
        self._store = store
        self._authenticator = authenticator or JWTAuthenticator(store)
        self._auth_timeout = config.AUTH_TIMEOUT_SECONDS if auth_timeout is None else auth_timeout
        self._close_superseded = (
            config.CLOSE_SUPERSEDED_CONNECTIONS if close_superseded is None else close_superseded
        )
        self._presence_mode = (presence_broadcast or config.PRESENCE_BROADCAST).lower()
        if self._presence_mode not in PRESENCE_MODES:
            raise ValueError(f"presence_broadcast must be one of {PRESENCE_MODES}, got {self._presence_mode!r}")
        self._clock = clock

        self._connections = ConnectionRegistry()
        self._presence = PresenceRegistry(clock=clock)
        self._rooms = RoomMembershipTracker()
        self._router = EventRouter(self._connections, self._presence, self._rooms)
        self._messages = MessageDeliveryService(store, self._rooms, self._router, clock=clock)
        self._calls = CallCoordinator(self._presence, self._router, ring_timeout=ring_timeout, clock=clock)

        self._handlers = self._build_handlers()

        self._host: Optional[str] = None
        self._port: Optional[int] = None
        self._server = None
        self._running = False

        logger.info("RealtimeManager initialized (presence broadcast: %s)", self._presence_mode)

    def _build_handlers(self) -> Dict[InboundEvent, Handler]:
        handlers: Dict[InboundEvent, Handler] = {
            InboundEvent.AUTH: self._on_auth,
            InboundEvent.CHAT_JOIN: self._on_chat_join,
            InboundEvent.CHAT_LEAVE: self._on_chat_leave,
            InboundEvent.MESSAGE_SEND: self._on_message_send,
            InboundEvent.MESSAGE_READ: self._on_message_read,
            InboundEvent.MESSAGE_DELETE: self._on_message_delete,
            InboundEvent.TYPING: self._on_typing,
            InboundEvent.STOP_TYPING: self._on_stop_typing,
            InboundEvent.CALL_INITIATE: self._on_call_initiate,
            InboundEvent.CALL_ACCEPT: self._on_call_accept,
            InboundEvent.CALL_REJECT: self._on_call_reject,
            InboundEvent.CALL_END: self._on_call_end,
            InboundEvent.CALL_SIGNAL: self._on_call_signal,
            InboundEvent.PING: self._on_ping,
        }
        missing = [kind.value for kind in InboundEvent if kind not in handlers]
        if missing:
            raise RuntimeError(f"No handler for inbound events: {', '.join(missing)}")
        return handlers

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def store(self) -> ChatStore:
        return self._store

    @property
    def presence(self) -> PresenceRegistry:
        return self._presence

    @property
    def rooms(self) -> RoomMembershipTracker:
        return self._rooms

    @property
    def connections(self) -> ConnectionRegistry:
        return self._connections

    @property
    def router(self) -> EventRouter:
        return self._router

    @property
    def messages(self) -> MessageDeliveryService:
        return self._messages

    @property
    def calls(self) -> CallCoordinator:
        return self._calls

    @property
    def is_running(self) -> bool:
        return self._running

    def online_user_ids(self) -> List[str]:
        return sorted(self._presence.all_online_user_ids())

    # ------------------------------------------------------------------
    # Server lifecycle
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def run(self, host: str = "localhost", port: int = 8765):
        """
        Run the WebSocket server as an async context manager.

        Args:
            host: Host to bind to
            port: Port to listen on

        Yields:
            The manager instance
        """
        await self.start(host, port)
        try:
            yield self
        finally:
            await self.stop()

    async def start(self, host: str = "localhost", port: int = 8765) -> None:
        """
        Start the WebSocket server.

        Args:
            host: Host to bind to
            port: Port to listen on (0 picks a free port)
        """
        self._server = await serve(self._handle_connection, host, port)
        sockets = self._server.sockets
        self._host = host
        self._port = sockets[0].getsockname()[1] if sockets else port
        self._running = True
        logger.info("WebSocket server started on ws://%s:%s", host, self._port)

    @property
    def port(self) -> Optional[int]:
        return self._port

    async def stop(self) -> None:
        """Stop the WebSocket server."""
        self._running = False

        for connection in self._connections:
            await connection.close(CLOSE_GOING_AWAY, "Server shutting down")

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        await self._calls.shutdown()
        logger.info("WebSocket server stopped")

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """Serve one WebSocket connection from handshake to close."""
        connection = await self.on_connect(websocket)
        try:
            token = self._authenticator.extract_token(websocket)
            if token:
                await self.dispatch(connection, Event(InboundEvent.AUTH, {"token": token}))

            async for raw in websocket:
                await self.handle_frame(connection, raw)

        except ConnectionClosed:
            logger.debug("Connection closed for %s", connection.conn_id)
        except Exception as e:
            logger.exception("Error handling connection %s: %s", connection.conn_id, e)
        finally:
            await self.on_disconnect(connection)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def on_connect(self, websocket: ServerConnection) -> WebSocketConnection:
        """Register a new, unauthenticated connection and arm its auth deadline."""
        connection = WebSocketConnection(websocket)
        self._connections.add(connection)
        if self._auth_timeout > 0:
            connection.auth_timer = asyncio.create_task(self._auth_deadline(connection))
        logger.debug("Connection %s opened", connection.conn_id)
        return connection

    async def on_authenticate(self, connection: WebSocketConnection, token: str) -> AuthResult:
        """
        Verify a credential and attach the user to the connection.

        On failure an ``auth:error`` is emitted and the connection stays open
        and unauthenticated.

        Raises:
            Forbidden: the connection is already authenticated as another user
        """
        result = await self._authenticator.authenticate(token)
        if not result.success:
            await self._router.send_to_connection(connection.conn_id, Event(OutboundEvent.AUTH_ERROR, {
                "code": result.error_code,
                "message": result.error_message or "Authentication failed",
            }))
            return result

        user = result.user
        if connection.authenticated:
            if connection.user_id != user.id:
                raise Forbidden("Connection is already authenticated as another user")
            await self._send_auth_success(connection)
            return result

        chats = await self._store.list_chats_for_user(user.id)
        if connection.conn_id not in self._connections:
            # closed while the chat list was loading
            return result

        # No awaits from here until presence and rooms are consistent
        connection.user = user
        connection.cancel_auth_timer()
        superseded = self._presence.register(user.id, connection.conn_id)
        for chat in chats:
            self._rooms.join(connection.conn_id, room_for(chat.id))
        user.is_online = True
        user.last_seen = self._presence.last_seen(user.id)
        logger.info("User %s authenticated on %s (%d chats)", user.id, connection.conn_id, len(chats))

        if superseded and self._close_superseded:
            old = self._connections.get(superseded)
            if old is not None:
                logger.info("Closing superseded connection %s of %s", superseded, user.id)
                await old.close(CLOSE_SUPERSEDED, "Superseded by a newer connection")

        await self._write_presence(user.id)
        if self._presence.lookup(user.id) != connection.conn_id:
            # closed or superseded while presence was being stored
            return result
        await self._send_auth_success(connection)
        await self._broadcast_presence(user.id, True, exclude=[connection.conn_id])
        return result

    async def on_disconnect(self, connection: WebSocketConnection) -> None:
        """Remove every trace of a closed connection."""
        connection.cancel_auth_timer()
        self._connections.remove(connection.conn_id)
        self._rooms.drop_connection(connection.conn_id)

        user = connection.user
        if user is None:
            logger.debug("Unauthenticated connection %s closed", connection.conn_id)
            return

        if not self._presence.unregister(user.id, connection.conn_id):
            logger.debug("Superseded connection %s of %s closed", connection.conn_id, user.id)
            return

        logger.info("User %s disconnected", user.id)
        # same step as unregister: a call placed after a reconnect is not ended here
        ended_calls = self._calls.end_calls_of(user.id)
        await self._messages.clear_typing_for_user(user)
        await self._calls.notify_disconnected(user.id, ended_calls)
        await self._write_presence(user.id)
        if self._presence.is_online(user.id):
            logger.debug("User %s reconnected during disconnect cleanup", user.id)
            return
        await self._broadcast_presence(user.id, False)

    async def _auth_deadline(self, connection: WebSocketConnection) -> None:
        await asyncio.sleep(self._auth_timeout)
        if connection.authenticated:
            return
        connection.auth_timer = None
        logger.info("Closing %s: not authenticated within %ss", connection.conn_id, self._auth_timeout)
        await connection.close(CLOSE_AUTH_TIMEOUT, "Authentication timeout")

    async def _send_auth_success(self, connection: WebSocketConnection) -> None:
        await self._router.send_to_connection(connection.conn_id, Event(OutboundEvent.AUTH_SUCCESS, {
            "user": connection.user.to_dict(),
            "onlineUsers": self.online_user_ids(),
        }))

    async def _write_presence(self, user_id: str) -> None:
        """Store the registry's current view of the user, again if it changed during the write."""
        online = self._presence.is_online(user_id)
        while True:
            last_seen = self._presence.last_seen(user_id) or self._clock()
            try:
                await self._store.set_user_presence(user_id, online, last_seen)
            except Exception as e:
                logger.exception("Failed to store presence of %s: %s", user_id, e)
                return
            current = self._presence.is_online(user_id)
            if current == online:
                return
            online = current

    async def _broadcast_presence(
        self,
        user_id: str,
        online: bool,
        exclude: Optional[Iterable[str]] = None
    ) -> None:
        if self._presence_mode in ("delta", "both"):
            kind = OutboundEvent.USER_ONLINE if online else OutboundEvent.USER_OFFLINE
            await self._router.broadcast(Event(kind, {
                "userId": user_id,
                "isOnline": online,
                "lastSeen": iso(self._presence.last_seen(user_id)),
            }), exclude=exclude)
        if self._presence_mode in ("full", "both"):
            await self._router.broadcast(Event(OutboundEvent.USERS_ONLINE, self.online_user_ids()), exclude=exclude)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def handle_frame(self, connection: WebSocketConnection, raw: Any) -> None:
        """Parse one inbound frame and dispatch it."""
        try:
            event = Event.deserialize(raw)
        except ChatCoreError as e:
            await self._router.send_to_connection(connection.conn_id, Event(OutboundEvent.ERROR, e.to_payload()))
            return
        await self.dispatch(connection, event)

    async def dispatch(self, connection: WebSocketConnection, event: Event) -> None:
        """
        Run the handler for ``event``.

        Failures are reported to ``connection`` only: ``call:error`` for call
        events, ``error`` for everything else.
        """
        handler = self._handlers[event.type]
        try:
            if event.type not in _OPEN_EVENTS and not connection.authenticated:
                raise Unauthorized("Authenticate first")
            await handler(connection, event.data)
        except ChatCoreError as e:
            await self._report(connection, event.type, e)
        except Exception as e:
            logger.exception("Error handling %s from %s: %s", event.type.value, connection.conn_id, e)
            await self._report(connection, event.type, InternalError("Internal server error"))

    async def _report(self, connection: WebSocketConnection, kind: InboundEvent, error: ChatCoreError) -> None:
        logger.debug("%s from %s failed: %s %s", kind.value, connection.conn_id, error.code, error.message)
        payload = error.to_payload()
        payload["event"] = kind.value
        outbound = OutboundEvent.CALL_ERROR if kind.is_call_event else OutboundEvent.ERROR
        await self._router.send_to_connection(connection.conn_id, Event(outbound, payload))

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _on_auth(self, connection: WebSocketConnection, data: Any) -> None:
        payload = AuthPayload.parse(data)
        await self.on_authenticate(connection, payload.token)

    async def _on_chat_join(self, connection: WebSocketConnection, data: Any) -> None:
        payload = ChatRefPayload.parse(data)
        await self._messages.ensure_participant(connection.user_id, payload.chat_id)
        if connection.conn_id in self._connections:
            self._rooms.join(connection.conn_id, room_for(payload.chat_id))

    async def _on_chat_leave(self, connection: WebSocketConnection, data: Any) -> None:
        payload = ChatRefPayload.parse(data)
        self._rooms.leave(connection.conn_id, room_for(payload.chat_id))

    async def _on_message_send(self, connection: WebSocketConnection, data: Any) -> None:
        payload = SendMessagePayload.parse(data)
        await self._messages.send_message(
            connection.user_id, payload.chat_id, payload.to_new_message(), conn_id=connection.conn_id
        )

    async def _on_message_read(self, connection: WebSocketConnection, data: Any) -> None:
        payload = ChatRefPayload.parse(data)
        await self._messages.mark_read(connection.user_id, payload.chat_id, conn_id=connection.conn_id)

    async def _on_message_delete(self, connection: WebSocketConnection, data: Any) -> None:
        payload = MessageRefPayload.parse(data)
        await self._messages.delete_message(connection.user_id, payload.message_id)

    async def _on_typing(self, connection: WebSocketConnection, data: Any) -> None:
        payload = ChatRefPayload.parse(data)
        await self._messages.typing(connection.user, payload.chat_id, connection.conn_id)

    async def _on_stop_typing(self, connection: WebSocketConnection, data: Any) -> None:
        payload = ChatRefPayload.parse(data)
        await self._messages.stop_typing(connection.user, payload.chat_id, connection.conn_id)

    async def _on_call_initiate(self, connection: WebSocketConnection, data: Any) -> None:
        payload = CallInitiatePayload.parse(data)
        await self._calls.initiate(connection.user, payload.recipient_id, payload.media)

    async def _on_call_accept(self, connection: WebSocketConnection, data: Any) -> None:
        payload = CallActionPayload.parse(data)
        await self._calls.accept(payload.call_id, connection.user, payload.signal)

    async def _on_call_reject(self, connection: WebSocketConnection, data: Any) -> None:
        payload = CallActionPayload.parse(data)
        await self._calls.reject(payload.call_id, connection.user, payload.reason)

    async def _on_call_end(self, connection: WebSocketConnection, data: Any) -> None:
        payload = CallActionPayload.parse(data)
        await self._calls.end(payload.call_id, connection.user)

    async def _on_call_signal(self, connection: WebSocketConnection, data: Any) -> None:
        payload = CallSignalPayload.parse(data)
        await self._calls.signal(payload.call_id, connection.user, payload.signal)

    async def _on_ping(self, connection: WebSocketConnection, data: Any) -> None:
        await self._router.send_to_connection(connection.conn_id, Event(OutboundEvent.PONG, {
            "ts": iso(self._clock()),
        }))


def create_server(store: ChatStore, **kwargs) -> RealtimeManager:
    """
    Factory function to create a configured realtime server.

    Args:
        store: Storage collaborator
        **kwargs: Additional arguments passed to RealtimeManager

    Returns:
        Configured RealtimeManager instance
    """
    return RealtimeManager(store, **kwargs)

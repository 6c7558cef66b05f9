from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Sequence, Tuple

import socketio

from liveclass_shared.errors import AuthExpired, LiveSessionError, SignalingDisconnected
from liveclass_shared.protocol import (
    SOCKETIO_PATH,
    ConnectionState,
    InboundAction,
    SignalingEvent,
    parse_inbound_event,
)

from .callbacks import invoke

logger = logging.getLogger(__name__)

RECONNECT_MAX_ATTEMPTS = 5
RECONNECT_BASE_DELAY_SECONDS = 1.0
RECONNECT_MAX_DELAY_SECONDS = 8.0
MAX_PENDING_MESSAGES = 100

ActionCallback = Callable[[InboundAction], Awaitable[None] | None]
StateCallback = Callable[[ConnectionState], Awaitable[None] | None]
FatalCallback = Callable[[LiveSessionError], Awaitable[None] | None]


class SocketIOTransport:
    """Socket.IO connection to the signaling server.

    Reconnection is driven by ``SignalingChannel``, so the underlying client is
    created with its own reconnection disabled.
    """

    def __init__(
        self,
        url: str,
        *,
        path: str = SOCKETIO_PATH,
        transports: Sequence[str] = ("websocket", "polling"),
        wait_timeout: float = 10.0,
    ) -> None:
        self._url = url
        self._path = path
        self._transports = list(transports)
        self._wait_timeout = wait_timeout
        self._client = socketio.AsyncClient(reconnection=False)
        self._on_event: Optional[Callable[[str, Any], None]] = None
        self._on_disconnect: Optional[Callable[[Optional[str]], Any]] = None
        self._connect_error: Optional[str] = None
        self._client.on("connect_error", self._handle_connect_error)
        self._client.on("disconnect", self._handle_disconnect)
        self._client.on("*", self._handle_event)

    @property
    def connected(self) -> bool:
        return bool(self._client.connected)

    def bind(self, on_event: Callable[[str, Any], None], on_disconnect: Callable[[Optional[str]], Any]) -> None:
        self._on_event = on_event
        self._on_disconnect = on_disconnect

    async def connect(self, token: str, url: Optional[str] = None) -> None:
        """Connect with ``token``; ``url`` overrides the configured endpoint for this attempt."""
        target = url or self._url
        self._connect_error = None
        logger.info("Connecting to signaling server %s", target)
        try:
            await self._client.connect(
                target,
                auth={"token": token},
                transports=self._transports,
                socketio_path=self._path,
                wait_timeout=self._wait_timeout,
            )
        except socketio.exceptions.ConnectionError as exc:
            reason = self._connect_error or str(exc) or "connection refused"
            if "authentication error" in reason.lower():
                raise AuthExpired(reason) from exc
            raise ConnectionError(reason) from exc

    async def emit(self, event: str, payload: Dict[str, Any]) -> None:
        await self._client.emit(event, payload)

    async def disconnect(self) -> None:
        await self._client.disconnect()

    async def _handle_connect_error(self, data: Any = None) -> None:
        if isinstance(data, dict):
            data = data.get("message")
        self._connect_error = str(data) if data else None
        logger.debug("Signaling connect_error: %s", self._connect_error)

    async def _handle_disconnect(self, *args: Any) -> None:
        reason = str(args[0]) if args else None
        await invoke(self._on_disconnect, reason, label="signaling disconnect callback")

    async def _handle_event(self, event: str, *args: Any) -> None:
        if self._on_event is not None:
            self._on_event(event, args[0] if args else None)


class SignalingChannel:
    """Authenticated, self-healing signaling connection for one session.

    Every transition into CONNECTED re-announces room membership before any
    queued outbound message is flushed. Inbound events are parsed into typed
    actions and handed to ``on_action`` one at a time in receipt order.
    """

    def __init__(
        self,
        transport: Any,
        session_id: str,
        token: str,
        on_action: ActionCallback,
        *,
        on_state_change: Optional[StateCallback] = None,
        on_fatal: Optional[FatalCallback] = None,
        max_attempts: int = RECONNECT_MAX_ATTEMPTS,
        base_delay: float = RECONNECT_BASE_DELAY_SECONDS,
        max_delay: float = RECONNECT_MAX_DELAY_SECONDS,
        max_pending: int = MAX_PENDING_MESSAGES,
    ) -> None:
        self._transport = transport
        self._session_id = session_id
        self._token = token
        self._on_action = on_action
        self._on_state_change = on_state_change
        self._on_fatal = on_fatal
        self._max_attempts = max(1, max_attempts)
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._pending: Deque[Tuple[str, Dict[str, Any]]] = deque(maxlen=max_pending)
        self._inbox: asyncio.Queue[Tuple[str, Any]] = asyncio.Queue()
        self._flush_lock = asyncio.Lock()
        self._state = ConnectionState.DISCONNECTED
        self._connect_task: Optional[asyncio.Task[None]] = None
        self._inbox_task: Optional[asyncio.Task[None]] = None
        self._url: Optional[str] = None
        self._opened = False
        self._closed = False
        self._has_connected = False
        transport.bind(self._enqueue_event, self._handle_transport_disconnect)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def open(self, url: Optional[str] = None) -> None:
        """Start connecting in the background; progress is reported through ``on_state_change``.

        ``url`` is the endpoint handed out by the join call; without it the
        transport uses the one it was built with.
        """
        if self._closed:
            raise RuntimeError("Signaling channel already closed")
        if self._opened:
            return
        self._opened = True
        self._url = url
        self._inbox_task = asyncio.create_task(self._drain_inbox())
        await self._set_state(ConnectionState.CONNECTING)
        self._connect_task = asyncio.create_task(self._connect_loop())

    async def close(self, *, leave: bool = True) -> None:
        if self._closed:
            return
        self._closed = True
        current = asyncio.current_task()
        if self._connect_task is not None and self._connect_task is not current and not self._connect_task.done():
            self._connect_task.cancel()
            try:
                await self._connect_task
            except asyncio.CancelledError:
                pass
        if leave and self._state is ConnectionState.CONNECTED and self._transport.connected:
            try:
                await self._transport.emit(SignalingEvent.LEAVE_ROOM.value, self._room_payload())
            except Exception:
                logger.warning("Failed to announce leaving the room", exc_info=True)
        try:
            await self._transport.disconnect()
        except Exception:
            logger.warning("Error while closing signaling connection", exc_info=True)
        self._pending.clear()
        if self._inbox_task is not None and self._inbox_task is not current:
            self._inbox_task.cancel()
        await self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Signaling channel closed")

    async def send(self, event: SignalingEvent, payload: Dict[str, Any]) -> None:
        """Emit now when connected, otherwise queue until the next (re)connect.

        Messages left over from a failed emit go out ahead of this one on the
        next send over a healthy link.
        """
        if self._closed:
            logger.debug("Dropping %s on closed channel", event.value)
            return
        if len(self._pending) == self._pending.maxlen:
            logger.warning("Outbound queue full; dropping oldest message")
        self._pending.append((event.value, payload))
        if self._state is ConnectionState.CONNECTED and self._transport.connected:
            await self._flush_pending()

    async def send_chat(self, text: str) -> None:
        payload = self._room_payload()
        payload["text"] = text
        await self.send(SignalingEvent.SEND_CHAT, payload)

    async def set_presence(self, *, muted: bool, video_enabled: bool) -> None:
        payload = self._room_payload()
        payload.update({"muted": muted, "videoEnabled": video_enabled})
        await self.send(SignalingEvent.SET_PRESENCE, payload)

    async def raise_hand(self, raised: bool) -> None:
        payload = self._room_payload()
        payload["raised"] = raised
        await self.send(SignalingEvent.RAISE_HAND, payload)

    def _room_payload(self) -> Dict[str, Any]:
        return {"sessionId": self._session_id}

    async def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.debug("Signaling %s -> %s", self._state.value, state.value)
        self._state = state
        await invoke(self._on_state_change, state, label="signaling state callback")

    async def _connect_loop(self) -> None:
        attempt = 0
        while not self._closed:
            try:
                await self._transport.connect(self._token, url=self._url)
            except asyncio.CancelledError:
                raise
            except AuthExpired as exc:
                logger.error("Signaling server rejected credentials: %s", exc)
                await self._fail(exc)
                return
            except Exception as exc:
                attempt += 1
                if attempt >= self._max_attempts:
                    logger.error("Signaling connection failed after %d attempts: %s", attempt, exc)
                    await self._fail(SignalingDisconnected(f"Gave up after {attempt} attempts: {exc}"))
                    return
                delay = min(self._base_delay * (2 ** (attempt - 1)), self._max_delay)
                logger.warning("Signaling connect attempt %d failed (%s); retrying in %.1fs", attempt, exc, delay)
                await asyncio.sleep(delay)
                continue

            if self._closed:
                await self._transport.disconnect()
                return
            if await self._on_connected():
                return
            attempt += 1

    async def _on_connected(self) -> bool:
        first = not self._has_connected
        self._has_connected = True
        try:
            await self._transport.emit(SignalingEvent.JOIN_ROOM.value, self._room_payload())
        except Exception:
            logger.warning("Failed to join signaling room", exc_info=True)
            return False
        await self._set_state(ConnectionState.CONNECTED)
        logger.info("Signaling %s for session %s", "connected" if first else "reconnected", self._session_id)
        await self._flush_pending()
        return True

    async def _flush_pending(self) -> None:
        async with self._flush_lock:
            while self._pending and not self._closed:
                event, payload = self._pending[0]
                try:
                    await self._transport.emit(event, payload)
                except Exception:
                    logger.warning("Failed to send %s; keeping it queued", event, exc_info=True)
                    return
                if self._pending:
                    self._pending.popleft()

    async def _fail(self, error: LiveSessionError) -> None:
        await self._set_state(ConnectionState.DISCONNECTED)
        await invoke(self._on_fatal, error, label="signaling fatal callback")

    async def _handle_transport_disconnect(self, reason: Optional[str] = None) -> None:
        if self._closed or self._state is not ConnectionState.CONNECTED:
            return
        logger.warning("Signaling connection lost (%s); reconnecting", reason or "unknown")
        await self._set_state(ConnectionState.RECONNECTING)
        self._connect_task = asyncio.create_task(self._connect_loop())

    def _enqueue_event(self, event: str, data: Any) -> None:
        if not self._closed:
            self._inbox.put_nowait((event, data))

    async def _drain_inbox(self) -> None:
        while not self._closed:
            event, data = await self._inbox.get()
            if self._closed:
                return
            try:
                action = parse_inbound_event(event, data)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Dropping malformed %s event: %s", event, exc)
                continue
            if action is None:
                logger.debug("Ignoring signaling event %s", event)
                continue
            await invoke(self._on_action, action, label=f"{event} handler")

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from liveclass_shared.errors import (
    AuthExpired,
    JoinFailed,
    JoinTimeout,
    LiveSessionError,
    MediaInitFailed,
    SessionEnded,
    SessionNotLive,
)
from liveclass_shared.protocol import (
    AuthCredential,
    ChatMessage,
    ChatReceived,
    ConnectionState,
    ForceKick,
    ForceMute,
    ForceVideo,
    HandRaiseAck,
    InboundAction,
    JoinResult,
    Origin,
    Participant,
    ParticipantJoined,
    ParticipantLeft,
    ScreenShareStatus,
    ServerError,
    SessionEndedNotice,
    SessionInfo,
    SessionStatus,
)

from .callbacks import invoke
from .chat import CHAT_MATCH_WINDOW_SECONDS, MAX_CHAT_HISTORY, ChatLog
from .media_session import AttachmentRequest, MediaSession
from .moderation import LocalParticipantState, ModerationReconciler
from .rest_client import JOIN_TIMEOUT_SECONDS
from .signaling_client import SignalingChannel

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[Dict[str, Any]], Awaitable[None] | None]
ErrorCallback = Callable[[LiveSessionError], Awaitable[None] | None]

_BANNER_SEVERITY = (
    ConnectionState.CONNECTED,
    ConnectionState.CONNECTING,
    ConnectionState.RECONNECTING,
    ConnectionState.DISCONNECTED,
)

_KICK_MARKERS = ("kicked", "removed")


class SessionPhase(str, Enum):
    IDLE = "idle"
    JOINING = "joining"
    ACTIVE = "active"
    ENDED = "ended"
    REMOVED = "removed"
    FAILED = "failed"
    CLOSED = "closed"


def combined_connection_state(*states: ConnectionState) -> ConnectionState:
    """The banner shows the worst of the independently tracked transport states."""
    return max(states, key=_BANNER_SEVERITY.index)


class LiveSession:
    """Coordinates one attempt at attending a live class.

    ``join`` performs the REST join, loads the chat backlog, starts the
    signaling channel and only then the media session. Every exit path
    (leave, session end, kick, fatal signaling error, failed join) runs the
    same teardown, after which late completions of in-flight work are no-ops.
    A manual rejoin uses a fresh ``LiveSession``.
    """

    def __init__(
        self,
        session_id: str,
        credential: AuthCredential,
        api: Any,
        *,
        signaling_transport: Any,
        rtc: Any,
        devices: Any,
        join_timeout: float = JOIN_TIMEOUT_SECONDS,
        initial_state: Optional[LocalParticipantState] = None,
        display_name: str = "You",
        chat_window: float = CHAT_MATCH_WINDOW_SECONDS,
        max_chat_history: int = MAX_CHAT_HISTORY,
        on_update: Optional[UpdateCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_remote_video: Optional[Callable[[Optional[AttachmentRequest]], Any]] = None,
        signaling_options: Optional[Dict[str, Any]] = None,
        media_options: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.session_id = session_id
        self._credential = credential
        self._api = api
        self._join_timeout = join_timeout
        self._display_name = display_name
        self._on_update = on_update
        self._on_error = on_error
        self._on_remote_video = on_remote_video
        self._initial_state = initial_state or LocalParticipantState()

        self._phase = SessionPhase.IDLE
        self._torn_down = False
        self._info: Optional[SessionInfo] = None
        self._last_error: Optional[LiveSessionError] = None
        self._notice: Optional[str] = None
        self._roster: Dict[str, Participant] = {}
        self._screen_sharing: Set[str] = set()
        self._attachment: Optional[AttachmentRequest] = None
        self._tasks: Set[asyncio.Task[Any]] = set()

        self._chat = ChatLog(credential.user_id, match_window=chat_window, max_entries=max_chat_history)
        self._media = MediaSession(
            rtc,
            devices,
            on_state_change=self._on_transport_state,
            on_remote_video=self._on_remote_video_change,
            token_provider=self._fresh_media_token,
            **(media_options or {}),
        )
        self._signaling = SignalingChannel(
            signaling_transport,
            session_id,
            credential.token,
            self._handle_action,
            on_state_change=self._on_transport_state,
            on_fatal=self._on_signaling_fatal,
            **(signaling_options or {}),
        )
        self._moderation = ModerationReconciler(
            self._media,
            self._signaling,
            initial=self._initial_state,
            on_change=self._on_local_change,
        )

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def is_torn_down(self) -> bool:
        return self._torn_down

    @property
    def chat(self) -> ChatLog:
        return self._chat

    @property
    def media(self) -> MediaSession:
        return self._media

    @property
    def signaling(self) -> SignalingChannel:
        return self._signaling

    @property
    def local_state(self) -> LocalParticipantState:
        return self._moderation.state

    @property
    def last_error(self) -> Optional[LiveSessionError]:
        return self._last_error

    @property
    def connection_state(self) -> ConnectionState:
        if self._phase is SessionPhase.IDLE:
            return ConnectionState.DISCONNECTED
        if self._phase is SessionPhase.JOINING:
            return combined_connection_state(ConnectionState.CONNECTING, self._signaling.state)
        if self._phase is SessionPhase.ACTIVE:
            return combined_connection_state(self._signaling.state, self._media.state)
        return ConnectionState.DISCONNECTED

    async def join(self) -> Optional[JoinResult]:
        if self._phase is not SessionPhase.IDLE:
            raise RuntimeError(f"Session already {self._phase.value}")
        self._phase = SessionPhase.JOINING
        await self._publish()

        try:
            result = await asyncio.wait_for(self._api.join(self.session_id), timeout=self._join_timeout)
        except asyncio.TimeoutError as exc:
            error = JoinTimeout(f"Join did not complete within {self._join_timeout:.0f}s")
            await self._finish(SessionPhase.FAILED, error)
            raise error from exc
        except LiveSessionError as exc:
            await self._finish(SessionPhase.FAILED, exc)
            raise
        except Exception as exc:
            error = JoinFailed(f"Join failed: {exc}")
            await self._finish(SessionPhase.FAILED, error)
            raise error from exc
        if self._torn_down:
            logger.debug("Join for %s completed after teardown; ignoring", self.session_id)
            return None
        if result.session.status is not SessionStatus.LIVE:
            error = SessionNotLive(f"Session {self.session_id} is {result.session.status.value}")
            await self._finish(SessionPhase.FAILED, error)
            raise error

        self._info = result.session
        self._chat.load_backlog(result.chat_backlog, unread_count=result.unread_count)
        self._roster = {participant.user_id: participant for participant in result.participants}

        # Signaling first so moderation commands received while media starts are buffered.
        await self._signaling.open(result.signaling_url)
        await self._media.set_muted(self._initial_state.muted)
        await self._media.set_video_enabled(self._initial_state.video_enabled)
        try:
            await self._media.start(result.credentials)
        except Exception as exc:
            if self._torn_down:
                logger.debug("Media start aborted by teardown: %s", exc)
                return None
            error = exc if isinstance(exc, LiveSessionError) else MediaInitFailed(str(exc))
            await self._finish(SessionPhase.FAILED, error)
            if error is exc:
                raise
            raise error from exc
        if self._torn_down:
            return None

        self._phase = SessionPhase.ACTIVE
        logger.info("Session %s active (%s)", self.session_id, result.session.title or "untitled")
        await self._publish()
        return result

    async def leave(self) -> None:
        await self._finish(SessionPhase.CLOSED, None)

    async def send_chat(self, text: str) -> Optional[ChatMessage]:
        text = text.strip()
        if not text or self._torn_down or self._moderation.is_removed:
            return None
        message = self._chat.add_optimistic(
            text,
            sender_name=self._display_name,
            sender_role=self._credential.role,
        )
        await self._publish()
        await self._signaling.send_chat(text)
        return message

    async def set_muted(self, muted: bool) -> bool:
        if self._torn_down:
            return False
        return await self._moderation.set_muted(muted)

    async def set_video_enabled(self, enabled: bool) -> bool:
        if self._torn_down:
            return False
        return await self._moderation.set_video_enabled(enabled)

    async def toggle_audio(self) -> bool:
        if self._torn_down:
            return False
        return await self._moderation.toggle_muted()

    async def toggle_video(self) -> bool:
        if self._torn_down:
            return False
        return await self._moderation.toggle_video()

    async def toggle_hand(self) -> bool:
        if self._torn_down:
            return False
        return await self._moderation.toggle_hand()

    async def switch_camera(self) -> None:
        if self._torn_down:
            return
        await self._moderation.switch_camera()

    async def open_chat(self) -> None:
        self._chat.open_panel()
        await self._publish()

    async def close_chat(self) -> None:
        self._chat.close_panel()
        await self._publish()

    async def attach_remote_video(self, target: Any) -> bool:
        """Resolve the pending remote video attachment against a render target."""
        request = self._attachment
        if request is None or self._torn_down:
            return False
        return await request.resolve(target)

    async def wait_idle(self) -> None:
        """Wait until every moderation command dispatched so far has been applied."""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "phase": self._phase.value,
            "connection": self.connection_state.value,
            "signaling": self._signaling.state.value,
            "media": self._media.state.value,
            "session": self._info.to_dict() if self._info else None,
            "local": self._moderation.state.to_dict(),
            "chat": [message.to_dict() for message in self._chat.messages],
            "unread": self._chat.unread_count,
            "participants": [participant.to_dict() for participant in self._roster.values()],
            "screen_sharing": sorted(self._screen_sharing),
            "remote_video": self._media.has_remote_video,
            "remote_users": [remote.to_dict() for remote in self._media.remote_participants.values()],
            "error": self._last_error.to_dict() if self._last_error else None,
            "notice": self._notice,
        }

    async def _finish(self, phase: SessionPhase, error: Optional[LiveSessionError]) -> None:
        if self._torn_down:
            return
        self._torn_down = True
        self._phase = phase
        self._last_error = error
        logger.info("Tearing down session %s (%s)", self.session_id, phase.value)

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        self._attachment = None
        try:
            await self._media.stop()
        except Exception:
            logger.exception("Error while stopping media session")
        try:
            await self._signaling.close()
        except Exception:
            logger.exception("Error while closing signaling channel")

        if error is not None:
            await invoke(self._on_error, error, label="session error callback")
        await self._publish()

    def _spawn(self, coro: Awaitable[Any], label: str) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def _done(finished: asyncio.Task[Any]) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                logger.error("%s failed", label, exc_info=exc)

        task.add_done_callback(_done)

    async def _handle_action(self, action: InboundAction) -> None:
        if self._torn_down:
            return
        self_id = self._credential.user_id

        if isinstance(action, ChatReceived):
            if self._chat.receive(action.message):
                await self._publish()
        elif isinstance(action, ParticipantJoined):
            self._roster[action.participant.user_id] = action.participant
            await self._publish()
        elif isinstance(action, ParticipantLeft):
            self._roster.pop(action.user_id, None)
            self._screen_sharing.discard(action.user_id)
            await self._publish()
        elif isinstance(action, SessionEndedNotice):
            if action.session_id != self.session_id:
                logger.warning("Ignoring session-ended for other session %s", action.session_id)
                return
            self._spawn(self._finish(SessionPhase.ENDED, SessionEnded()), "session end")
        elif isinstance(action, ForceMute):
            if action.user_id == self_id:
                self._spawn(self._moderation.set_muted(action.muted, origin=Origin.MODERATOR), "force-mute")
        elif isinstance(action, ForceVideo):
            if action.user_id == self_id:
                self._spawn(
                    self._moderation.set_video_enabled(action.video_enabled, origin=Origin.MODERATOR),
                    "force-video",
                )
        elif isinstance(action, ForceKick):
            if action.user_id == self_id:
                self._spawn(self._remove(), "force-kick")
        elif isinstance(action, HandRaiseAck):
            self._spawn(self._moderation.set_hand_raised(action.raised, origin=Origin.SERVER_ACK), "hand-raise ack")
        elif isinstance(action, ScreenShareStatus):
            if action.sharing:
                self._screen_sharing.add(action.user_id)
            else:
                self._screen_sharing.discard(action.user_id)
            await self._publish()
        elif isinstance(action, ServerError):
            logger.warning("Signaling server reported: %s", action.message)
            if any(marker in action.message.lower() for marker in _KICK_MARKERS):
                self._spawn(self._remove(), "removal notice")
                return
            self._notice = action.message
            await self._publish()

    async def _remove(self) -> None:
        logger.warning("Removed from session %s by the teacher", self.session_id)
        await self._moderation.remove()
        await self._finish(SessionPhase.REMOVED, None)

    async def _on_signaling_fatal(self, error: LiveSessionError) -> None:
        self._spawn(self._finish(SessionPhase.FAILED, error), "signaling failure")

    async def _fresh_media_token(self) -> str:
        try:
            result = await asyncio.wait_for(self._api.join(self.session_id), timeout=self._join_timeout)
        except AuthExpired as exc:
            self._spawn(self._finish(SessionPhase.FAILED, exc), "credential renewal")
            raise
        return result.credentials.token

    async def _on_transport_state(self, state: ConnectionState) -> None:
        await self._publish()

    async def _on_remote_video_change(self, request: Optional[AttachmentRequest]) -> None:
        self._attachment = request
        await invoke(self._on_remote_video, request, label="remote video callback")
        await self._publish()

    async def _on_local_change(self, state: LocalParticipantState) -> None:
        await self._publish()

    async def _publish(self) -> None:
        await invoke(self._on_update, self.snapshot(), label="session update callback")

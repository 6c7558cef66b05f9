"""Wrapper around the RTC client: joining the media room, local tracks and remote users.

The RTC client is duck-typed. It must provide ``on(event, callback)`` for the
``RtcEvent`` names, ``remote_users`` and the coroutines ``join``, ``leave``,
``publish``, ``unpublish``, ``subscribe`` and ``renew_token``. Local tracks come
from a device factory exposing ``create_microphone_track``,
``create_camera_track`` and ``list_cameras``.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from liveclass_shared.errors import MediaInitFailed, PermissionDenied
from liveclass_shared.protocol import (
    CameraDevice,
    CameraFacing,
    ConnectionState,
    MediaCredentials,
    MediaKind,
    RtcEvent,
)

from .callbacks import invoke

logger = logging.getLogger(__name__)

ATTACH_MAX_ATTEMPTS = 5
ATTACH_RETRY_DELAY_SECONDS = 0.2
MEDIA_REJOIN_DELAY_SECONDS = 2.0
MEDIA_REJOIN_MAX_ATTEMPTS = 3
UNMUTED_VOLUME = 100

StateCallback = Callable[[ConnectionState], Awaitable[None] | None]
TokenProvider = Callable[[], Awaitable[str]]

_RTC_STATES = {
    "CONNECTING": ConnectionState.CONNECTING,
    "CONNECTED": ConnectionState.CONNECTED,
    "RECONNECTING": ConnectionState.RECONNECTING,
    "DISCONNECTING": ConnectionState.DISCONNECTED,
    "DISCONNECTED": ConnectionState.DISCONNECTED,
}

_FACING_HINTS = {
    CameraFacing.FRONT: ("front", "user", "face"),
    CameraFacing.BACK: ("back", "rear", "environment"),
}


@dataclass(slots=True)
class RemoteParticipant:
    uid: int
    video_track: Any = None
    audio_track: Any = None

    @property
    def has_video(self) -> bool:
        return self.video_track is not None

    @property
    def has_audio(self) -> bool:
        return self.audio_track is not None

    @property
    def is_empty(self) -> bool:
        return self.video_track is None and self.audio_track is None

    def to_dict(self) -> Dict[str, Any]:
        return {"uid": self.uid, "has_video": self.has_video, "has_audio": self.has_audio}


@dataclass(slots=True)
class AttachmentRequest:
    """A remote video track waiting for a render target.

    The render surface may not exist yet when the track arrives, so attaching
    is retried a bounded number of times.
    """

    uid: int
    track: Any
    attached: bool = False

    async def resolve(
        self,
        target: Any,
        *,
        attempts: int = ATTACH_MAX_ATTEMPTS,
        delay: float = ATTACH_RETRY_DELAY_SECONDS,
    ) -> bool:
        for attempt in range(1, attempts + 1):
            try:
                result = self.track.play(target)
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.debug("Attach attempt %d for uid %s failed: %s", attempt, self.uid, exc)
                if attempt < attempts:
                    await asyncio.sleep(delay * attempt)
                continue
            self.attached = True
            return True
        logger.warning("Could not attach remote video for uid %s after %d attempts", self.uid, attempts)
        return False


def facing_from_label(label: str) -> Optional[CameraFacing]:
    lowered = label.lower()
    for facing, hints in _FACING_HINTS.items():
        if any(hint in lowered for hint in hints):
            return facing
    return None


def choose_camera(
    devices: Sequence[CameraDevice],
    current_id: Optional[str],
    facing: CameraFacing,
) -> Optional[CameraDevice]:
    """Pick the camera to switch to, or ``None`` when there is no alternative."""
    candidates = [device for device in devices if device.device_id and device.device_id != current_id]
    if not candidates:
        return None
    if len(devices) > 2:
        wanted = facing.opposite()
        for device in candidates:
            if facing_from_label(device.label) is wanted:
                return device
    return candidates[0]


def _map_device_error(exc: Exception, what: str) -> Exception:
    if isinstance(exc, PermissionError):
        return PermissionDenied(f"{what} access denied: {exc}")
    return MediaInitFailed(f"{what} unavailable: {exc}")


class MediaSession:
    """Owns the local tracks and the remote participant map of one media room."""

    def __init__(
        self,
        rtc: Any,
        devices: Any,
        *,
        on_state_change: Optional[StateCallback] = None,
        on_remote_video: Optional[Callable[[Optional[AttachmentRequest]], Any]] = None,
        token_provider: Optional[TokenProvider] = None,
        rejoin_delay: float = MEDIA_REJOIN_DELAY_SECONDS,
        rejoin_max_attempts: int = MEDIA_REJOIN_MAX_ATTEMPTS,
    ) -> None:
        self._rtc = rtc
        self._devices = devices
        self._on_state_change = on_state_change
        self._on_remote_video = on_remote_video
        self._token_provider = token_provider
        self._rejoin_delay = rejoin_delay
        self._rejoin_max_attempts = rejoin_max_attempts

        self._state = ConnectionState.DISCONNECTED
        self._credentials: Optional[MediaCredentials] = None
        self._audio_track: Any = None
        self._video_track: Any = None
        self._audio_published = False
        self._video_published = False
        self._muted = False
        self._video_enabled = True
        self._facing = CameraFacing.FRONT
        self._remotes: Dict[int, RemoteParticipant] = {}

        self._started = False
        self._joined = False
        self._ready = False
        self._stopped = False
        self._was_connected = False
        self._rejoin_task: Optional[asyncio.Task[None]] = None
        self._rejoin_attempts = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def muted(self) -> bool:
        return self._muted

    @property
    def video_enabled(self) -> bool:
        return self._video_enabled

    @property
    def camera_facing(self) -> CameraFacing:
        return self._facing

    @property
    def audio_track(self) -> Any:
        return self._audio_track

    @property
    def video_track(self) -> Any:
        return self._video_track

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    @property
    def remote_participants(self) -> Dict[int, RemoteParticipant]:
        return dict(self._remotes)

    @property
    def has_remote_video(self) -> bool:
        return any(remote.has_video for remote in self._remotes.values())

    async def start(self, credentials: MediaCredentials) -> None:
        """Join the media room, subscribe to existing users and publish local tracks.

        Mute and video preferences set before ``start`` are honoured. Calling
        ``stop`` while this is in flight releases whatever was created.
        """
        if self._stopped:
            logger.debug("Media session stopped before start; ignoring")
            return
        if self._started:
            raise RuntimeError("Media session already started")
        self._started = True
        self._credentials = credentials
        self._bind_handlers()
        await self._set_state(ConnectionState.CONNECTING)

        try:
            await self._rtc.join(credentials.app_id, credentials.channel_name, credentials.token, credentials.uid)
        except PermissionError as exc:
            raise PermissionDenied(f"Media room refused access: {exc}") from exc
        except Exception as exc:
            raise MediaInitFailed(f"Could not join media room: {exc}") from exc
        self._joined = True
        if self._stopped:
            await self._leave_room()
            return
        self._was_connected = True
        await self._set_state(ConnectionState.CONNECTED)
        logger.info("Joined media channel %s as uid %s", credentials.channel_name, credentials.uid)

        await self._subscribe_existing()
        if self._stopped:
            return
        await self._publish_initial_tracks()
        if self._stopped:
            return
        self._ready = True
        await self._apply_pending_preferences()

    async def set_muted(self, muted: bool) -> None:
        """Mute by unpublishing and silencing; unmute by publishing a fresh capture track."""
        if self._stopped:
            return
        if not self._ready:
            self._muted = muted
            return
        if muted:
            await self._mute_audio()
        else:
            await self._publish_fresh_audio()

    async def set_video_enabled(self, enabled: bool) -> None:
        """Camera tracks are toggled in place and stay published."""
        if self._stopped:
            return
        track = self._video_track
        if not self._ready or track is None:
            self._video_enabled = enabled
            return
        try:
            await track.set_enabled(enabled)
        except Exception as exc:
            raise _map_device_error(exc, "Camera") from exc
        self._video_enabled = enabled

    async def switch_camera(self) -> Optional[CameraFacing]:
        """Move the video track to another camera. Returns the new facing, or ``None``."""
        track = self._video_track
        if self._stopped or track is None:
            return None
        try:
            devices = await self._devices.list_cameras()
        except Exception as exc:
            raise _map_device_error(exc, "Camera") from exc
        target = choose_camera(devices, getattr(track, "device_id", None), self._facing)
        if target is None:
            logger.warning("No alternative camera available")
            return None
        try:
            await track.set_device(target.device_id)
        except Exception as exc:
            raise _map_device_error(exc, "Camera") from exc
        self._facing = facing_from_label(target.label) or self._facing.opposite()
        logger.info("Switched camera to %s (%s)", target.label or target.device_id, self._facing.value)
        return self._facing

    async def renew_credentials(self, token: str) -> None:
        """Swap the media token without touching published tracks."""
        if self._stopped or not self._joined or self._credentials is None:
            return
        await self._rtc.renew_token(token)
        self._credentials = replace(self._credentials, token=token)
        logger.info("Media token renewed")

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._ready = False
        if self._rejoin_task is not None:
            self._rejoin_task.cancel()
            self._rejoin_task = None

        local = [track for track in (self._audio_track, self._video_track) if track is not None]
        published = []
        if self._audio_published and self._audio_track is not None:
            published.append(self._audio_track)
        if self._video_published and self._video_track is not None:
            published.append(self._video_track)
        self._audio_track = None
        self._video_track = None
        self._audio_published = False
        self._video_published = False

        if self._joined and published:
            try:
                await self._rtc.unpublish(published)
            except Exception:
                logger.warning("Failed to unpublish local tracks during teardown", exc_info=True)
        for track in local:
            _close_track(track)

        had_remote_video = self.has_remote_video
        for remote in self._remotes.values():
            _stop_remote(remote.video_track)
            _stop_remote(remote.audio_track)
        self._remotes.clear()

        await self._leave_room()
        await self._set_state(ConnectionState.DISCONNECTED)
        if had_remote_video:
            await invoke(self._on_remote_video, None, label="remote video callback")

    async def _leave_room(self) -> None:
        if not self._joined:
            return
        self._joined = False
        try:
            await self._rtc.leave()
        except Exception:
            logger.exception("Failed to leave media channel")

    async def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.debug("Media connection %s -> %s", self._state.value, state.value)
        self._state = state
        await invoke(self._on_state_change, state, label="media state callback")

    def _bind_handlers(self) -> None:
        self._rtc.on(RtcEvent.USER_PUBLISHED.value, self._on_user_published)
        self._rtc.on(RtcEvent.USER_UNPUBLISHED.value, self._on_user_unpublished)
        self._rtc.on(RtcEvent.USER_LEFT.value, self._on_user_left)
        self._rtc.on(RtcEvent.CONNECTION_STATE_CHANGE.value, self._on_connection_state_change)
        self._rtc.on(RtcEvent.TOKEN_WILL_EXPIRE.value, self._on_token_will_expire)

    async def _create_audio(self) -> Any:
        try:
            return await self._devices.create_microphone_track()
        except Exception as exc:
            raise _map_device_error(exc, "Microphone") from exc

    async def _create_video(self) -> Any:
        try:
            return await self._devices.create_camera_track()
        except Exception as exc:
            raise _map_device_error(exc, "Camera") from exc

    async def _publish_initial_tracks(self) -> None:
        tracks: List[Any] = []
        if not self._muted:
            audio = await self._create_audio()
            if self._stopped:
                _close_track(audio)
                return
            self._audio_track = audio
            tracks.append(audio)

        video = await self._create_video()
        if self._stopped:
            _close_track(video)
            return
        self._video_track = video
        if not self._video_enabled:
            await video.set_enabled(False)
        tracks.append(video)

        try:
            await self._rtc.publish(tracks)
        except Exception as exc:
            raise MediaInitFailed(f"Could not publish local tracks: {exc}") from exc
        self._audio_published = self._audio_track is not None
        self._video_published = True

    async def _apply_pending_preferences(self) -> None:
        # Preferences may have changed while the initial tracks were being created.
        if self._muted and self._audio_track is not None:
            await self._mute_audio()
        elif not self._muted and self._audio_track is None:
            await self._publish_fresh_audio()
        video = self._video_track
        if video is not None and video.enabled != self._video_enabled:
            await video.set_enabled(self._video_enabled)

    async def _mute_audio(self) -> None:
        track = self._audio_track
        if track is not None:
            if self._audio_published:
                try:
                    await self._rtc.unpublish([track])
                except Exception:
                    logger.warning("Failed to unpublish microphone track", exc_info=True)
                self._audio_published = False
            try:
                await track.set_enabled(False)
                await track.set_volume(0)
            except Exception:
                logger.warning("Failed to silence microphone track", exc_info=True)
        self._muted = True

    async def _publish_fresh_audio(self) -> None:
        previous = self._audio_track
        self._audio_track = None
        if previous is not None:
            if self._audio_published:
                try:
                    await self._rtc.unpublish([previous])
                except Exception:
                    logger.warning("Failed to unpublish stale microphone track", exc_info=True)
                self._audio_published = False
            _close_track(previous)

        track = await self._create_audio()
        if self._stopped:
            _close_track(track)
            return
        try:
            await track.set_volume(UNMUTED_VOLUME)
        except Exception:
            logger.warning("Failed to reset microphone volume", exc_info=True)
        self._audio_track = track
        try:
            await self._rtc.publish([track])
        except Exception as exc:
            self._audio_track = None
            _close_track(track)
            raise MediaInitFailed(f"Could not publish microphone: {exc}") from exc
        self._audio_published = True
        self._muted = False

    async def _subscribe_existing(self) -> None:
        for user in list(getattr(self._rtc, "remote_users", [])):
            if getattr(user, "has_video", False):
                await self._on_user_published(user.uid, MediaKind.VIDEO.value)
            if getattr(user, "has_audio", False):
                await self._on_user_published(user.uid, MediaKind.AUDIO.value)

    async def _on_user_published(self, uid: int, media_type: str) -> None:
        if self._stopped:
            return
        try:
            kind = MediaKind(media_type)
        except ValueError:
            logger.warning("Ignoring unknown media type %r from uid %s", media_type, uid)
            return
        try:
            track = await self._rtc.subscribe(uid, kind.value)
        except Exception:
            logger.exception("Failed to subscribe to %s of uid %s", kind.value, uid)
            return
        if self._stopped:
            _stop_remote(track)
            return
        if track is None:
            logger.warning("Subscribed to %s of uid %s but no track handle is available", kind.value, uid)
            return

        remote = self._remotes.setdefault(uid, RemoteParticipant(uid))
        if kind is MediaKind.VIDEO:
            _stop_remote(remote.video_track)
            remote.video_track = track
            await invoke(self._on_remote_video, AttachmentRequest(uid, track), label="remote video callback")
        else:
            _stop_remote(remote.audio_track)
            remote.audio_track = track
            try:
                result = track.play()
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.warning("Failed to play remote audio of uid %s", uid, exc_info=True)

    async def _on_user_unpublished(self, uid: int, media_type: str) -> None:
        remote = self._remotes.get(uid)
        if remote is None:
            return
        if media_type == MediaKind.VIDEO.value:
            _stop_remote(remote.video_track)
            remote.video_track = None
        else:
            _stop_remote(remote.audio_track)
            remote.audio_track = None
        if remote.is_empty:
            self._remotes.pop(uid, None)
        if media_type == MediaKind.VIDEO.value and not self.has_remote_video:
            await invoke(self._on_remote_video, None, label="remote video callback")

    async def _on_user_left(self, uid: int, *_: Any) -> None:
        remote = self._remotes.pop(uid, None)
        if remote is None:
            return
        _stop_remote(remote.video_track)
        _stop_remote(remote.audio_track)
        if remote.has_video and not self.has_remote_video:
            await invoke(self._on_remote_video, None, label="remote video callback")

    async def _on_connection_state_change(self, current: str, previous: Optional[str] = None) -> None:
        if self._stopped:
            return
        state = _RTC_STATES.get(str(current).upper())
        if state is None:
            logger.warning("Unknown media connection state %r", current)
            return
        if state is ConnectionState.CONNECTING and self._was_connected:
            state = ConnectionState.RECONNECTING
        if state is ConnectionState.CONNECTED:
            self._was_connected = True
            self._rejoin_attempts = 0
        await self._set_state(state)
        if state is ConnectionState.DISCONNECTED and self._was_connected and self._joined:
            self._schedule_rejoin()

    async def _on_token_will_expire(self, *_: Any) -> None:
        if self._stopped or self._token_provider is None:
            return
        try:
            token = await self._token_provider()
            await self.renew_credentials(token)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Media token renewal failed")

    def _schedule_rejoin(self) -> None:
        if self._rejoin_task is not None and not self._rejoin_task.done():
            return
        if self._rejoin_attempts >= self._rejoin_max_attempts:
            logger.warning("Giving up on media rejoin after %d attempts", self._rejoin_attempts)
            return
        self._rejoin_attempts += 1
        self._rejoin_task = asyncio.create_task(self._rejoin(self._rejoin_attempts))

    async def _rejoin(self, attempt: int) -> None:
        try:
            await asyncio.sleep(self._rejoin_delay)
            if self._stopped or self._state is not ConnectionState.DISCONNECTED or self._credentials is None:
                return
            logger.info("Rejoining media channel (attempt %d)", attempt)
            token = self._credentials.token
            if self._token_provider is not None:
                token = await self._token_provider()
            if self._stopped:
                return
            credentials = replace(self._credentials, token=token)
            await self._set_state(ConnectionState.RECONNECTING)
            try:
                await self._rtc.leave()
            except Exception:
                logger.debug("Leave before rejoin failed", exc_info=True)
            await self._rtc.join(credentials.app_id, credentials.channel_name, credentials.token, credentials.uid)
            if self._stopped:
                await self._leave_room()
                return
            self._credentials = credentials
            await self._set_state(ConnectionState.CONNECTED)
            tracks = [self._video_track] if self._video_track is not None else []
            if not self._muted and self._audio_track is not None:
                tracks.insert(0, self._audio_track)
            if tracks:
                await self._rtc.publish(tracks)
            self._rejoin_task = None
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Media rejoin attempt %d failed", attempt)
            self._rejoin_task = None
            if not self._stopped:
                await self._set_state(ConnectionState.DISCONNECTED)
                self._schedule_rejoin()


def _close_track(track: Any) -> None:
    for method in ("stop", "close"):
        try:
            getattr(track, method)()
        except Exception:
            logger.warning("Failed to %s local track", method, exc_info=True)


def _stop_remote(track: Any) -> None:
    if track is None:
        return
    try:
        track.stop()
    except Exception:
        logger.debug("Failed to stop remote track", exc_info=True)

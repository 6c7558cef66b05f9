"""UDP relay media transport implementing the RTC client contract used by ``MediaSession``.

Media frames travel as ``MediaFrameHeader``-prefixed datagrams whose
``stream_id`` is the publisher's uid. Control traffic is JSON:

* client -> relay: ``join``, ``leave``, ``renew``, ``unpublish``, ``ping``
* relay -> client: ``joined``, ``rejected``, ``user-left``, ``user-unpublished``,
  ``token-will-expire``, ``pong``

A remote user is announced as publishing on the first frame of a kind and
unpublished when the relay says so or the kind goes idle.
"""
from __future__ import annotations

import asyncio
import json
import logging
import queue
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import numpy as np

from liveclass_shared.protocol import MEDIA_HEADER_STRUCT, MediaFrameHeader, MediaKind, PayloadType, RtcEvent

from .devices import CHANNELS, FRAME_SAMPLES, SAMPLE_RATE

logger = logging.getLogger(__name__)

RELAY_JOIN_TIMEOUT_SECONDS = 5.0
REMOTE_IDLE_SECONDS = 3.0
RELAY_SILENCE_SECONDS = 10.0
KEEPALIVE_INTERVAL_SECONDS = 2.0

_PAYLOAD_KINDS = {
    PayloadType.AUDIO.value: MediaKind.AUDIO,
    PayloadType.VIDEO.value: MediaKind.VIDEO,
}
_KIND_PAYLOADS = {kind: payload for payload, kind in _PAYLOAD_KINDS.items()}


class _RelayProtocol(asyncio.DatagramProtocol):
    def __init__(self, client: "UdpRtcClient") -> None:
        self._client = client
        self._transport: Optional[asyncio.BaseTransport] = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:  # pragma: no cover - UDP callback
        self._transport = transport

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:  # pragma: no cover - UDP callback
        self._client._on_datagram(data)

    def error_received(self, exc: Exception) -> None:  # pragma: no cover - UDP callback
        logger.warning("Media relay socket error: %s", exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:  # pragma: no cover - UDP callback
        self._client._on_connection_lost(self._transport, exc)


class RemoteVideoTrack:
    """JPEG frames from one remote publisher, forwarded to a render target once attached."""

    def __init__(self, uid: int) -> None:
        self.uid = uid
        self._target: Optional[Callable[[bytes], Any]] = None

    @property
    def attached(self) -> bool:
        return self._target is not None

    def play(self, target: Optional[Callable[[bytes], Any]] = None) -> None:
        if target is None or not callable(target):
            raise ValueError("Render target is not ready")
        self._target = target

    def push(self, payload: bytes) -> None:
        target = self._target
        if target is None:
            return
        result = target(payload)
        if asyncio.iscoroutine(result):
            asyncio.get_running_loop().create_task(result)

    def stop(self) -> None:
        self._target = None


class RemoteAudioTrack:
    """Plays a remote publisher's PCM frames on the default output device."""

    def __init__(self, uid: int) -> None:
        self.uid = uid
        self._queue: "queue.Queue[bytes]" = queue.Queue(maxsize=32)
        self._stream = None

    def play(self, target: Any = None) -> None:  # pragma: no cover - hardware dependent
        import sounddevice as sd

        if self._stream is not None:
            return
        self._stream = sd.OutputStream(
            samplerate=SAMPLE_RATE,
            channels=CHANNELS,
            dtype="float32",
            blocksize=FRAME_SAMPLES,
            callback=self._playback_callback,
        )
        self._stream.start()

    def push(self, payload: bytes) -> None:
        try:
            self._queue.put_nowait(payload)
        except queue.Full:
            # Drop audio if queue is full
            pass

    def stop(self) -> None:
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None

    def _playback_callback(self, outdata, frames, time_info, status) -> None:  # pragma: no cover - audio callback
        if status:
            logger.warning("Audio output status: %s", status)
        try:
            chunk = self._queue.get_nowait()
        except queue.Empty:
            outdata.fill(0)
            return
        samples = np.frombuffer(chunk, dtype=np.float32)
        required = frames * CHANNELS
        if samples.size < required:
            padded = np.zeros(required, dtype=np.float32)
            padded[: samples.size] = samples
        else:
            padded = samples[:required]
        outdata[:] = padded.reshape(frames, CHANNELS)


@dataclass(slots=True)
class RemoteUserInfo:
    uid: int
    has_audio: bool = False
    has_video: bool = False
    last_audio: float = 0.0
    last_video: float = 0.0
    audio_track: Optional[RemoteAudioTrack] = None
    video_track: Optional[RemoteVideoTrack] = None


class UdpRtcClient:
    def __init__(
        self,
        host: str,
        port: int,
        *,
        join_timeout: float = RELAY_JOIN_TIMEOUT_SECONDS,
        idle_timeout: float = REMOTE_IDLE_SECONDS,
        silence_timeout: float = RELAY_SILENCE_SECONDS,
        keepalive_interval: float = KEEPALIVE_INTERVAL_SECONDS,
    ) -> None:
        self._host = host
        self._port = port
        self._join_timeout = join_timeout
        self._idle_timeout = idle_timeout
        self._silence_timeout = silence_timeout
        self._keepalive_interval = keepalive_interval
        self._handlers: Dict[str, List[Callable[..., Any]]] = defaultdict(list)
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._state = "DISCONNECTED"
        self._uid: Optional[int] = None
        self._channel: Optional[str] = None
        self._join_future: Optional[asyncio.Future[None]] = None
        self._remote: Dict[int, RemoteUserInfo] = {}
        self._sequence = 0
        self._last_heard = 0.0
        self._watchdog_task: Optional[asyncio.Task[None]] = None
        self._callback_tasks: Set[asyncio.Task[Any]] = set()
        self._leaving = False

    @property
    def connection_state(self) -> str:
        return self._state

    @property
    def remote_users(self) -> List[RemoteUserInfo]:
        return list(self._remote.values())

    def on(self, event: str, callback: Callable[..., Any]) -> None:
        self._handlers[event].append(callback)

    async def join(self, app_id: str, channel_name: str, token: str, uid: int) -> None:
        loop = asyncio.get_running_loop()
        self._leaving = False
        self._set_state("CONNECTING")
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _RelayProtocol(self), remote_addr=(self._host, self._port)
        )
        self._transport = transport  # type: ignore[assignment]
        self._join_future = loop.create_future()
        self._send_control(
            {"action": "join", "appId": app_id, "channel": channel_name, "token": token, "uid": uid}
        )
        try:
            await asyncio.wait_for(self._join_future, timeout=self._join_timeout)
        except asyncio.TimeoutError as exc:
            self._close_transport()
            self._set_state("DISCONNECTED")
            raise ConnectionError(f"Media relay {self._host}:{self._port} did not answer") from exc
        except Exception:
            self._close_transport()
            self._set_state("DISCONNECTED")
            raise
        finally:
            self._join_future = None
        self._uid = uid
        self._channel = channel_name
        self._last_heard = time.monotonic()
        self._set_state("CONNECTED")
        self._watchdog_task = asyncio.create_task(self._watchdog())
        logger.info("Joined relay channel %s as uid %s", channel_name, uid)

    async def leave(self) -> None:
        self._leaving = True
        if self._transport is not None:
            self._send_control({"action": "leave"})
        if self._watchdog_task is not None:
            self._watchdog_task.cancel()
            self._watchdog_task = None
        for user in self._remote.values():
            if user.video_track is not None:
                user.video_track.stop()
            if user.audio_track is not None:
                user.audio_track.stop()
        self._remote.clear()
        self._close_transport()
        self._set_state("DISCONNECTED")

    async def publish(self, tracks: Iterable[Any]) -> None:
        if self._transport is None:
            raise ConnectionError("Not joined to a media relay")
        for track in tracks:
            track.attach_sink(self._sink_for(track.kind))

    async def unpublish(self, tracks: Iterable[Any]) -> None:
        kinds = []
        for track in tracks:
            track.attach_sink(None)
            kinds.append(MediaKind(track.kind).value)
        if kinds and self._transport is not None:
            self._send_control({"action": "unpublish", "kinds": kinds})

    async def subscribe(self, uid: int, media_type: str) -> Optional[Any]:
        user = self._remote.get(uid)
        if user is None:
            return None
        if media_type == MediaKind.VIDEO.value:
            if user.video_track is None:
                user.video_track = RemoteVideoTrack(uid)
            return user.video_track
        if user.audio_track is None:
            user.audio_track = RemoteAudioTrack(uid)
        return user.audio_track

    async def renew_token(self, token: str) -> None:
        if self._transport is None:
            raise ConnectionError("Not joined to a media relay")
        self._send_control({"action": "renew", "token": token})

    def _sink_for(self, kind: MediaKind) -> Callable[[bytes], None]:
        payload_type = _KIND_PAYLOADS[MediaKind(kind)]

        def _send(payload: bytes) -> None:
            self._send_media(payload_type, payload)

        return _send

    def _send_media(self, payload_type: int, payload: bytes) -> None:
        if self._transport is None or self._uid is None:
            return
        header = MediaFrameHeader(
            stream_id=self._uid,
            sequence_number=self._next_sequence(),
            timestamp_ms=time.time() * 1000,
            payload_type=payload_type,
        ).pack()
        self._transport.sendto(header + payload)

    def _send_control(self, message: Dict[str, Any]) -> None:
        if self._transport is None:
            return
        self._transport.sendto(json.dumps(message).encode("utf-8"))

    def _on_datagram(self, data: bytes) -> None:
        self._last_heard = time.monotonic()
        if self._state == "DISCONNECTED" and self._uid is not None and not self._leaving:
            self._set_state("CONNECTED")
        if data[:1] == b"{":
            try:
                message = json.loads(data.decode("utf-8"))
            except ValueError:
                message = None
            if isinstance(message, dict):
                self._on_control(message)
                return
        self._on_media(data)

    def _on_control(self, message: Dict[str, Any]) -> None:
        event = message.get("event")
        if event == "joined":
            if self._join_future is not None and not self._join_future.done():
                self._join_future.set_result(None)
        elif event == "rejected":
            reason = str(message.get("reason") or "rejected by relay")
            if self._join_future is not None and not self._join_future.done():
                self._join_future.set_exception(ConnectionError(reason))
            else:
                logger.warning("Media relay rejected session: %s", reason)
                self._set_state("DISCONNECTED")
        elif event == "user-left":
            uid = message.get("uid")
            user = self._remote.pop(uid, None) if isinstance(uid, int) else None
            if user is not None:
                self._emit(RtcEvent.USER_LEFT.value, user.uid, "quit")
        elif event == "user-unpublished":
            uid = message.get("uid")
            kind = message.get("kind")
            if isinstance(uid, int) and kind in (MediaKind.AUDIO.value, MediaKind.VIDEO.value):
                self._mark_unpublished(uid, MediaKind(kind))
        elif event == "token-will-expire":
            self._emit(RtcEvent.TOKEN_WILL_EXPIRE.value)
        elif event != "pong":
            logger.debug("Ignoring relay control message %r", event)

    def _on_media(self, data: bytes) -> None:
        if len(data) < MEDIA_HEADER_STRUCT.size:
            return
        header = MediaFrameHeader.unpack(data[: MEDIA_HEADER_STRUCT.size])
        kind = _PAYLOAD_KINDS.get(header.payload_type)
        if kind is None or header.stream_id == self._uid:
            return
        payload = data[MEDIA_HEADER_STRUCT.size :]
        user = self._remote.get(header.stream_id)
        if user is None:
            user = RemoteUserInfo(uid=header.stream_id)
            self._remote[header.stream_id] = user
        now = time.monotonic()
        if kind is MediaKind.VIDEO:
            user.last_video = now
            if not user.has_video:
                user.has_video = True
                self._emit(RtcEvent.USER_PUBLISHED.value, user.uid, kind.value)
            if user.video_track is not None:
                user.video_track.push(payload)
        else:
            user.last_audio = now
            if not user.has_audio:
                user.has_audio = True
                self._emit(RtcEvent.USER_PUBLISHED.value, user.uid, kind.value)
            if user.audio_track is not None:
                user.audio_track.push(payload)

    def _mark_unpublished(self, uid: int, kind: MediaKind) -> None:
        user = self._remote.get(uid)
        if user is None:
            return
        if kind is MediaKind.VIDEO and user.has_video:
            user.has_video = False
            user.video_track = None
        elif kind is MediaKind.AUDIO and user.has_audio:
            user.has_audio = False
            user.audio_track = None
        else:
            return
        self._emit(RtcEvent.USER_UNPUBLISHED.value, uid, kind.value)

    def _on_connection_lost(self, transport: Optional[asyncio.BaseTransport], exc: Optional[Exception]) -> None:
        if transport is not self._transport:
            return
        self._transport = None
        if not self._leaving:
            logger.warning("Media relay socket closed: %s", exc)
            self._set_state("DISCONNECTED")

    async def _watchdog(self) -> None:
        while True:
            await asyncio.sleep(self._keepalive_interval)
            self._send_control({"action": "ping"})
            now = time.monotonic()
            for user in list(self._remote.values()):
                if user.has_video and now - user.last_video > self._idle_timeout:
                    self._mark_unpublished(user.uid, MediaKind.VIDEO)
                if user.has_audio and now - user.last_audio > self._idle_timeout:
                    self._mark_unpublished(user.uid, MediaKind.AUDIO)
            if self._state == "CONNECTED" and now - self._last_heard > self._silence_timeout:
                logger.warning("Media relay silent for %.0fs", now - self._last_heard)
                self._set_state("DISCONNECTED")

    def _set_state(self, state: str) -> None:
        previous = self._state
        if state == previous:
            return
        self._state = state
        self._emit(RtcEvent.CONNECTION_STATE_CHANGE.value, state, previous)

    def _emit(self, event: str, *args: Any) -> None:
        for callback in list(self._handlers.get(event, ())):
            try:
                result = callback(*args)
            except Exception:
                logger.exception("RTC %s handler failed", event)
                continue
            if asyncio.iscoroutine(result):
                task = asyncio.get_running_loop().create_task(result)
                self._callback_tasks.add(task)
                task.add_done_callback(self._callback_tasks.discard)

    def _close_transport(self) -> None:
        if self._transport is not None:
            transport = self._transport
            self._transport = None
            transport.close()

    def _next_sequence(self) -> int:
        self._sequence = (self._sequence + 1) % (2**31)
        return self._sequence

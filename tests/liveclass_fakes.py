"""Hand-written doubles for the transports and devices used by the session tests."""
from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

from liveclass_shared.protocol import AuthCredential, CameraDevice, JoinResult, MediaKind

SELF_ID = "u1"
TEACHER_ID = "t1"
SESSION_ID = "abc123"


def make_credential() -> AuthCredential:
    return AuthCredential(user_id=SELF_ID, token="auth-token")


def join_payload(
    status: str = "live",
    *,
    backlog: Optional[list] = None,
    token: str = "media-token",
    signaling: Optional[str] = None,
) -> Dict[str, Any]:
    payload = {
        "mediaCredentials": {"appId": "app", "token": token, "channelName": "class-abc123", "uid": 42},
        "session": {"id": SESSION_ID, "status": status, "title": "Physics", "teacherId": TEACHER_ID},
        "chatBacklog": backlog or [],
    }
    if signaling is not None:
        payload["signalingEndpoint"] = signaling
    return payload


def join_result(
    status: str = "live",
    *,
    backlog: Optional[list] = None,
    token: str = "media-token",
    signaling: Optional[str] = None,
) -> JoinResult:
    return JoinResult.from_dict(join_payload(status, backlog=backlog, token=token, signaling=signaling))


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeTrack:
    def __init__(self, kind: MediaKind, track_id: str, device_id: Optional[str] = None) -> None:
        self.kind = kind
        self.track_id = track_id
        self.device_id = device_id
        self.enabled = True
        self.volume = 100
        self.sink = None
        self.stopped = False
        self.closed = False

    async def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled

    async def set_volume(self, volume: int) -> None:
        self.volume = volume

    async def set_device(self, device_id: str) -> None:
        self.device_id = device_id

    def attach_sink(self, sink) -> None:
        self.sink = sink

    def stop(self) -> None:
        self.stopped = True

    def close(self) -> None:
        self.closed = True


class FakeDevices:
    def __init__(self, cameras: Optional[List[CameraDevice]] = None) -> None:
        self.cameras = cameras if cameras is not None else [
            CameraDevice("0", "Front Camera"),
            CameraDevice("1", "Back Camera"),
        ]
        self.microphones: List[FakeTrack] = []
        self.camera_tracks: List[FakeTrack] = []
        self.mic_error: Optional[Exception] = None
        self.camera_error: Optional[Exception] = None

    async def create_microphone_track(self) -> FakeTrack:
        if self.mic_error is not None:
            raise self.mic_error
        track = FakeTrack(MediaKind.AUDIO, f"mic-{len(self.microphones) + 1}")
        self.microphones.append(track)
        return track

    async def create_camera_track(self, device_id: Optional[str] = None) -> FakeTrack:
        if self.camera_error is not None:
            raise self.camera_error
        track = FakeTrack(MediaKind.VIDEO, f"cam-{len(self.camera_tracks) + 1}", device_id or "0")
        self.camera_tracks.append(track)
        return track

    async def list_cameras(self) -> List[CameraDevice]:
        return list(self.cameras)

    @property
    def open_tracks(self) -> List[FakeTrack]:
        return [track for track in self.microphones + self.camera_tracks if not track.closed]


class FakeRemoteTrack:
    def __init__(self, fail_times: int = 0) -> None:
        self.fail_times = fail_times
        self.play_calls = 0
        self.target = None
        self.stopped = False

    def play(self, target: Any = None) -> None:
        self.play_calls += 1
        if self.play_calls <= self.fail_times:
            raise RuntimeError("render target missing")
        self.target = target

    def stop(self) -> None:
        self.stopped = True


class FakeRtc:
    def __init__(self) -> None:
        self.handlers: Dict[str, list] = defaultdict(list)
        self.join_calls: List[Tuple[str, str, str, int]] = []
        self.join_gate: Optional[asyncio.Event] = None
        self.join_error: Optional[Exception] = None
        self.join_hook = None
        self.joined = False
        self.left = 0
        self.published: List[Any] = []
        self.publish_calls: List[List[Any]] = []
        self.unpublish_calls: List[List[Any]] = []
        self.renewed: List[str] = []
        self.remote_users: List[Any] = []
        self.remote_tracks: Dict[Tuple[int, str], Any] = {}

    def on(self, event: str, callback) -> None:
        self.handlers[event].append(callback)

    async def fire(self, event: str, *args: Any) -> None:
        for callback in list(self.handlers[event]):
            await callback(*args)

    async def join(self, app_id: str, channel_name: str, token: str, uid: int) -> None:
        self.join_calls.append((app_id, channel_name, token, uid))
        if self.join_hook is not None:
            self.join_hook()
        if self.join_gate is not None:
            await self.join_gate.wait()
        if self.join_error is not None:
            raise self.join_error
        self.joined = True

    async def leave(self) -> None:
        self.left += 1
        self.joined = False
        self.published = []

    async def publish(self, tracks) -> None:
        tracks = list(tracks)
        self.publish_calls.append(tracks)
        self.published.extend(tracks)

    async def unpublish(self, tracks) -> None:
        tracks = list(tracks)
        self.unpublish_calls.append(tracks)
        self.published = [track for track in self.published if track not in tracks]

    async def subscribe(self, uid: int, media_type: str) -> Any:
        return self.remote_tracks.get((uid, media_type))

    async def renew_token(self, token: str) -> None:
        self.renewed.append(token)


class FakeSignalingTransport:
    def __init__(self, *, failures: int = 0, error: Optional[Exception] = None) -> None:
        self.failures = failures
        self.error = error
        self.connected = False
        self.connect_calls = 0
        self.tokens: List[str] = []
        self.urls: List[Optional[str]] = []
        self.emitted: List[Tuple[str, Dict[str, Any]]] = []
        self.disconnects = 0
        self.on_event = None
        self.on_disconnect = None

    def bind(self, on_event, on_disconnect) -> None:
        self.on_event = on_event
        self.on_disconnect = on_disconnect

    async def connect(self, token: str, url: Optional[str] = None) -> None:
        self.connect_calls += 1
        self.tokens.append(token)
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("connection refused")
        self.connected = True

    async def emit(self, event: str, payload: Dict[str, Any]) -> None:
        if not self.connected:
            raise ConnectionError("not connected")
        self.emitted.append((event, payload))

    async def disconnect(self) -> None:
        self.disconnects += 1
        self.connected = False

    def deliver(self, event: str, data: Any) -> None:
        self.on_event(event, data)

    async def drop(self, reason: str = "transport close") -> None:
        self.connected = False
        await self.on_disconnect(reason)

    def events(self, name: str) -> List[Dict[str, Any]]:
        return [payload for event, payload in self.emitted if event == name]


class FakeApi:
    def __init__(self, result: Optional[JoinResult] = None, *, error: Optional[Exception] = None, delay: float = 0.0) -> None:
        self.result = result or join_result()
        self.error = error
        self.delay = delay
        self.calls = 0
        self.closed = False

    async def join(self, session_id: str) -> JoinResult:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result

    async def close(self) -> None:
        self.closed = True

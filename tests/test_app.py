import base64
from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketState

from liveclass.app import ClientApp, WebSocketHub
from liveclass.session import LiveSession
from liveclass_shared.errors import SessionNotLive

from liveclass_fakes import (
    SESSION_ID,
    FakeApi,
    FakeDevices,
    FakeRemoteTrack,
    FakeRtc,
    FakeSignalingTransport,
    join_result,
    make_credential,
    settle,
)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class RecordingHub:
    def __init__(self) -> None:
        self.messages: list = []

    async def broadcast(self, message) -> None:
        self.messages.append(message)

    def of_type(self, kind: str) -> list:
        return [message["payload"] for message in self.messages if message["type"] == kind]


class Setup:
    def __init__(self, api=None) -> None:
        self.api = api or FakeApi()
        self.transport = FakeSignalingTransport()
        self.rtc = FakeRtc()
        self.devices = FakeDevices()
        self.client_app = ClientApp(SESSION_ID, self.build, auto_join=False)
        self.hub = RecordingHub()
        self.client_app._ws_hub = self.hub

    def build(self, **callbacks) -> LiveSession:
        return LiveSession(
            SESSION_ID,
            make_credential(),
            self.api,
            signaling_transport=self.transport,
            rtc=self.rtc,
            devices=self.devices,
            signaling_options={"base_delay": 0},
            **callbacks,
        )


@pytest.mark.anyio
async def test_join_message_starts_session_and_broadcasts_state() -> None:
    setup = Setup()

    await setup.client_app._handle_ui_message({"type": "join"})
    await settle()

    statuses = [payload["state"] for payload in setup.hub.of_type("session_status")]
    assert statuses == ["joining", "active"]
    assert setup.hub.of_type("state_snapshot")[-1]["phase"] == "active"
    assert setup.client_app.session.phase.value == "active"

    await setup.client_app._handle_ui_message({"type": "rejoin"})
    assert setup.api.calls == 1


@pytest.mark.anyio
async def test_ui_controls_reach_the_session() -> None:
    setup = Setup()
    await setup.client_app._handle_ui_message({"type": "join"})
    await settle()

    await setup.client_app._handle_ui_message({"type": "toggle_audio"})
    await setup.client_app._handle_ui_message({"type": "toggle_video", "payload": {"enabled": False}})
    await setup.client_app._handle_ui_message({"type": "toggle_hand"})
    await setup.client_app._handle_ui_message({"type": "chat_send", "payload": {"message": "  hi there "}})

    local = setup.client_app.session.local_state
    assert local.muted is True
    assert local.video_enabled is False
    assert local.hand_raised is True
    assert setup.transport.events("send-chat") == [{"sessionId": SESSION_ID, "text": "hi there"}]
    assert setup.transport.events("raise-hand") == [{"sessionId": SESSION_ID, "raised": True}]


@pytest.mark.anyio
async def test_failed_join_broadcasts_session_error() -> None:
    setup = Setup(api=FakeApi(join_result("scheduled")))

    await setup.client_app._handle_ui_message({"type": "join"})

    errors = setup.hub.of_type("session_error")
    assert errors[0]["kind"] == "SessionNotLive"
    assert setup.hub.of_type("session_status")[-1]["state"] == "failed"


@pytest.mark.anyio
async def test_rest_join_maps_errors_to_http_status() -> None:
    setup = Setup(api=FakeApi(join_result("scheduled")))
    transport = httpx.ASGITransport(app=setup.client_app.app)

    async with httpx.AsyncClient(transport=transport, base_url="http://ui") as client:
        idle = await client.get("/api/state")
        rejected = await client.post("/api/session/join")

    assert idle.json()["phase"] == "idle"
    assert rejected.status_code == 409
    assert rejected.json()["detail"]["kind"] == "SessionNotLive"


@pytest.mark.anyio
async def test_remote_frames_are_relayed_to_the_ui() -> None:
    setup = Setup()
    await setup.client_app._handle_ui_message({"type": "join"})
    await settle()
    remote = FakeRemoteTrack()
    setup.rtc.remote_tracks[(7, "video")] = remote
    await setup.rtc.fire("user-published", 7, "video")

    await setup.client_app._handle_ui_message({"type": "render_target_ready"})
    await remote.target(b"\xff\xd8jpeg")

    frames = setup.hub.of_type("video_frame")
    assert frames == [{"uid": 7, "frame": base64.b64encode(b"\xff\xd8jpeg").decode("ascii")}]


@pytest.mark.anyio
async def test_render_target_ready_before_publish_still_attaches() -> None:
    setup = Setup()
    await setup.client_app._handle_ui_message({"type": "render_target_ready"})
    await setup.client_app._handle_ui_message({"type": "join"})
    await settle()

    remote = FakeRemoteTrack()
    setup.rtc.remote_tracks[(7, "video")] = remote
    await setup.rtc.fire("user-published", 7, "video")

    assert remote.target is not None
    await remote.target(b"\xff\xd8late")
    assert setup.hub.of_type("video_frame")[-1]["uid"] == 7

    await setup.rtc.fire("user-unpublished", 7, "video")
    republished = FakeRemoteTrack()
    setup.rtc.remote_tracks[(7, "video")] = republished
    await setup.rtc.fire("user-published", 7, "video")
    assert republished.target is not None

    await setup.client_app._handle_ui_message({"type": "render_target_closed"})
    await setup.rtc.fire("user-unpublished", 7, "video")
    hidden = FakeRemoteTrack()
    setup.rtc.remote_tracks[(7, "video")] = hidden
    await setup.rtc.fire("user-published", 7, "video")
    assert hidden.target is None


@pytest.mark.anyio
async def test_leave_message_tears_session_down() -> None:
    setup = Setup()
    await setup.client_app._handle_ui_message({"type": "join"})
    await settle()

    await setup.client_app._handle_ui_message({"type": "leave_session"})
    await setup.client_app._handle_ui_message({"type": "toggle_audio"})

    assert setup.client_app.session.phase.value == "closed"
    assert setup.transport.events("leave-room") == [{"sessionId": SESSION_ID}]
    assert [payload["state"] for payload in setup.hub.of_type("session_status")][-2:] == ["disconnecting", "closed"]


def test_websocket_sends_status_and_snapshot_on_connect() -> None:
    client_app = ClientApp(SESSION_ID, lambda **callbacks: None, auto_join=False)

    with TestClient(client_app.app) as client:
        with client.websocket_connect("/ws/session") as websocket:
            status = websocket.receive_json()
            snapshot = websocket.receive_json()

    assert status == {"type": "session_status", "payload": {"state": "idle", "session_id": SESSION_ID}}
    assert snapshot["type"] == "state_snapshot"
    assert snapshot["payload"]["phase"] == "idle"


@pytest.mark.anyio
async def test_hub_broadcast_survives_a_failing_socket() -> None:
    hub = WebSocketHub()
    broken = AsyncMock()
    broken.application_state = WebSocketState.CONNECTED
    broken.send_json.side_effect = RuntimeError("socket gone")
    healthy = AsyncMock()
    healthy.application_state = WebSocketState.CONNECTED
    closed = AsyncMock()
    closed.application_state = WebSocketState.DISCONNECTED
    for ws in (broken, healthy, closed):
        await hub.connect(ws)

    await hub.broadcast({"type": "state_snapshot", "payload": {}})

    healthy.send_json.assert_awaited_once_with({"type": "state_snapshot", "payload": {}})
    closed.send_json.assert_not_awaited()

    await hub.disconnect(healthy)
    await hub.broadcast({"type": "session_status", "payload": {"state": "closed"}})
    assert healthy.send_json.await_count == 1


@pytest.mark.anyio
async def test_auto_join_failure_is_logged_not_raised(monkeypatch) -> None:
    setup = Setup()
    start_mock = AsyncMock(side_effect=SessionNotLive())
    monkeypatch.setattr(setup.client_app, "_start_session", start_mock)

    await setup.client_app._auto_join_worker()

    assert start_mock.await_count == 1

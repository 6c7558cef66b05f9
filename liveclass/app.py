from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from liveclass_shared.errors import AuthExpired, LiveSessionError, PermissionDenied, SessionEnded, SessionNotLive

from .media_session import AttachmentRequest
from .session import LiveSession

logger = logging.getLogger(__name__)

SessionFactory = Callable[..., LiveSession]

_HTTP_STATUS = {
    AuthExpired: 401,
    PermissionDenied: 403,
    SessionNotLive: 409,
    SessionEnded: 410,
}


def _http_status(error: LiveSessionError) -> int:
    for kind, status in _HTTP_STATUS.items():
        if isinstance(error, kind):
            return status
    return 503 if error.retryable else 500


class WebSocketHub:
    """Tracks active UI WebSocket connections."""

    def __init__(self) -> None:
        self._connections: List[WebSocket] = []
        self._lock = asyncio.Lock()

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        async with self._lock:
            self._connections.append(ws)

    async def disconnect(self, ws: WebSocket) -> None:
        async with self._lock:
            if ws in self._connections:
                self._connections.remove(ws)

    async def broadcast(self, message: Dict[str, object]) -> None:
        async with self._lock:
            for ws in list(self._connections):
                try:
                    if ws.application_state == WebSocketState.CONNECTED:
                        await ws.send_json(message)
                except Exception:
                    logger.exception("Failed to send WebSocket message")


class ClientApp:
    """Local web UI surface: relays UI commands into the live session and pushes its state back."""

    def __init__(self, session_id: str, session_factory: SessionFactory, *, auto_join: bool = True) -> None:
        self._session_id = session_id
        self._session_factory = session_factory
        self._auto_join = auto_join
        self._session: Optional[LiveSession] = None
        self._join_lock = asyncio.Lock()
        self._remote_uid: Optional[int] = None
        self._render_target_ready = False
        self._ws_hub = WebSocketHub()
        self._uvicorn_server = None
        self._app = FastAPI()
        self._configure_routes()

    @property
    def app(self) -> FastAPI:
        return self._app

    @property
    def session(self) -> Optional[LiveSession]:
        return self._session

    def _configure_routes(self) -> None:
        @self._app.get("/api/state")
        async def state() -> Dict[str, object]:
            return self._build_snapshot()

        @self._app.post("/api/session/join")
        async def join() -> Dict[str, object]:
            try:
                await self._start_session()
            except LiveSessionError as exc:
                raise HTTPException(status_code=_http_status(exc), detail=exc.to_dict()) from exc
            return self._build_snapshot()

        @self._app.post("/api/session/leave")
        async def leave() -> Dict[str, object]:
            await self._leave_session()
            return self._build_snapshot()

        @self._app.websocket("/ws/session")
        async def ws_session(websocket: WebSocket) -> None:
            await self._ws_hub.connect(websocket)
            try:
                await websocket.send_json(
                    {
                        "type": "session_status",
                        "payload": {"state": self._status(), "session_id": self._session_id},
                    }
                )
                await websocket.send_json({"type": "state_snapshot", "payload": self._build_snapshot()})
                while True:
                    data = await websocket.receive_json()
                    if isinstance(data, dict):
                        await self._handle_ui_message(data)
            except WebSocketDisconnect:
                pass
            finally:
                await self._ws_hub.disconnect(websocket)

    def _status(self) -> str:
        if self._session is None:
            return "idle"
        return self._session.phase.value

    def _build_snapshot(self) -> Dict[str, object]:
        if self._session is None:
            return {
                "session_id": self._session_id,
                "phase": "idle",
                "connection": "disconnected",
                "error": None,
            }
        return self._session.snapshot()

    async def _broadcast_session_status(self, state: str, **payload: object) -> None:
        payload_data = dict(payload)
        payload_data.setdefault("session_id", self._session_id)
        await self._ws_hub.broadcast({"type": "session_status", "payload": {"state": state, **payload_data}})

    async def _start_session(self) -> LiveSession:
        async with self._join_lock:
            current = self._session
            if current is not None and not current.is_torn_down:
                return current
            session = self._session_factory(
                on_update=self._on_session_update,
                on_error=self._on_session_error,
                on_remote_video=self._on_remote_video,
            )
            self._session = session
            self._remote_uid = None
            await self._broadcast_session_status("joining")
            try:
                await session.join()
            finally:
                await self._broadcast_session_status(session.phase.value)
            return session

    async def _leave_session(self) -> None:
        session = self._session
        if session is None or session.is_torn_down:
            await self._broadcast_session_status(self._status())
            return
        await self._broadcast_session_status("disconnecting")
        try:
            await session.leave()
        except Exception:
            logger.exception("Error while leaving session")
        self._remote_uid = None
        await self._broadcast_session_status(session.phase.value)

    async def _handle_ui_message(self, data: Dict[str, Any]) -> None:
        """Handle messages coming from the web UI via WebSocket."""

        kind = data.get("type")
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            payload = {}
        if kind in ("join", "rejoin"):
            try:
                await self._start_session()
            except LiveSessionError as exc:
                logger.info("Join attempt failed: %s", exc)
            return
        if kind == "leave_session":
            await self._leave_session()
            return
        if kind == "render_target_closed":
            self._render_target_ready = False
            return
        if kind == "render_target_ready":
            self._render_target_ready = True

        session = self._session
        if session is None or session.is_torn_down:
            logger.debug("Ignoring UI message %s without an active session", kind)
            return
        try:
            if kind == "toggle_audio":
                if "muted" in payload:
                    await session.set_muted(bool(payload["muted"]))
                else:
                    await session.toggle_audio()
            elif kind == "toggle_video":
                if "enabled" in payload:
                    await session.set_video_enabled(bool(payload["enabled"]))
                else:
                    await session.toggle_video()
            elif kind == "switch_camera":
                await session.switch_camera()
            elif kind == "toggle_hand":
                await session.toggle_hand()
            elif kind == "chat_send":
                message = payload.get("message", payload.get("text", ""))
                await session.send_chat(str(message or ""))
            elif kind == "chat_opened":
                await session.open_chat()
            elif kind == "chat_closed":
                await session.close_chat()
            elif kind == "render_target_ready":
                await session.attach_remote_video(self._relay_frame)
            else:
                logger.debug("Unknown UI message type %r", kind)
        except LiveSessionError as exc:
            logger.warning("%s failed: %s", kind, exc)
            await self._on_session_error(exc)

    async def _on_session_update(self, snapshot: Dict[str, Any]) -> None:
        await self._ws_hub.broadcast({"type": "state_snapshot", "payload": snapshot})

    async def _on_session_error(self, error: LiveSessionError) -> None:
        await self._ws_hub.broadcast({"type": "session_error", "payload": error.to_dict()})

    async def _on_remote_video(self, request: Optional[AttachmentRequest]) -> None:
        self._remote_uid = request.uid if request is not None else None
        if request is not None and self._render_target_ready:
            await request.resolve(self._relay_frame)

    async def _relay_frame(self, frame: bytes) -> None:
        await self._ws_hub.broadcast(
            {
                "type": "video_frame",
                "payload": {"uid": self._remote_uid, "frame": base64.b64encode(frame).decode("ascii")},
            }
        )

    async def _auto_join_worker(self) -> None:
        try:
            await self._start_session()
        except LiveSessionError as exc:
            logger.error("Could not join session %s: %s", self._session_id, exc)

    async def run(self, host: str = "127.0.0.1", port: int = 8100) -> None:
        import uvicorn

        config = uvicorn.Config(self._app, host=host, port=port, log_level="info")
        server = uvicorn.Server(config)
        self._uvicorn_server = server
        join_task = asyncio.create_task(self._auto_join_worker()) if self._auto_join else None
        try:
            await server.serve()
        finally:
            if join_task is not None and not join_task.done():
                join_task.cancel()
            await self._leave_session()
            self._uvicorn_server = None

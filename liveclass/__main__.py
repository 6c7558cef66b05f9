from __future__ import annotations

import argparse
import asyncio
import logging
import os
from functools import partial
from typing import Tuple

from liveclass_shared.protocol import (
    DEFAULT_API_BASE_URL,
    DEFAULT_MEDIA_HOST,
    DEFAULT_MEDIA_PORT,
    AuthCredential,
)

from .app import ClientApp
from .devices import LocalDeviceFactory
from .moderation import LocalParticipantState
from .rest_client import JOIN_TIMEOUT_SECONDS, SessionApi, derive_signaling_url
from .session import LiveSession
from .signaling_client import SocketIOTransport
from .udp_rtc import UdpRtcClient

TOKEN_ENV_VAR = "LIVECLASS_TOKEN"


def _relay_address(value: str) -> Tuple[str, int]:
    host, sep, port = value.rpartition(":")
    if not sep or not host:
        raise argparse.ArgumentTypeError("Expected HOST:PORT")
    try:
        return host, int(port)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid port in {value!r}") from exc


def build_session(args: argparse.Namespace, credential: AuthCredential, api: SessionApi, **callbacks) -> LiveSession:
    relay_host, relay_port = args.media_relay
    return LiveSession(
        args.session_id,
        credential,
        api,
        signaling_transport=SocketIOTransport(args.signaling_url or derive_signaling_url(args.api_base_url)),
        rtc=UdpRtcClient(relay_host, relay_port),
        devices=LocalDeviceFactory(camera=args.camera, microphone=args.microphone),
        join_timeout=args.join_timeout,
        initial_state=LocalParticipantState(muted=args.muted, video_enabled=not args.no_video),
        display_name=args.display_name,
        **callbacks,
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Live classroom session client")
    parser.add_argument("session_id", help="Identifier of the live class to join")
    parser.add_argument("--api-base-url", default=DEFAULT_API_BASE_URL, help="Base URL of the REST API")
    parser.add_argument(
        "--signaling-url",
        help="Socket.IO server URL (defaults to the API base URL without its /api suffix)",
    )
    parser.add_argument(
        "--media-relay",
        type=_relay_address,
        default=(DEFAULT_MEDIA_HOST, DEFAULT_MEDIA_PORT),
        help="Media relay address as HOST:PORT",
    )
    parser.add_argument(
        "--token",
        default=os.environ.get(TOKEN_ENV_VAR),
        help=f"Bearer token (defaults to ${TOKEN_ENV_VAR})",
    )
    parser.add_argument("--user-id", help="User id (defaults to the id claim of the token)")
    parser.add_argument("--display-name", default="You", help="Name shown on optimistic chat messages")
    parser.add_argument("--join-timeout", type=float, default=JOIN_TIMEOUT_SECONDS, help="Seconds to wait for the join call")
    parser.add_argument("--camera", default="0", help="Camera device index")
    parser.add_argument("--microphone", help="Microphone device name or index")
    parser.add_argument("--muted", action="store_true", help="Join with the microphone muted")
    parser.add_argument("--no-video", action="store_true", help="Join with the camera disabled")
    parser.add_argument("--ui-host", default="127.0.0.1", help="Host to bind the local UI web server")
    parser.add_argument("--ui-port", type=int, default=8100, help="Port for the local UI web server")
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    args = parser.parse_args()

    log_level = getattr(logging, str(args.log_level).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )

    if not args.token:
        parser.error(f"an auth token is required (--token or ${TOKEN_ENV_VAR})")
    try:
        credential = AuthCredential.from_token(args.token, user_id=args.user_id)
    except ValueError as exc:
        parser.error(str(exc))

    asyncio.run(_run(args, credential))


async def _run(args: argparse.Namespace, credential: AuthCredential) -> None:
    api = SessionApi(args.api_base_url, credential, timeout=args.join_timeout)
    app = ClientApp(args.session_id, partial(build_session, args, credential, api))
    try:
        await app.run(host=args.ui_host, port=args.ui_port)
    finally:
        await api.close()


if __name__ == "__main__":
    main()

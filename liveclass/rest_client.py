from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import urlsplit, urlunsplit

import httpx

from liveclass_shared.errors import AuthExpired, JoinFailed, JoinTimeout, SessionNotLive
from liveclass_shared.protocol import AuthCredential, JoinResult, SessionStatus

logger = logging.getLogger(__name__)

JOIN_TIMEOUT_SECONDS = 15.0


def derive_signaling_url(api_base_url: str) -> str:
    """The signaling server shares the API host; only the ``/api`` path prefix is dropped."""
    parts = urlsplit(api_base_url)
    path = parts.path.rstrip("/")
    if path.endswith("/api"):
        path = path[: -len("/api")]
    return urlunsplit((parts.scheme, parts.netloc, path, "", ""))


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return response.reason_phrase


class SessionApi:
    """Client for the REST join call."""

    def __init__(
        self,
        base_url: str,
        credential: AuthCredential,
        *,
        timeout: float = JOIN_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._credential = credential
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)),
        )

    async def join(self, session_id: str) -> JoinResult:
        """Exchange the auth credential for media credentials, session snapshot and chat backlog."""
        headers = {"Authorization": f"Bearer {self._credential.token}"}
        logger.info("Joining session %s", session_id)
        try:
            response = await self._client.post(f"/sessions/{session_id}/join", headers=headers, json={})
        except httpx.TimeoutException as exc:
            raise JoinTimeout(f"Join request for {session_id} timed out") from exc
        except httpx.HTTPError as exc:
            raise JoinFailed(f"Join request failed: {exc}") from exc

        if response.status_code >= 400:
            self._raise_for_status(response)

        try:
            payload: Dict[str, Any] = response.json()
            result = JoinResult.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise JoinFailed(f"Malformed join response: {exc}", status_code=response.status_code) from exc

        if result.session.status is not SessionStatus.LIVE:
            raise SessionNotLive(f"Session {session_id} is {result.session.status.value}")
        logger.debug(
            "Join accepted: channel=%s uid=%s backlog=%d",
            result.credentials.channel_name,
            result.credentials.uid,
            len(result.chat_backlog),
        )
        return result

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _raise_for_status(self, response: httpx.Response) -> None:
        message = _error_message(response)
        status = response.status_code
        logger.warning("Join rejected with %s: %s", status, message)
        if status == 401:
            raise AuthExpired(message)
        if status == 409 or (status == 400 and "not live" in message.lower()):
            raise SessionNotLive(message)
        raise JoinFailed(message, status_code=status)

import httpx
import pytest

from liveclass.rest_client import SessionApi, derive_signaling_url
from liveclass_shared.errors import AuthExpired, JoinFailed, JoinTimeout, SessionNotLive

from liveclass_fakes import SESSION_ID, join_payload, make_credential

BASE_URL = "http://api.example/api"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def make_api(handler) -> SessionApi:
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return SessionApi(BASE_URL, make_credential(), client=client)


@pytest.mark.anyio
async def test_join_sends_bearer_token_and_parses_result() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=join_payload())

    api = make_api(handler)
    result = await api.join(SESSION_ID)

    assert seen[0].method == "POST"
    assert seen[0].url == httpx.URL("http://api.example/api/sessions/abc123/join")
    assert seen[0].headers["Authorization"] == "Bearer auth-token"
    assert result.credentials.token == "media-token"
    assert result.credentials.uid == 42
    assert result.session.session_id == SESSION_ID


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("status", "body", "error"),
    [
        (401, {"message": "jwt expired"}, AuthExpired),
        (409, {"message": "Class has not started"}, SessionNotLive),
        (400, {"message": "Live class is not live"}, SessionNotLive),
        (400, {"message": "Bad request"}, JoinFailed),
        (500, {"error": "database down"}, JoinFailed),
    ],
)
async def test_join_maps_http_errors(status: int, body: dict, error: type) -> None:
    api = make_api(lambda request: httpx.Response(status, json=body))
    with pytest.raises(error) as excinfo:
        await api.join(SESSION_ID)
    if error is JoinFailed:
        assert excinfo.value.status_code == status
        assert excinfo.value.retryable is True


@pytest.mark.anyio
async def test_join_rejects_session_that_is_not_live() -> None:
    api = make_api(lambda request: httpx.Response(200, json=join_payload("scheduled")))
    with pytest.raises(SessionNotLive):
        await api.join(SESSION_ID)


@pytest.mark.anyio
async def test_join_timeout_is_reported_as_join_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(JoinTimeout):
        await make_api(handler).join(SESSION_ID)


@pytest.mark.anyio
async def test_network_failure_is_join_failed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(JoinFailed):
        await make_api(handler).join(SESSION_ID)


@pytest.mark.anyio
async def test_malformed_body_is_join_failed() -> None:
    api = make_api(lambda request: httpx.Response(200, json={"session": {"id": SESSION_ID}}))
    with pytest.raises(JoinFailed):
        await api.join(SESSION_ID)

    api = make_api(lambda request: httpx.Response(200, text="<html>gateway</html>"))
    with pytest.raises(JoinFailed):
        await api.join(SESSION_ID)


@pytest.mark.anyio
async def test_close_leaves_injected_client_open() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(204)))
    api = SessionApi(BASE_URL, make_credential(), client=client)
    await api.close()
    assert client.is_closed is False
    await client.aclose()


def test_derive_signaling_url_drops_api_prefix() -> None:
    assert derive_signaling_url("http://localhost:5000/api") == "http://localhost:5000"
    assert derive_signaling_url("https://school.example/api/") == "https://school.example"
    assert derive_signaling_url("https://school.example/v2") == "https://school.example/v2"

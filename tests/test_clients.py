from datetime import datetime, timedelta, timezone

import httpx
import pytest
from jose import jwt

from client.api_client import MeetingsApiError, MeetingsClient
from client.signaling_client import signaling_url
from server.auth import TokenVerifier
from server.errors import AuthenticationError


@pytest.fixture
def anyio_backend():
    return "asyncio"


def test_signaling_url_switches_scheme_and_quotes_token() -> None:
    assert signaling_url("http://localhost:5000/", "a b") == "ws://localhost:5000/ws/signaling?token=a+b"
    assert signaling_url("https://example.org", "t").startswith("wss://example.org/ws/signaling")


def test_token_verifier_accepts_id_or_sub() -> None:
    verifier = TokenVerifier("secret")
    assert verifier.verify(verifier.issue("user-1")) == "user-1"
    token = jwt.encode({"sub": "user-2"}, "secret", algorithm="HS256")
    assert verifier.verify(token) == "user-2"


def test_token_verifier_rejects_bad_tokens() -> None:
    verifier = TokenVerifier("secret")
    with pytest.raises(AuthenticationError):
        verifier.verify(None)
    with pytest.raises(AuthenticationError):
        verifier.verify(TokenVerifier("other").issue("user-1"))
    with pytest.raises(AuthenticationError):
        verifier.verify(verifier.issue("user-1", expires_in=timedelta(seconds=-5)))
    with pytest.raises(AuthenticationError):
        verifier.verify(jwt.encode({"role": "x"}, "secret", algorithm="HS256"))


@pytest.mark.anyio
async def test_meetings_client_sends_bearer_and_parses_errors() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path.endswith("/room/0"):
            return httpx.Response(200, json={"room_id": "r", "meeting_id": "m", "class_index": 0, "duration_min": 60})
        if request.url.path.endswith("/complete"):
            return httpx.Response(200, json={"duration_sec": 1500})
        return httpx.Response(400, json={"message": "You can join 10 minutes before start until 90 minutes after start."})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(base_url="http://server", transport=transport) as http:
        meetings = MeetingsClient("http://server", "tok", client=http)
        reveal = await meetings.reveal_room("m", 0)
        assert reveal["room_id"] == "r"

        start = datetime(2030, 1, 1, tzinfo=timezone.utc)
        reply = await meetings.complete_class("m", 0, start_at=start, end_at=start + timedelta(seconds=1500))
        assert reply["duration_sec"] == 1500

        with pytest.raises(MeetingsApiError) as excinfo:
            await meetings.reveal_room("m", 1)
        assert excinfo.value.status_code == 400
        assert excinfo.value.message.startswith("You can join")

    assert all(request.headers["authorization"] == "Bearer tok" for request in seen)
    assert seen[1].method == "PUT"

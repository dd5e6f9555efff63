import asyncio
import base64
import hashlib
import json
import time
from uuid import uuid4

import httpx
import pytest
from jose import jwt

from opinion_map.core.config import Settings, get_settings
from opinion_map.core.errors import SchedulingError
from opinion_map.core.security import verify_bearer, verify_qstash_signature
from opinion_map.main import app
from opinion_map.services.scheduler import LocalScheduler, QStashScheduler

WORKER_URL = "http://testserver/webhooks/opinion-map-worker"


def _b64(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def make_token(body: bytes, key: str, **claims) -> str:
    now = int(time.time())
    payload = {
        "iss": "Upstash",
        "sub": WORKER_URL,
        "exp": now + 300,
        "nbf": now - 5,
        "iat": now,
        "jti": "msg-1",
        "body": _b64(hashlib.sha256(body).digest()),
        **claims,
    }
    return jwt.encode(payload, key, algorithm="HS256")


def test_signature_accepts_current_and_next_keys():
    body = b'{"session_id": "abc"}'
    assert verify_qstash_signature(make_token(body, "current"), body, current_key="current", next_key="next", url=WORKER_URL)
    assert verify_qstash_signature(make_token(body, "next"), body, current_key="current", next_key="next", url=WORKER_URL)


@pytest.mark.parametrize(
    "token_key, claims, sent_body",
    [
        ("other", {}, b'{"session_id": "abc"}'),
        ("current", {"exp": int(time.time()) - 3600}, b'{"session_id": "abc"}'),
        ("current", {"nbf": int(time.time()) + 3600}, b'{"session_id": "abc"}'),
        ("current", {"sub": "http://elsewhere/worker"}, b'{"session_id": "abc"}'),
        ("current", {"iss": "someone"}, b'{"session_id": "abc"}'),
        ("current", {"exp": "tomorrow"}, b'{"session_id": "abc"}'),
        ("current", {"nbf": "soon"}, b'{"session_id": "abc"}'),
        ("current", {}, b'{"session_id": "tampered"}'),
    ],
)
def test_signature_rejects_invalid_tokens(token_key, claims, sent_body):
    token = make_token(b'{"session_id": "abc"}', token_key, **claims)
    assert not verify_qstash_signature(token, sent_body, current_key="current", next_key="next", url=WORKER_URL)


def test_signature_rejects_garbage():
    assert not verify_qstash_signature("", b"{}", current_key="current", next_key=None)
    assert not verify_qstash_signature("a.b", b"{}", current_key="current", next_key=None)
    assert not verify_qstash_signature("x.y.z", b"{}", current_key=None, next_key=None)


def test_verify_bearer():
    assert verify_bearer("Bearer secret", "secret")
    assert verify_bearer("bearer secret", "secret")
    assert not verify_bearer("Bearer wrong", "secret")
    assert not verify_bearer("Basic secret", "secret")
    assert not verify_bearer(None, "secret")
    assert not verify_bearer("Bearer secret", None)


@pytest.mark.asyncio
async def test_worker_accepts_signed_requests(client):
    body = json.dumps({"session_id": str(uuid4())}).encode()
    app.dependency_overrides[get_settings] = lambda: Settings(
        qstash_current_signing_key="current",
        qstash_next_signing_key="next",
        worker_url=WORKER_URL,
        worker_api_key=None,
    )

    signed = await client.post(
        "/webhooks/opinion-map-worker",
        content=body,
        headers={"Content-Type": "application/json", "Upstash-Signature": make_token(body, "next")},
    )
    unsigned = await client.post(
        "/webhooks/opinion-map-worker",
        content=body,
        headers={"Content-Type": "application/json", "Upstash-Signature": make_token(body, "stolen")},
    )

    assert signed.status_code == 200
    assert signed.json()["reason"] == "not_found"
    assert unsigned.status_code == 401


@pytest.mark.asyncio
async def test_worker_rejects_signed_tokens_with_malformed_claims(client):
    body = json.dumps({"session_id": str(uuid4())}).encode()
    app.dependency_overrides[get_settings] = lambda: Settings(
        qstash_current_signing_key="current",
        worker_url=WORKER_URL,
        worker_api_key=None,
    )

    response = await client.post(
        "/webhooks/opinion-map-worker",
        content=body,
        headers={"Content-Type": "application/json", "Upstash-Signature": make_token(body, "current", exp="tomorrow")},
    )

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_qstash_scheduler_publishes_worker_callback():
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(201, json={"messageId": "msg_123"})

    session_id = uuid4()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        scheduler = QStashScheduler(
            base_url="https://qstash.test/",
            token="qstash-token",
            worker_url=WORKER_URL,
            retries=3,
            client=http_client,
        )
        message_id = await scheduler.enqueue(session_id)

    assert message_id == "msg_123"
    request = captured[0]
    assert request.method == "POST"
    assert "/v2/publish/" in str(request.url)
    assert request.headers["Authorization"] == "Bearer qstash-token"
    assert request.headers["Upstash-Retries"] == "3"
    assert json.loads(request.content) == {"session_id": str(session_id)}


@pytest.mark.asyncio
async def test_qstash_scheduler_raises_on_rejection():
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))
    ) as http_client:
        scheduler = QStashScheduler(base_url="https://qstash.test", token="t", worker_url=WORKER_URL, client=http_client)
        with pytest.raises(SchedulingError) as excinfo:
            await scheduler.enqueue(uuid4())
    assert excinfo.value.detail["status"] == 500


@pytest.mark.asyncio
async def test_qstash_scheduler_raises_when_unreachable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        scheduler = QStashScheduler(base_url="https://qstash.test", token="t", worker_url=WORKER_URL, client=http_client)
        with pytest.raises(SchedulingError):
            await scheduler.enqueue(uuid4())


@pytest.mark.asyncio
async def test_local_scheduler_runs_worker_in_background():
    seen = []
    done = asyncio.Event()

    async def runner(session_id):
        seen.append(session_id)
        done.set()

    session_id = uuid4()
    message_id = await LocalScheduler(runner).enqueue(session_id)
    await asyncio.wait_for(done.wait(), timeout=1)

    assert seen == [session_id]
    assert message_id == f"local-{session_id}"

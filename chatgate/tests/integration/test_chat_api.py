from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from chatgate.apps.api.main import create_app
from chatgate.core.config import get_settings
from chatgate.domain.accounts import CounterOp
from chatgate.providers.llm.upstream import get_upstream_client
from chatgate.services.notifications import Notifier, get_notifier
from chatgate.tests.utils.auth import auth_headers
from chatgate.tests.utils.fakes import (
    SSE_CHUNKS,
    FailingByteStream,
    RecordingPushSender,
    UpstreamRecorder,
)


CHAT_PAYLOAD = {"messages": [{"role": "user", "content": "Hello"}]}


class ChatHarness:
    # Wire the app to a mock upstream and a recording push sender.
    def __init__(self, store, recorder: UpstreamRecorder | None = None) -> None:
        self.store = store
        self.recorder = recorder or UpstreamRecorder()
        self.sender = RecordingPushSender()
        self.notifier = Notifier(store=store, sender=self.sender)
        self.upstream = httpx.AsyncClient(transport=self.recorder.transport())
        self.app = create_app()
        self.app.dependency_overrides[get_upstream_client] = lambda: self.upstream
        self.app.dependency_overrides[get_notifier] = lambda: self.notifier

    def client(self) -> AsyncClient:
        return AsyncClient(transport=ASGITransport(app=self.app), base_url="http://test")

    async def settle(self) -> None:
        await self.notifier.drain()

    async def close(self) -> None:
        await self.notifier.aclose()
        await self.upstream.aclose()


@pytest.fixture
async def harness(account_store):
    harness = ChatHarness(account_store)
    yield harness
    await harness.close()


def _upstream_json(request: httpx.Request) -> dict:
    return json.loads(request.content)


@pytest.mark.asyncio
async def test_free_chat_relays_stream_and_decrements(harness) -> None:
    await harness.store.create("acct-1", free_messages_remaining=99)

    async with harness.client() as client:
        response = await client.post("/v1/chat/free", json=CHAT_PAYLOAD, headers=auth_headers("acct-1"))

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.content == b"".join(SSE_CHUNKS)
    assert (await harness.store.get("acct-1")).free_messages_remaining == 98

    upstream_request = harness.recorder.requests[0]
    assert str(upstream_request.url) == get_settings().free_upstream_url
    assert upstream_request.headers["Authorization"] == "Bearer free-upstream-key"
    body = _upstream_json(upstream_request)
    assert body["stream"] is True
    assert body["model"] == get_settings().free_default_model
    assert body["messages"][0]["role"] == "system"
    assert body["messages"][1] == {"role": "user", "content": "Hello"}


@pytest.mark.asyncio
async def test_free_chat_heals_missing_counter(harness) -> None:
    await harness.store.create("acct-1", free_messages_remaining=None)

    async with harness.client() as client:
        response = await client.post("/v1/chat/free", json=CHAT_PAYLOAD, headers=auth_headers("acct-1"))

    assert response.status_code == 200
    assert (await harness.store.get("acct-1")).free_messages_remaining == 99


@pytest.mark.asyncio
async def test_free_warning_fires_exactly_at_threshold(harness) -> None:
    await harness.store.create("acct-1", free_messages_remaining=11, push_token="device-1")

    async with harness.client() as client:
        for _ in range(2):
            response = await client.post("/v1/chat/free", json=CHAT_PAYLOAD, headers=auth_headers("acct-1"))
            assert response.status_code == 200
    await harness.settle()

    assert (await harness.store.get("acct-1")).free_messages_remaining == 9
    assert harness.sender.bodies == ["You have 10 free messages left"]


@pytest.mark.asyncio
async def test_last_free_message_then_denied(harness) -> None:
    await harness.store.create("acct-1", free_messages_remaining=1, push_token="device-1")

    async with harness.client() as client:
        first = await client.post("/v1/chat/free", json=CHAT_PAYLOAD, headers=auth_headers("acct-1"))
        second = await client.post("/v1/chat/free", json=CHAT_PAYLOAD, headers=auth_headers("acct-1"))
    await harness.settle()

    assert first.status_code == 200
    assert second.status_code == 403
    assert second.json()["error"]["code"] == "QUOTA_DENIED"
    assert (await harness.store.get("acct-1")).free_messages_remaining == 0
    assert harness.sender.bodies == ["Free messages used up. Add your own API key or go Pro."]
    assert len(harness.recorder.requests) == 1


@pytest.mark.asyncio
async def test_missing_or_invalid_credentials_are_rejected(harness) -> None:
    await harness.store.create("acct-1", free_messages_remaining=5)

    async with harness.client() as client:
        missing = await client.post("/v1/chat/free", json=CHAT_PAYLOAD)
        invalid = await client.post(
            "/v1/chat/free",
            json=CHAT_PAYLOAD,
            headers={"Authorization": "Bearer not-a-token"},
        )
        expired = await client.post(
            "/v1/chat/pro",
            json=CHAT_PAYLOAD,
            headers=auth_headers("acct-1", expires_in_s=-600),
        )

    for response in (missing, invalid, expired):
        assert response.status_code == 401
        payload = response.json()
        assert payload["error"]["code"] == "AUTH_UNAUTHORIZED"
        assert payload["meta"]["api_version"] == "v1"
        assert response.headers["WWW-Authenticate"] == "Bearer"
    assert missing.json()["error"]["message"] == "No token provided"
    assert harness.recorder.requests == []
    assert (await harness.store.get("acct-1")).free_messages_remaining == 5


@pytest.mark.asyncio
async def test_malformed_body_is_rejected_after_auth(harness) -> None:
    await harness.store.create("acct-1", free_messages_remaining=5)

    async with harness.client() as client:
        response = await client.post(
            "/v1/chat/free",
            content=b'{"messages": "hello"}',
            headers={**auth_headers("acct-1"), "Content-Type": "application/json"},
        )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "BAD_REQUEST"
    assert harness.recorder.requests == []


@pytest.mark.asyncio
async def test_upstream_error_is_mirrored_and_not_billed(account_store) -> None:
    def respond(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="model overloaded")

    harness = ChatHarness(account_store, UpstreamRecorder(respond=respond))
    await account_store.create("acct-1", free_messages_remaining=20)
    try:
        async with harness.client() as client:
            response = await client.post("/v1/chat/free", json=CHAT_PAYLOAD, headers=auth_headers("acct-1"))
    finally:
        await harness.close()

    assert response.status_code == 503
    payload = response.json()
    assert payload["error"]["code"] == "UPSTREAM_ERROR"
    assert payload["error"]["message"] == "model overloaded"
    assert (await account_store.get("acct-1")).free_messages_remaining == 20


@pytest.mark.asyncio
async def test_mid_stream_failure_is_not_billed(account_store) -> None:
    def respond(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=FailingByteStream(SSE_CHUNKS[:1]))

    harness = ChatHarness(account_store, UpstreamRecorder(respond=respond))
    await account_store.create("acct-1", free_messages_remaining=11, push_token="device-1")
    try:
        async with harness.client() as client:
            response = await client.post("/v1/chat/free", json=CHAT_PAYLOAD, headers=auth_headers("acct-1"))
        await harness.settle()
    finally:
        await harness.close()

    # Headers were already sent, so the caller sees a truncated 200 stream.
    assert response.status_code == 200
    assert response.content == SSE_CHUNKS[0]
    assert (await account_store.get("acct-1")).free_messages_remaining == 11
    assert harness.sender.sent == []


@pytest.mark.asyncio
async def test_missing_upstream_key_returns_500(harness, monkeypatch) -> None:
    monkeypatch.delenv("FREE_UPSTREAM_API_KEY")
    get_settings.cache_clear()
    await harness.store.create("acct-1", free_messages_remaining=5)

    async with harness.client() as client:
        response = await client.post("/v1/chat/free", json=CHAT_PAYLOAD, headers=auth_headers("acct-1"))

    assert response.status_code == 500
    assert response.json()["error"]["message"] == "Internal server error"
    assert harness.recorder.requests == []
    assert (await harness.store.get("acct-1")).free_messages_remaining == 5


@pytest.mark.asyncio
async def test_pro_chat_counts_usage_and_uses_allow_list(harness) -> None:
    expiry = datetime.now(timezone.utc) + timedelta(days=20)
    await harness.store.create("acct-1", subscription_tier="pro", subscription_expiry=expiry)

    async with harness.client() as client:
        allowed = await client.post(
            "/v1/chat/pro",
            json={**CHAT_PAYLOAD, "model": "anthropic/claude-sonnet-4"},
            headers=auth_headers("acct-1"),
        )
        fallback = await client.post(
            "/v1/chat/pro",
            json={**CHAT_PAYLOAD, "model": "unknown/model"},
            headers=auth_headers("acct-1"),
        )

    assert allowed.status_code == 200
    assert fallback.status_code == 200
    assert (await harness.store.get("acct-1")).pro_messages_used_this_month == 2

    first, second = (_upstream_json(request) for request in harness.recorder.requests)
    assert first["model"] == "anthropic/claude-sonnet-4"
    assert second["model"] == get_settings().pro_default_model
    assert first["messages"] == CHAT_PAYLOAD["messages"]
    assert harness.recorder.requests[0].headers["X-Title"] == "chatgate"


@pytest.mark.asyncio
async def test_pro_denied_for_free_and_expired_accounts(harness) -> None:
    await harness.store.create("free-1", free_messages_remaining=50)
    await harness.store.create(
        "expired-1",
        subscription_tier="pro",
        subscription_expiry=datetime.now(timezone.utc) - timedelta(minutes=1),
    )

    async with harness.client() as client:
        free = await client.post("/v1/chat/pro", json=CHAT_PAYLOAD, headers=auth_headers("free-1"))
        expired = await client.post("/v1/chat/pro", json=CHAT_PAYLOAD, headers=auth_headers("expired-1"))
        unknown = await client.post("/v1/chat/pro", json=CHAT_PAYLOAD, headers=auth_headers("ghost"))

    assert free.status_code == 403
    assert free.json()["error"]["message"] == "Pro subscription required."
    assert expired.status_code == 403
    assert expired.json()["error"]["message"] == "Pro subscription expired."
    assert unknown.status_code == 403
    assert harness.recorder.requests == []


@pytest.mark.asyncio
async def test_pro_thresholds_and_monthly_cap(harness) -> None:
    await harness.store.create(
        "acct-1",
        subscription_tier="pro",
        pro_messages_used_this_month=449,
        push_token="device-1",
    )

    async with harness.client() as client:
        response = await client.post("/v1/chat/pro", json=CHAT_PAYLOAD, headers=auth_headers("acct-1"))
        assert response.status_code == 200
        await harness.store.apply_counter_op(
            "acct-1",
            # Jump to one below the cap to exercise the final message.
            CounterOp(field="pro_messages_used_this_month", value=499),
        )
        last = await client.post("/v1/chat/pro", json=CHAT_PAYLOAD, headers=auth_headers("acct-1"))
        denied = await client.post("/v1/chat/pro", json=CHAT_PAYLOAD, headers=auth_headers("acct-1"))
    await harness.settle()

    assert last.status_code == 200
    assert denied.status_code == 403
    assert denied.json()["error"]["message"] == "Pro messages used up for this month. They reset on the 1st."
    assert (await harness.store.get("acct-1")).pro_messages_used_this_month == 500
    assert harness.sender.bodies == [
        "You've used 450 of 500 Pro messages this month",
        "Pro messages used up for this month. They reset on the 1st.",
    ]


@pytest.mark.asyncio
async def test_preflight_returns_204_with_cors_headers(harness) -> None:
    async with harness.client() as client:
        response = await client.options(
            "/v1/chat/free",
            headers={"Origin": "https://app.example", "Access-Control-Request-Method": "POST"},
        )

    assert response.status_code == 204
    assert response.content == b""
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert response.headers["Access-Control-Allow-Headers"] == "Authorization, Content-Type"
    assert harness.recorder.requests == []


@pytest.mark.asyncio
async def test_responses_carry_request_id(harness) -> None:
    async with harness.client() as client:
        response = await client.post(
            "/v1/chat/free",
            json=CHAT_PAYLOAD,
            headers={"X-Request-Id": "req-abc"},
        )

    assert response.headers["X-Request-Id"] == "req-abc"
    assert response.json()["meta"]["request_id"] == "req-abc"

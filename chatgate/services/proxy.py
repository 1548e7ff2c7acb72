from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import json
import logging
import time
from typing import Any, AsyncIterator, Callable

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import StreamingResponse

from chatgate.core.config import get_settings
from chatgate.core.errors import (
    ChatGateError,
    InvalidRequestError,
    QuotaDeniedError,
    SettlementError,
    UpstreamError,
    UpstreamTimeoutError,
)
from chatgate.domain.accounts import AccountRecord
from chatgate.services.accounts import AccountStore
from chatgate.services.auth.tokens import TokenVerifier
from chatgate.services.notifications import Notifier
from chatgate.services.telemetry import (
    increment_counter,
    record_external_call,
    record_stream_duration,
)
from chatgate.services.tiers import TierPolicy


logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


class ProxyState(str, Enum):
    INIT = "init"
    AUTHENTICATED = "authenticated"
    AUTHORIZED = "authorized"
    FORWARDING = "forwarding"
    STREAMING = "streaming"
    SETTLING = "settling"
    DONE = "done"
    ERROR = "error"


class ChatMessage(BaseModel):
    # Extra keys (name, tool_call_id, ...) are forwarded to the upstream untouched.
    model_config = ConfigDict(extra="allow")

    role: str
    content: Any = None


class ChatRequest(BaseModel):
    messages: list[ChatMessage] = Field(min_length=1)
    model: str | None = None


@dataclass
class ProxyRun:
    """Per-request lifecycle record; only the relay may set `completed`."""

    request_id: str
    tier: str
    state: ProxyState = ProxyState.INIT
    account_id: str | None = None
    record: AccountRecord | None = None
    completed: bool = False
    upstream: httpx.Response | None = None
    started_at: float = field(default_factory=time.monotonic)

    def transition(self, target: ProxyState) -> None:
        logger.debug(
            "proxy_transition request_id=%s tier=%s from=%s to=%s",
            self.request_id,
            self.tier,
            self.state.value,
            target.value,
        )
        self.state = target

    def fail(self, reason: str) -> None:
        logger.info(
            "proxy_failed request_id=%s tier=%s account_id=%s state=%s reason=%s",
            self.request_id,
            self.tier,
            self.account_id,
            self.state.value,
            reason,
        )
        self.state = ProxyState.ERROR


async def parse_chat_request(request: Request) -> ChatRequest:
    # Parse after authentication so bad credentials never reach body validation.
    raw = await request.body()
    try:
        payload = json.loads(raw or b"null")
    except ValueError as exc:
        raise InvalidRequestError("Request body must be valid JSON") from exc
    if not isinstance(payload, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    try:
        return ChatRequest.model_validate(payload)
    except ValidationError as exc:
        raise InvalidRequestError("Request body must include a non-empty messages list") from exc


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StreamingProxy:
    """Metered relay of a chat completion stream for one tier.

    The request walks Init -> Authenticated -> Authorized -> Forwarding -> Streaming,
    then Settling -> Done once the caller-facing stream has closed. Usage is settled
    only when the upstream stream ended normally; any error, timeout or disconnect
    during the relay leaves the counters untouched.
    """

    def __init__(
        self,
        *,
        policy: TierPolicy,
        verifier: TokenVerifier,
        store: AccountStore,
        notifier: Notifier,
        client: httpx.AsyncClient,
        timeout_s: float | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._policy = policy
        self._verifier = verifier
        self._store = store
        self._notifier = notifier
        self._client = client
        self._timeout_s = float(timeout_s if timeout_s is not None else get_settings().request_timeout_s)
        self._now = time_provider or _utcnow

    async def handle(self, request: Request, *, request_id: str) -> StreamingResponse:
        run = ProxyRun(request_id=request_id, tier=self._policy.name)
        deadline = time.monotonic() + self._timeout_s
        try:
            upstream = await asyncio.wait_for(self._open_upstream(run, request), timeout=self._timeout_s)
        except asyncio.TimeoutError as exc:
            run.fail("deadline_exceeded")
            raise UpstreamTimeoutError("Request timed out before the upstream responded") from exc
        except ChatGateError as exc:
            run.fail(exc.code)
            raise
        except Exception:
            run.fail("unexpected")
            raise

        run.upstream = upstream
        return StreamingResponse(
            self._relay(run, upstream, deadline),
            status_code=200,
            media_type="text/event-stream",
            headers=SSE_HEADERS,
            background=BackgroundTask(self._settle, run),
        )

    async def _open_upstream(self, run: ProxyRun, request: Request) -> httpx.Response:
        account_id = await self._verifier.verify_header(request.headers.get("Authorization"))
        run.account_id = account_id
        run.transition(ProxyState.AUTHENTICATED)

        payload = await parse_chat_request(request)
        record = await self._store.get(account_id)
        decision = self._policy.authorize(record, self._now())
        if not decision.allowed:
            increment_counter(f"quota_denied_{self._policy.name}_total")
            raise QuotaDeniedError(decision.reason or "Request not permitted")
        run.record = record
        run.transition(ProxyState.AUTHORIZED)

        body = self._policy.build_upstream_body(
            [message.model_dump(exclude_unset=True) for message in payload.messages],
            payload.model,
        )
        headers = self._policy.upstream_headers()
        run.transition(ProxyState.FORWARDING)
        return await self._send_upstream(body, headers)

    async def _send_upstream(self, body: dict[str, Any], headers: dict[str, str]) -> httpx.Response:
        integration = f"upstream_{self._policy.name}"
        upstream_request = self._client.build_request(
            "POST",
            self._policy.upstream_url,
            json=body,
            headers=headers,
        )
        start = time.monotonic()
        try:
            response = await self._client.send(upstream_request, stream=True)
        except httpx.TimeoutException as exc:
            record_external_call(integration=integration, latency_ms=(time.monotonic() - start) * 1000, success=False)
            raise UpstreamTimeoutError("Upstream provider timed out") from exc
        except httpx.HTTPError as exc:
            record_external_call(integration=integration, latency_ms=(time.monotonic() - start) * 1000, success=False)
            logger.warning("upstream_unreachable tier=%s error=%s", self._policy.name, type(exc).__name__)
            raise UpstreamError("Upstream provider unavailable", status_code=502) from exc

        latency_ms = (time.monotonic() - start) * 1000
        if not response.is_success:
            # Mirror the upstream status and body; no bytes have gone to the caller yet.
            try:
                error_body = await response.aread()
            finally:
                await response.aclose()
            record_external_call(integration=integration, latency_ms=latency_ms, success=False)
            logger.warning(
                "upstream_rejected tier=%s status=%s",
                self._policy.name,
                response.status_code,
            )
            message = error_body.decode("utf-8", errors="replace") or response.reason_phrase
            raise UpstreamError(message, status_code=response.status_code)
        record_external_call(integration=integration, latency_ms=latency_ms, success=True)
        return response

    async def _relay(
        self,
        run: ProxyRun,
        upstream: httpx.Response,
        deadline: float,
    ) -> AsyncIterator[bytes]:
        run.transition(ProxyState.STREAMING)
        started = time.monotonic()
        chunks = upstream.aiter_bytes()
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                try:
                    chunk = await asyncio.wait_for(chunks.__anext__(), timeout=remaining)
                except StopAsyncIteration:
                    break
                if chunk:
                    yield chunk
            run.completed = True
        except asyncio.TimeoutError:
            increment_counter("stream_timeouts_total")
            run.fail("deadline_exceeded_mid_stream")
        except httpx.HTTPError as exc:
            increment_counter("stream_errors_total")
            logger.warning(
                "upstream_stream_error request_id=%s tier=%s error=%s",
                run.request_id,
                run.tier,
                type(exc).__name__,
            )
            run.fail("upstream_stream_error")
        except Exception as exc:  # noqa: BLE001 - headers are sent; the stream is cut instead of re-raised
            increment_counter("stream_errors_total")
            logger.error("stream_relay_failed request_id=%s tier=%s", run.request_id, run.tier, exc_info=exc)
            run.fail("relay_failed")
        finally:
            if not run.completed and run.state is not ProxyState.ERROR:
                # Generator closed or cancelled while bytes were still pending.
                increment_counter("stream_disconnects_total")
                run.fail("caller_disconnected")
            await upstream.aclose()
            record_stream_duration((time.monotonic() - started) * 1000)

    async def _settle(self, run: ProxyRun) -> None:
        if run.upstream is not None:
            # A caller that vanished while the relay sat at a yield leaves the generator
            # unfinalized; release the upstream connection from the response side.
            try:
                await run.upstream.aclose()
            except httpx.HTTPError as exc:
                logger.warning("upstream_close_failed request_id=%s error=%s", run.request_id, type(exc).__name__)
        if not run.completed and run.state in (ProxyState.FORWARDING, ProxyState.STREAMING):
            increment_counter("stream_disconnects_total")
            run.fail("caller_disconnected")

        if not run.completed or run.account_id is None or run.record is None:
            increment_counter("settlements_skipped_total")
            logger.info(
                "settlement_skipped request_id=%s tier=%s state=%s",
                run.request_id,
                run.tier,
                run.state.value,
            )
            return

        run.transition(ProxyState.SETTLING)
        try:
            new_value = await self._commit_usage(run.account_id, run.record)
        except SettlementError as exc:
            increment_counter("settlement_errors_total")
            logger.error(
                "settlement_failed request_id=%s tier=%s account_id=%s",
                run.request_id,
                run.tier,
                run.account_id,
                exc_info=exc,
            )
            run.fail("settlement_failed")
            return

        if new_value is None:
            # The account vanished between authorization and settlement.
            increment_counter("settlements_noop_total")
            logger.warning(
                "settlement_not_applied request_id=%s tier=%s account_id=%s",
                run.request_id,
                run.tier,
                run.account_id,
            )
        else:
            increment_counter(f"settlements_{run.tier}_total")
            message = self._policy.threshold_message(new_value)
            if message:
                self._notifier.notify(run.account_id, message)
        run.transition(ProxyState.DONE)
        logger.info(
            "proxy_completed request_id=%s tier=%s account_id=%s counter=%s elapsed_ms=%.1f",
            run.request_id,
            run.tier,
            run.account_id,
            new_value,
            (time.monotonic() - run.started_at) * 1000,
        )

    async def _commit_usage(self, account_id: str, record: AccountRecord) -> int | None:
        op = self._policy.settle(record)
        try:
            return await self._store.apply_counter_op(account_id, op)
        except Exception as exc:  # noqa: BLE001 - wrapped so settlement failures share one log path
            raise SettlementError(f"Failed to update {op.field}") from exc

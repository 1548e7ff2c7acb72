from __future__ import annotations

import asyncio
import time
from typing import Any

import httpx

from chatgate.core.config import get_settings
from chatgate.core.errors import ProviderConfigError, PushDeliveryError
from chatgate.services.resilience import retry_async
from chatgate.services.telemetry import record_external_call


class FcmPushSender:
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per sender for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    def build_message(self, *, push_token: str, title: str, body: str) -> dict[str, Any]:
        # Android clients route usage alerts to a dedicated notification channel.
        return {
            "message": {
                "token": push_token,
                "notification": {"title": title, "body": body},
                "android": {
                    "notification": {"channel_id": self._settings.push_android_channel},
                },
            }
        }

    async def send(self, *, push_token: str, title: str, body: str) -> None:
        endpoint = self._settings.push_endpoint
        access_token = self._settings.push_access_token
        if not endpoint or not access_token:
            raise ProviderConfigError("PUSH_ENDPOINT and PUSH_ACCESS_TOKEN are required for FCM push")

        payload = self.build_message(push_token=push_token, title=title, body=body)
        headers = {"Authorization": f"Bearer {access_token}"}
        client = self._get_client()

        async def _call() -> httpx.Response:
            return await client.post(endpoint, json=payload, headers=headers)

        start = time.monotonic()
        try:
            response = await retry_async(_call, integration="push_fcm")
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            record_external_call(
                integration="push.fcm",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise PushDeliveryError("FCM push request failed.") from exc

        if response.status_code >= 400:
            record_external_call(
                integration="push.fcm",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise PushDeliveryError(f"FCM push error: {response.status_code}")

        record_external_call(
            integration="push.fcm",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )

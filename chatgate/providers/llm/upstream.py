from __future__ import annotations

import httpx

from chatgate.core.config import get_settings


_client: httpx.AsyncClient | None = None


def build_upstream_client(transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    settings = get_settings()
    # Reads are bounded per chunk by the request deadline; the client only caps connect and pool waits.
    timeout = httpx.Timeout(
        float(settings.request_timeout_s),
        connect=settings.upstream_connect_timeout_s,
    )
    return httpx.AsyncClient(timeout=timeout, transport=transport)


def get_upstream_client() -> httpx.AsyncClient:
    # Share one pooled client across both tiers and all requests.
    global _client
    if _client is None or _client.is_closed:
        _client = build_upstream_client()
    return _client


async def close_upstream_client() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
    _client = None

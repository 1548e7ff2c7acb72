from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from chatgate.apps.api.errors import (
    chatgate_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from chatgate.apps.api.response import API_VERSION
from chatgate.apps.api.routes.chat import router as chat_router
from chatgate.apps.api.routes.health import router as health_router
from chatgate.apps.api.routes.ops import router as ops_router
from chatgate.apps.api.routes.webhooks import router as webhooks_router
from chatgate.core.config import get_settings
from chatgate.core.errors import ChatGateError
from chatgate.core.logging import configure_logging
from chatgate.persistence.db import dispose_engine
from chatgate.providers.llm.upstream import close_upstream_client
from chatgate.services.notifications import get_notifier
from chatgate.services.subscriptions import webhook_secret_enforced
from chatgate.services.telemetry import record_request


logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Authorization, Content-Type",
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    if not webhook_secret_enforced(settings.subscription_webhook_secret):
        logger.warning("subscription_webhook_unauthenticated reason=secret_not_configured")
    yield
    # Flush pending notifications before the pools they depend on go away.
    await get_notifier().aclose()
    await close_upstream_client()
    await dispose_engine()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="chatgate API", version=API_VERSION, lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        if request.method == "OPTIONS":
            # Preflight requests are answered here and never reach a route.
            return Response(status_code=204, headers=CORS_HEADERS)
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        for key, value in CORS_HEADERS.items():
            response.headers.setdefault(key, value)
        return response

    @app.exception_handler(ChatGateError)
    async def _chatgate_exception_handler(request: Request, exc: ChatGateError):
        return await chatgate_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(chat_router, prefix=f"/{API_VERSION}")
    app.include_router(webhooks_router, prefix=f"/{API_VERSION}")
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")

    return app


app = create_app()

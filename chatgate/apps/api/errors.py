from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from chatgate.apps.api.response import error_response, get_request_id
from chatgate.core.errors import ChatGateError, UnauthenticatedError, WebhookUnauthorizedError, UpstreamError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    # Map status codes to fallback error codes when none are provided.
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from FastAPI HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def chatgate_exception_handler(request: Request, exc: ChatGateError) -> JSONResponse:
    status_code = exc.status_code
    message = exc.message
    headers: dict[str, str] | None = None
    if isinstance(exc, (UnauthenticatedError, WebhookUnauthorizedError)):
        headers = {"WWW-Authenticate": "Bearer"}
    if status_code >= 500 and not isinstance(exc, UpstreamError):
        # Configuration faults stay in the logs; callers get a stable message.
        logger.error(
            "request_failed request_id=%s code=%s message=%s",
            get_request_id(request),
            exc.code,
            exc.message,
        )
        message = "Internal server error"
    return error_response(request, status_code=status_code, code=exc.code, message=message, headers=headers)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    # Normalize HTTPExceptions into the shared error envelope.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Ensure Starlette-raised exceptions (404, 405) are wrapped consistently.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("request_unhandled_error request_id=%s", get_request_id(request), exc_info=exc)
    return error_response(request, status_code=500, code="INTERNAL_ERROR", message="Internal server error")

from __future__ import annotations

from typing import Any

from chatgate.apps.api.response import API_VERSION, ErrorEnvelope


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": API_VERSION},
    }


def _error_response(description: str, *, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


_INTERNAL = _error_response("Internal server error", code="INTERNAL_ERROR", message="Internal server error")

CHAT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _error_response(
        "Malformed chat request",
        code="BAD_REQUEST",
        message="Request body must include a non-empty messages list",
    ),
    401: _error_response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Invalid or expired token"),
    403: _error_response(
        "Quota exhausted or subscription required",
        code="QUOTA_DENIED",
        message="Free messages exhausted. Add your own API key or subscribe to Pro.",
    ),
    500: _INTERNAL,
    502: _error_response("Upstream provider error", code="UPSTREAM_ERROR", message="Upstream provider unavailable"),
    504: _error_response(
        "Upstream timed out",
        code="UPSTREAM_TIMEOUT",
        message="Request timed out before the upstream responded",
    ),
}

WEBHOOK_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _error_response("Malformed event", code="MALFORMED_EVENT", message="Invalid event data"),
    401: _error_response("Unauthorized", code="WEBHOOK_UNAUTHORIZED", message="Unauthorized"),
    500: _INTERNAL,
}

OPS_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _error_response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    404: _error_response("Disabled", code="NOT_FOUND", message="Not Found"),
}

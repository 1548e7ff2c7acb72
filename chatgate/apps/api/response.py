from __future__ import annotations

from typing import Any, Mapping
from uuid import uuid4

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel


API_VERSION = "v1"


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class ErrorEnvelope(BaseModel):
    """Body of every non-streaming failure: `{error: {code, message}, meta: {...}}`."""

    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # The request middleware assigns one; direct handler calls in tests may not.
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
    return request_id


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    envelope = ErrorEnvelope(
        error=ErrorDetail(code=code, message=message, details=details),
        meta=ResponseMeta(request_id=get_request_id(request)),
    )
    return JSONResponse(
        content=envelope.model_dump(exclude_none=True),
        status_code=status_code,
        headers=dict(headers) if headers else None,
    )

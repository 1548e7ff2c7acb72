from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from chatgate.apps.api.deps import get_free_proxy, get_pro_proxy
from chatgate.apps.api.openapi import CHAT_ERROR_RESPONSES
from chatgate.apps.api.response import get_request_id
from chatgate.services.proxy import StreamingProxy


router = APIRouter(prefix="/chat", tags=["chat"], responses=CHAT_ERROR_RESPONSES)

_STREAM_RESPONSE = {200: {"description": "Upstream event stream", "content": {"text/event-stream": {}}}}


@router.post("/free", response_class=StreamingResponse, responses=_STREAM_RESPONSE)
async def chat_free(request: Request, proxy: StreamingProxy = Depends(get_free_proxy)) -> StreamingResponse:
    # Metered against the account's free message allowance.
    return await proxy.handle(request, request_id=get_request_id(request))


@router.post("/pro", response_class=StreamingResponse, responses=_STREAM_RESPONSE)
async def chat_pro(request: Request, proxy: StreamingProxy = Depends(get_pro_proxy)) -> StreamingResponse:
    # Requires an active pro subscription with monthly messages left.
    return await proxy.handle(request, request_id=get_request_id(request))

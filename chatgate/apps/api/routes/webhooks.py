from __future__ import annotations

import json

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request
from pydantic import BaseModel

from chatgate.apps.api.openapi import WEBHOOK_ERROR_RESPONSES
from chatgate.core.config import get_settings
from chatgate.core.errors import MalformedEventError
from chatgate.services.accounts import AccountStore, get_account_store
from chatgate.services.notifications import Notifier, get_notifier
from chatgate.services.subscriptions import (
    apply_subscription_event,
    parse_subscription_event,
    verify_webhook_authorization,
)


router = APIRouter(prefix="/webhooks", tags=["webhooks"], responses=WEBHOOK_ERROR_RESPONSES)


class WebhookAck(BaseModel):
    received: bool


@router.post("/subscriptions", response_model=WebhookAck)
async def subscription_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    authorization: str | None = Header(default=None),
    store: AccountStore = Depends(get_account_store),
    notifier: Notifier = Depends(get_notifier),
) -> dict:
    # Acknowledge once the event is authentic and well formed; the write happens after the response.
    verify_webhook_authorization(authorization, get_settings().subscription_webhook_secret)
    try:
        payload = json.loads(await request.body() or b"null")
    except ValueError as exc:
        raise MalformedEventError("Invalid event data") from exc
    event = parse_subscription_event(payload)
    background_tasks.add_task(apply_subscription_event, event, store=store, notifier=notifier)
    return {"received": True}

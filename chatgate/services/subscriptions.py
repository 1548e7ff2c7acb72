from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hmac
import logging
import math
from typing import Any

from chatgate.core.config import WEBHOOK_SECRET_PLACEHOLDER
from chatgate.core.errors import MalformedEventError, WebhookUnauthorizedError
from chatgate.domain.accounts import TIER_FREE, TIER_PRO
from chatgate.services.accounts import AccountStore
from chatgate.services.notifications import Notifier
from chatgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

GRANT_EVENTS = frozenset({"INITIAL_PURCHASE", "RENEWAL", "PRODUCT_CHANGE"})
REVOKE_EVENTS = frozenset({"CANCELLATION", "EXPIRATION"})
BILLING_ISSUE_EVENT = "BILLING_ISSUE"

BILLING_ISSUE_MESSAGE = "There's an issue with your subscription payment. Please update your payment method."


@dataclass(frozen=True)
class SubscriptionEvent:
    type: str
    account_id: str
    expiration_at_ms: int | None = None

    @property
    def expiry(self) -> datetime | None:
        if self.expiration_at_ms is None:
            return None
        return datetime.fromtimestamp(self.expiration_at_ms / 1000, tz=timezone.utc)


def webhook_secret_enforced(secret: str | None) -> bool:
    # An unset secret or the shipped placeholder disables the credential check.
    return bool(secret) and secret != WEBHOOK_SECRET_PLACEHOLDER


def verify_webhook_authorization(header_value: str | None, secret: str | None) -> None:
    if not webhook_secret_enforced(secret):
        return
    expected = f"Bearer {secret}"
    provided = header_value or ""
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        increment_counter("webhook_unauthorized_total")
        raise WebhookUnauthorizedError("Unauthorized")


def _parse_expiration(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedEventError("event.expiration_at_ms must be a number of milliseconds")
    # JSON decoding admits Infinity and NaN; neither is a point in time.
    if isinstance(value, float) and not math.isfinite(value):
        raise MalformedEventError("event.expiration_at_ms must be a finite number")
    expiration_at_ms = int(value)
    try:
        datetime.fromtimestamp(expiration_at_ms / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise MalformedEventError("event.expiration_at_ms is out of range") from exc
    return expiration_at_ms


def parse_subscription_event(payload: Any) -> SubscriptionEvent:
    """Validate the provider payload shape without touching storage."""
    if not isinstance(payload, dict):
        raise MalformedEventError("Invalid event data")
    event = payload.get("event")
    if not isinstance(event, dict):
        raise MalformedEventError("Invalid event data")
    event_type = event.get("type")
    account_id = event.get("app_user_id")
    if not isinstance(account_id, str) or not account_id:
        raise MalformedEventError("Invalid event data")
    if not isinstance(event_type, str):
        event_type = ""
    return SubscriptionEvent(
        type=event_type,
        account_id=account_id,
        expiration_at_ms=_parse_expiration(event.get("expiration_at_ms")),
    )


async def apply_subscription_event(
    event: SubscriptionEvent,
    *,
    store: AccountStore,
    notifier: Notifier,
) -> None:
    # Runs after the acknowledgement is sent; failures are logged and never surfaced.
    try:
        await _apply(event, store=store, notifier=notifier)
    except Exception as exc:  # noqa: BLE001 - the provider already received its acknowledgement
        increment_counter("webhook_apply_failed_total")
        logger.error(
            "subscription_event_failed type=%s account_id=%s",
            event.type,
            event.account_id,
            exc_info=exc,
        )


async def _apply(event: SubscriptionEvent, *, store: AccountStore, notifier: Notifier) -> None:
    if event.type in GRANT_EVENTS:
        updated = await store.set_subscription(event.account_id, tier=TIER_PRO, expiry=event.expiry)
    elif event.type in REVOKE_EVENTS:
        updated = await store.set_subscription(event.account_id, tier=TIER_FREE, expiry=None)
    elif event.type == BILLING_ISSUE_EVENT:
        await notifier.deliver(event.account_id, BILLING_ISSUE_MESSAGE)
        logger.info("subscription_billing_issue account_id=%s", event.account_id)
        return
    else:
        logger.info("subscription_event_ignored type=%s account_id=%s", event.type, event.account_id)
        return

    increment_counter("webhook_events_applied_total")
    if not updated:
        logger.warning(
            "subscription_event_unknown_account type=%s account_id=%s",
            event.type,
            event.account_id,
        )
        return
    logger.info(
        "subscription_updated type=%s account_id=%s expiry_ms=%s",
        event.type,
        event.account_id,
        event.expiration_at_ms,
    )

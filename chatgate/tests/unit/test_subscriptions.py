from __future__ import annotations

from datetime import datetime, timezone

import pytest

from chatgate.core.errors import MalformedEventError, WebhookUnauthorizedError
from chatgate.services.notifications import Notifier
from chatgate.services.subscriptions import (
    BILLING_ISSUE_MESSAGE,
    SubscriptionEvent,
    apply_subscription_event,
    parse_subscription_event,
    verify_webhook_authorization,
)
from chatgate.tests.utils.fakes import RecordingPushSender


def test_authorization_disabled_without_secret() -> None:
    verify_webhook_authorization(None, None)
    verify_webhook_authorization("anything", "")
    verify_webhook_authorization(None, "placeholder_webhook_secret")


def test_authorization_requires_exact_bearer_secret() -> None:
    verify_webhook_authorization("Bearer s3cret", "s3cret")
    for header in (None, "", "Bearer wrong", "s3cret", "bearer s3cret"):
        with pytest.raises(WebhookUnauthorizedError):
            verify_webhook_authorization(header, "s3cret")


def test_parse_event_with_expiry() -> None:
    event = parse_subscription_event(
        {"event": {"type": "RENEWAL", "app_user_id": "acct-1", "expiration_at_ms": 1798761600000}}
    )
    assert event.type == "RENEWAL"
    assert event.account_id == "acct-1"
    assert event.expiry == datetime(2027, 1, 1, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "payload",
    [
        None,
        [],
        {},
        {"event": None},
        {"event": {"type": "RENEWAL"}},
        {"event": {"type": "RENEWAL", "app_user_id": ""}},
        {"event": {"type": "RENEWAL", "app_user_id": "acct-1", "expiration_at_ms": "soon"}},
        {"event": {"type": "RENEWAL", "app_user_id": "acct-1", "expiration_at_ms": float("inf")}},
        {"event": {"type": "RENEWAL", "app_user_id": "acct-1", "expiration_at_ms": float("nan")}},
        {"event": {"type": "RENEWAL", "app_user_id": "acct-1", "expiration_at_ms": 10**30}},
        {"event": {"type": "RENEWAL", "app_user_id": "acct-1", "expiration_at_ms": -1e300}},
    ],
)
def test_parse_rejects_malformed_payloads(payload) -> None:
    with pytest.raises(MalformedEventError):
        parse_subscription_event(payload)


def test_parse_tolerates_missing_type() -> None:
    event = parse_subscription_event({"event": {"app_user_id": "acct-1"}})
    assert event.type == ""
    assert event.expiry is None


@pytest.mark.asyncio
@pytest.mark.parametrize("event_type", ["INITIAL_PURCHASE", "RENEWAL", "PRODUCT_CHANGE"])
async def test_grant_events_set_pro_with_expiry(account_store, event_type: str) -> None:
    await account_store.create("acct-1")
    notifier = Notifier(store=account_store, sender=RecordingPushSender())
    event = SubscriptionEvent(type=event_type, account_id="acct-1", expiration_at_ms=1798761600000)

    await apply_subscription_event(event, store=account_store, notifier=notifier)

    record = await account_store.get("acct-1")
    assert record.subscription_tier == "pro"
    assert record.subscription_expiry == datetime(2027, 1, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_grant_without_expiry_clears_expiry(account_store) -> None:
    await account_store.create(
        "acct-1",
        subscription_tier="pro",
        subscription_expiry=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    notifier = Notifier(store=account_store, sender=RecordingPushSender())

    await apply_subscription_event(
        SubscriptionEvent(type="PRODUCT_CHANGE", account_id="acct-1"),
        store=account_store,
        notifier=notifier,
    )

    record = await account_store.get("acct-1")
    assert record.subscription_tier == "pro"
    assert record.subscription_expiry is None


@pytest.mark.asyncio
@pytest.mark.parametrize("event_type", ["CANCELLATION", "EXPIRATION"])
async def test_revoke_events_set_free(account_store, event_type: str) -> None:
    await account_store.create(
        "acct-1",
        subscription_tier="pro",
        subscription_expiry=datetime(2027, 1, 1, tzinfo=timezone.utc),
        pro_messages_used_this_month=42,
    )
    notifier = Notifier(store=account_store, sender=RecordingPushSender())

    await apply_subscription_event(
        SubscriptionEvent(type=event_type, account_id="acct-1"),
        store=account_store,
        notifier=notifier,
    )

    record = await account_store.get("acct-1")
    assert record.subscription_tier == "free"
    assert record.subscription_expiry is None
    # Usage is left alone; the next reset or purchase handles it.
    assert record.pro_messages_used_this_month == 42


@pytest.mark.asyncio
async def test_billing_issue_notifies_without_mutation(account_store) -> None:
    await account_store.create("acct-1", subscription_tier="pro", push_token="device-1")
    sender = RecordingPushSender()
    notifier = Notifier(store=account_store, sender=sender)

    await apply_subscription_event(
        SubscriptionEvent(type="BILLING_ISSUE", account_id="acct-1"),
        store=account_store,
        notifier=notifier,
    )

    assert sender.bodies == [BILLING_ISSUE_MESSAGE]
    assert (await account_store.get("acct-1")).subscription_tier == "pro"


@pytest.mark.asyncio
async def test_unknown_event_is_ignored(account_store) -> None:
    await account_store.create("acct-1")
    sender = RecordingPushSender()
    notifier = Notifier(store=account_store, sender=sender)

    await apply_subscription_event(
        SubscriptionEvent(type="SUBSCRIBER_ALIAS", account_id="acct-1"),
        store=account_store,
        notifier=notifier,
    )

    assert (await account_store.get("acct-1")).subscription_tier == "free"
    assert sender.sent == []


@pytest.mark.asyncio
async def test_store_failures_are_logged_not_raised(account_store) -> None:
    class _BrokenStore:
        async def set_subscription(self, *_args, **_kwargs):
            raise RuntimeError("database unavailable")

    notifier = Notifier(store=account_store, sender=RecordingPushSender())
    await apply_subscription_event(
        SubscriptionEvent(type="RENEWAL", account_id="acct-1"),
        store=_BrokenStore(),
        notifier=notifier,
    )

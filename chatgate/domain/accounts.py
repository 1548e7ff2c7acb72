from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from chatgate.domain.models import Account


TIER_FREE = "free"
TIER_PRO = "pro"
SUBSCRIPTION_TIERS = frozenset({TIER_FREE, TIER_PRO})


@dataclass(frozen=True)
class AccountRecord:
    # Read-only view of an account row; quota decisions never touch ORM objects.
    account_id: str
    free_messages_remaining: Any
    subscription_tier: str
    subscription_expiry: datetime | None
    pro_messages_used_this_month: Any
    push_token: str | None


@dataclass(frozen=True)
class CounterOp:
    # One atomic mutation of a usage counter: either add `delta` or overwrite with `value`.
    field: str
    delta: int | None = None
    value: int | None = None


def record_from_row(row: Account) -> AccountRecord:
    return AccountRecord(
        account_id=row.id,
        free_messages_remaining=row.free_messages_remaining,
        subscription_tier=row.subscription_tier,
        subscription_expiry=_as_utc(row.subscription_expiry),
        pro_messages_used_this_month=row.pro_messages_used_this_month,
        push_token=row.push_token,
    )


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on round-trip; stored values are always UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)

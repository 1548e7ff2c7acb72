from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import math
from typing import Any

from chatgate.core.config import Settings, get_settings
from chatgate.domain.accounts import TIER_PRO, AccountRecord, CounterOp


FREE_COUNTER_FIELD = "free_messages_remaining"
PRO_COUNTER_FIELD = "pro_messages_used_this_month"

REASON_FREE_EXHAUSTED = "Free messages exhausted. Add your own API key or subscribe to Pro."
REASON_PRO_REQUIRED = "Pro subscription required."
REASON_PRO_EXPIRED = "Pro subscription expired."
REASON_PRO_EXHAUSTED = "Pro messages used up for this month. They reset on the 1st."


@dataclass(frozen=True)
class QuotaLimits:
    # Fixed quota parameters; loaded from settings so operators can tune them per environment.
    free_reset_value: int = 99
    free_warning_threshold: int = 10
    pro_monthly_limit: int = 500
    pro_warning_threshold: int = 450


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    reason: str | None = None


_ALLOW = QuotaDecision(allowed=True)
_DEFAULT_LIMITS = QuotaLimits()


def load_quota_limits(settings: Settings | None = None) -> QuotaLimits:
    settings = settings or get_settings()
    return QuotaLimits(
        free_reset_value=settings.free_reset_value,
        free_warning_threshold=settings.free_warning_threshold,
        pro_monthly_limit=settings.pro_monthly_limit,
        pro_warning_threshold=settings.pro_warning_threshold,
    )


def is_valid_counter(value: Any) -> bool:
    # Counters are whole numbers; None, NaN, strings and booleans count as corrupt.
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    if isinstance(value, float):
        return math.isfinite(value) and value.is_integer()
    return False


def authorize_free(record: AccountRecord | None) -> QuotaDecision:
    # A corrupt counter is not "<= 0", so it is allowed and healed at settlement.
    if record is None:
        return QuotaDecision(allowed=False, reason=REASON_FREE_EXHAUSTED)
    remaining = record.free_messages_remaining
    if is_valid_counter(remaining) and remaining <= 0:
        return QuotaDecision(allowed=False, reason=REASON_FREE_EXHAUSTED)
    return _ALLOW


def authorize_pro(
    record: AccountRecord | None,
    now: datetime,
    limits: QuotaLimits = _DEFAULT_LIMITS,
) -> QuotaDecision:
    if record is None or record.subscription_tier != TIER_PRO:
        return QuotaDecision(allowed=False, reason=REASON_PRO_REQUIRED)
    # Tier may still read "pro" after expiry until the provider's expiration event lands.
    if record.subscription_expiry is not None and record.subscription_expiry < now:
        return QuotaDecision(allowed=False, reason=REASON_PRO_EXPIRED)
    used = record.pro_messages_used_this_month
    if is_valid_counter(used) and used >= limits.pro_monthly_limit:
        return QuotaDecision(allowed=False, reason=REASON_PRO_EXHAUSTED)
    return _ALLOW


def settle_free(record: AccountRecord, limits: QuotaLimits = _DEFAULT_LIMITS) -> CounterOp:
    # Decide from the value read at authorization time, not a fresh read.
    if not is_valid_counter(record.free_messages_remaining):
        return CounterOp(field=FREE_COUNTER_FIELD, value=limits.free_reset_value)
    return CounterOp(field=FREE_COUNTER_FIELD, delta=-1)


def settle_pro(record: AccountRecord) -> CounterOp:
    # Unconditional: a request authorized from a stale read still counts once.
    _ = record
    return CounterOp(field=PRO_COUNTER_FIELD, delta=1)


def free_threshold_message(remaining: int | None, limits: QuotaLimits = _DEFAULT_LIMITS) -> str | None:
    # Edge-triggered: only the exact post-settlement value fires.
    if remaining == limits.free_warning_threshold:
        return f"You have {limits.free_warning_threshold} free messages left"
    if remaining == 0:
        return "Free messages used up. Add your own API key or go Pro."
    return None


def pro_threshold_message(used: int | None, limits: QuotaLimits = _DEFAULT_LIMITS) -> str | None:
    if used == limits.pro_warning_threshold:
        return (
            f"You've used {limits.pro_warning_threshold} of {limits.pro_monthly_limit} "
            "Pro messages this month"
        )
    if used == limits.pro_monthly_limit:
        return "Pro messages used up for this month. They reset on the 1st."
    return None


def pro_refresh_message(limits: QuotaLimits = _DEFAULT_LIMITS) -> str:
    return f"Your {limits.pro_monthly_limit} Pro messages have been refreshed!"


def select_free_model(requested: str | None, default_model: str) -> str:
    return requested or default_model


def select_pro_model(requested: str | None, allowed_models: list[str], default_model: str) -> str:
    # Unknown models fall back to the default instead of failing the request.
    if requested and requested in allowed_models:
        return requested
    return default_model

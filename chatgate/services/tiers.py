from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from chatgate.core.config import Settings, get_settings, split_csv
from chatgate.core.errors import ProviderConfigError
from chatgate.domain.accounts import AccountRecord, CounterOp
from chatgate.services import quota
from chatgate.services.quota import QuotaDecision, QuotaLimits


TIER_NAME_FREE = "free"
TIER_NAME_PRO = "pro"


@dataclass(frozen=True)
class TierPolicy:
    """Everything that differs between the free and pro proxy paths."""

    name: str
    upstream_url: str
    api_key: str | None
    max_tokens: int
    temperature: float | None
    system_directive: str | None
    authorize: Callable[[AccountRecord | None, datetime], QuotaDecision]
    settle: Callable[[AccountRecord], CounterOp]
    threshold_message: Callable[[int | None], str | None]
    select_model: Callable[[str | None], str]
    extra_headers: dict[str, str] = field(default_factory=dict)

    def upstream_headers(self) -> dict[str, str]:
        if not self.api_key:
            raise ProviderConfigError(f"Upstream API key for the {self.name} tier is not configured")
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        headers.update(self.extra_headers)
        return headers

    def build_upstream_body(self, messages: list[dict[str, Any]], requested_model: str | None) -> dict[str, Any]:
        # The system directive is prepended, never merged into caller messages.
        upstream_messages = list(messages)
        if self.system_directive:
            upstream_messages.insert(0, {"role": "system", "content": self.system_directive})
        body: dict[str, Any] = {
            "model": self.select_model(requested_model),
            "messages": upstream_messages,
            "stream": True,
            "max_tokens": self.max_tokens,
        }
        if self.temperature is not None:
            body["temperature"] = self.temperature
        return body


def free_tier_policy(settings: Settings | None = None) -> TierPolicy:
    settings = settings or get_settings()
    limits = quota.load_quota_limits(settings)
    default_model = settings.free_default_model
    return TierPolicy(
        name=TIER_NAME_FREE,
        upstream_url=settings.free_upstream_url,
        api_key=settings.free_upstream_api_key,
        max_tokens=settings.free_max_tokens,
        temperature=settings.free_temperature,
        system_directive=settings.free_system_directive or None,
        authorize=lambda record, _now: quota.authorize_free(record),
        settle=lambda record: quota.settle_free(record, limits),
        threshold_message=lambda value: quota.free_threshold_message(value, limits),
        select_model=lambda requested: quota.select_free_model(requested, default_model),
    )


def pro_tier_policy(settings: Settings | None = None) -> TierPolicy:
    settings = settings or get_settings()
    limits: QuotaLimits = quota.load_quota_limits(settings)
    default_model = settings.pro_default_model
    allowed_models = split_csv(settings.pro_allowed_models)
    extra_headers: dict[str, str] = {}
    if settings.pro_upstream_referer:
        extra_headers["HTTP-Referer"] = settings.pro_upstream_referer
    if settings.pro_upstream_title:
        extra_headers["X-Title"] = settings.pro_upstream_title
    return TierPolicy(
        name=TIER_NAME_PRO,
        upstream_url=settings.pro_upstream_url,
        api_key=settings.pro_upstream_api_key,
        max_tokens=settings.pro_max_tokens,
        temperature=settings.pro_temperature,
        system_directive=None,
        authorize=lambda record, now: quota.authorize_pro(record, now, limits),
        settle=quota.settle_pro,
        threshold_message=lambda value: quota.pro_threshold_message(value, limits),
        select_model=lambda requested: quota.select_pro_model(requested, allowed_models, default_model),
        extra_headers=extra_headers,
    )

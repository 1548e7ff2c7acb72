from __future__ import annotations

from chatgate.core.config import get_settings
from chatgate.core.errors import ProviderConfigError
from chatgate.providers.push.fcm import FcmPushSender
from chatgate.providers.push.noop import NoopPushSender


def get_push_sender():
    settings = get_settings()
    provider = (settings.push_provider or "noop").lower()

    if provider == "noop":
        return NoopPushSender()
    if provider == "fcm":
        return FcmPushSender()

    raise ProviderConfigError(f"Unsupported push provider: {provider}")

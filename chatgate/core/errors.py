from __future__ import annotations


class ChatGateError(Exception):
    """Base error for chatgate."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class UnauthenticatedError(ChatGateError):
    """Missing or invalid bearer credential."""

    status_code = 401
    code = "AUTH_UNAUTHORIZED"


class QuotaDeniedError(ChatGateError):
    """Quota exhausted or subscription missing/expired."""

    status_code = 403
    code = "QUOTA_DENIED"


class InvalidRequestError(ChatGateError):
    """Chat request body failed validation."""

    status_code = 400
    code = "BAD_REQUEST"


class ProviderConfigError(ChatGateError):
    """Missing or invalid upstream provider configuration."""

    code = "PROVIDER_CONFIG_MISSING"


class UpstreamError(ChatGateError):
    """Upstream provider returned a non-success response."""

    code = "UPSTREAM_ERROR"

    def __init__(self, message: str, *, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamTimeoutError(ChatGateError):
    """Request lifecycle exceeded its deadline before streaming began."""

    status_code = 504
    code = "UPSTREAM_TIMEOUT"


class SettlementError(ChatGateError):
    """Post-stream counter update failed; logged only."""


class MalformedEventError(ChatGateError):
    """Subscription webhook payload is missing required fields."""

    status_code = 400
    code = "MALFORMED_EVENT"


class WebhookUnauthorizedError(ChatGateError):
    """Subscription webhook credential mismatch."""

    status_code = 401
    code = "WEBHOOK_UNAUTHORIZED"


class BulkUpdateError(ChatGateError):
    """Monthly reset bulk write failed."""


class PushDeliveryError(ChatGateError):
    """Push provider rejected or failed a notification."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
from typing import Awaitable, Callable, TypeVar

import httpx

from chatgate.core.config import get_settings
from chatgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient_http_error(exc: Exception) -> bool:
    # Connection drops, timeouts and provider-side 5xx are worth another attempt.
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int
    timeout_s: float
    backoff_s: float

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        settings = get_settings()
        return cls(
            attempts=max(settings.ext_retry_max_attempts, 1),
            timeout_s=settings.ext_call_timeout_ms / 1000.0,
            backoff_s=settings.ext_retry_backoff_ms / 1000.0,
        )


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    integration: str,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] = is_transient_http_error,
) -> T:
    """Run `func` under a per-attempt timeout, retrying transient failures.

    Backoff doubles per attempt with jitter. The last failure is re-raised.
    """
    policy = policy or RetryPolicy.from_settings()
    for attempt in range(1, policy.attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_s)
        except Exception as exc:  # noqa: BLE001 - re-raised unless another attempt is allowed
            if attempt >= policy.attempts or not retryable(exc):
                raise
            increment_counter(f"external_retries_{integration}_total")
            delay = policy.backoff_s * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)
            logger.info(
                "external_call_retry integration=%s attempt=%s error=%s delay_ms=%.0f",
                integration,
                attempt,
                type(exc).__name__,
                delay * 1000,
            )
            await asyncio.sleep(delay)
    raise RuntimeError("retry policy allows no attempts")

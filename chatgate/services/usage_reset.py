from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging

from chatgate.core.errors import BulkUpdateError
from chatgate.services.accounts import AccountStore
from chatgate.services.notifications import Notifier
from chatgate.services.quota import load_quota_limits, pro_refresh_message
from chatgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageResetResult:
    reset_count: int
    notified_count: int


async def run_monthly_usage_reset(*, store: AccountStore, notifier: Notifier) -> UsageResetResult:
    """Zero every pro account's monthly counter, then tell each affected account.

    The counter reset is one statement in one transaction, so it either lands for
    every pro account or for none. Notifications are independent and best-effort.
    """
    try:
        account_ids = await store.reset_pro_usage()
    except Exception as exc:
        increment_counter("usage_reset_failed_total")
        logger.error("usage_reset_failed", exc_info=exc)
        raise BulkUpdateError("Monthly usage reset failed") from exc

    logger.info("usage_reset_applied count=%s", len(account_ids))
    increment_counter("usage_reset_accounts_total", len(account_ids))
    if not account_ids:
        return UsageResetResult(reset_count=0, notified_count=0)

    message = pro_refresh_message(load_quota_limits())
    delivered = await asyncio.gather(
        *(notifier.deliver(account_id, message) for account_id in account_ids)
    )
    notified = sum(1 for ok in delivered if ok)
    logger.info("usage_reset_notified sent=%s total=%s", notified, len(account_ids))
    return UsageResetResult(reset_count=len(account_ids), notified_count=notified)

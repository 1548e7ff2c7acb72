from __future__ import annotations

import asyncio
import sys

from chatgate.core.logging import configure_logging
from chatgate.persistence.db import dispose_engine
from chatgate.services.accounts import get_account_store
from chatgate.services.notifications import get_notifier
from chatgate.services.usage_reset import run_monthly_usage_reset


async def _main() -> int:
    # One-shot entry point for external schedulers (cron, Cloud Scheduler, k8s CronJob).
    configure_logging()
    try:
        result = await run_monthly_usage_reset(store=get_account_store(), notifier=get_notifier())
    finally:
        await dispose_engine()
    print(f"reset_count={result.reset_count} notified_count={result.notified_count}")
    return 0


def main() -> int:
    try:
        return asyncio.run(_main())
    except Exception as exc:  # noqa: BLE001 - exit non-zero so the scheduler records the failure
        print(f"monthly_usage_reset failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

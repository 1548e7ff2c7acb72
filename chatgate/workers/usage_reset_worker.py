from __future__ import annotations

from datetime import timezone as dt_timezone
import logging

from arq import cron
from arq.connections import RedisSettings

from chatgate.core.config import get_settings
from chatgate.core.logging import configure_logging
from chatgate.persistence.db import dispose_engine
from chatgate.services.accounts import get_account_store
from chatgate.services.notifications import get_notifier
from chatgate.services.usage_reset import run_monthly_usage_reset


logger = logging.getLogger(__name__)


async def monthly_usage_reset(ctx) -> dict[str, int]:
    # Zero pro usage counters and send the refresh notification to each account.
    result = await run_monthly_usage_reset(store=get_account_store(), notifier=get_notifier())
    logger.info(
        "usage_reset_job_done job_id=%s reset=%s notified=%s",
        ctx.get("job_id"),
        result.reset_count,
        result.notified_count,
    )
    return {"reset_count": result.reset_count, "notified_count": result.notified_count}


async def _startup(ctx) -> None:
    configure_logging()


async def _shutdown(ctx) -> None:
    # Release pooled connections so the worker exits cleanly.
    await get_notifier().aclose()
    await dispose_engine()


class WorkerSettings:
    # Keep worker settings as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.worker_queue_name
    max_tries = 1
    timezone = dt_timezone.utc
    cron_jobs = [
        cron(
            monthly_usage_reset,
            day=settings.usage_reset_day,
            hour=settings.usage_reset_hour,
            minute=settings.usage_reset_minute,
            second=0,
            unique=True,
        )
    ]
    on_startup = _startup
    on_shutdown = _shutdown

from __future__ import annotations

from datetime import timezone

import pytest

from chatgate.workers.usage_reset_worker import WorkerSettings, monthly_usage_reset


def test_cron_runs_monthly_in_utc() -> None:
    (job,) = WorkerSettings.cron_jobs
    assert job.coroutine is monthly_usage_reset
    assert (job.day, job.hour, job.minute, job.second) == (1, 0, 0, 0)
    assert job.unique is True
    assert WorkerSettings.timezone is timezone.utc


@pytest.mark.asyncio
async def test_job_resets_pro_usage(account_store) -> None:
    await account_store.create("pro-1", subscription_tier="pro", pro_messages_used_this_month=321)

    result = await monthly_usage_reset({"job_id": "cron:monthly_usage_reset"})

    assert result == {"reset_count": 1, "notified_count": 0}
    assert (await account_store.get("pro-1")).pro_messages_used_this_month == 0

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from chatgate.apps.api.deps import require_ops_token
from chatgate.apps.api.openapi import OPS_ERROR_RESPONSES
from chatgate.services.telemetry import (
    availability,
    counters_snapshot,
    external_success_rate,
    p95_latency,
    stream_duration_stats,
)


router = APIRouter(prefix="/ops", tags=["ops"], responses=OPS_ERROR_RESPONSES)

_METRIC_PREFIX = "chatgate_"


@router.get("/metrics", response_model=dict[str, Any], dependencies=[Depends(require_ops_token)])
async def ops_metrics() -> dict[str, Any]:
    # Provide JSON metrics for dashboards when Prometheus scraping is unavailable.
    counters = {f"{_METRIC_PREFIX}{name}": value for name, value in sorted(counters_snapshot().items())}
    return {
        "counters": counters,
        "availability": {"5m": availability(300), "1h": availability(3600)},
        "latency_ms": {
            "p95_chat_free": p95_latency(300, path_prefix="/v1/chat/free"),
            "p95_chat_pro": p95_latency(300, path_prefix="/v1/chat/pro"),
            "p95_all": p95_latency(300),
        },
        "external_success_pct": external_success_rate(3600),
        "sse_stream_duration_ms": stream_duration_stats(),
    }

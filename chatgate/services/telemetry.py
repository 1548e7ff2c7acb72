from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    status_code: int
    latency_ms: float


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_stream_samples: Deque[float] = deque(maxlen=5000)
_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Track request latency and status; streamed responses record time-to-first-byte here.
    _request_samples.append(
        RequestSample(
            ts=time.time(),
            path=path,
            status_code=status_code,
            latency_ms=latency_ms,
        )
    )


def record_stream_duration(duration_ms: float) -> None:
    # Track relay durations for completed and aborted streams.
    _stream_samples.append(duration_ms)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture external call latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def _window_samples(window_s: int) -> list[RequestSample]:
    cutoff = time.time() - window_s
    return [sample for sample in _request_samples if sample.ts >= cutoff]


def availability(window_s: int) -> float | None:
    # Calculate availability as % of non-5xx requests over the window.
    samples = _window_samples(window_s)
    if not samples:
        return None
    total = len(samples)
    failures = sum(1 for sample in samples if sample.status_code >= 500)
    return ((total - failures) / total) * 100.0


def p95_latency(window_s: int, *, path_prefix: str | None = None) -> float | None:
    samples = _window_samples(window_s)
    if path_prefix:
        samples = [sample for sample in samples if sample.path.startswith(path_prefix)]
    if not samples:
        return None
    latencies = sorted(sample.latency_ms for sample in samples)
    idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
    return latencies[idx]


def external_success_rate(window_s: int) -> dict[str, float]:
    # Share of successful calls per integration; upstream providers and push are tracked here.
    cutoff = time.time() - window_s
    totals: dict[str, list[int]] = defaultdict(lambda: [0, 0])
    for sample in _external_samples:
        if sample.ts < cutoff:
            continue
        bucket = totals[sample.integration]
        bucket[0] += 1
        if sample.success:
            bucket[1] += 1
    return {name: (ok / total) * 100.0 for name, (total, ok) in totals.items()}


def stream_duration_stats() -> dict[str, float | None]:
    if not _stream_samples:
        return {"p95": None, "max": None}
    latencies = sorted(_stream_samples)
    idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
    return {"p95": latencies[idx], "max": latencies[-1]}


def counters_snapshot() -> dict[str, int]:
    # Return a copy of all counters for metrics reporting.
    return dict(_counters)


def reset_telemetry() -> None:
    # Clear in-process samples between tests.
    _request_samples.clear()
    _stream_samples.clear()
    _external_samples.clear()
    _counters.clear()

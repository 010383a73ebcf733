from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque, Iterable

# Process-local metrics for the ops endpoint; nothing here is persisted.
_WINDOW = 10000


@dataclass(frozen=True)
class CallSample:
    at: float
    integration: str
    latency_ms: float
    ok: bool


_calls: Deque[CallSample] = deque(maxlen=_WINDOW)
_request_latencies: Deque[float] = deque(maxlen=_WINDOW)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def _p95(values: Iterable[float]) -> float | None:
    ordered = sorted(values)
    if not ordered:
        return None
    return ordered[max(0, math.ceil(0.95 * len(ordered)) - 1)]


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # RPC methods and yield venues report here, keyed like "solana.getTransaction".
    _calls.append(CallSample(at=time.time(), integration=integration, latency_ms=latency_ms, ok=success))


def record_request(*, status_code: int, latency_ms: float) -> None:
    # Counted by status class only.
    _counters[f"http_requests_total.{status_code // 100}xx"] += 1
    _request_latencies.append(latency_ms)


def request_latency_p95() -> float | None:
    return _p95(_request_latencies)


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = float(value)


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float | None]]:
    since = time.time() - window_s
    grouped: dict[str, list[CallSample]] = defaultdict(list)
    for sample in _calls:
        if sample.at >= since:
            grouped[sample.integration].append(sample)
    return {
        integration: {
            "calls": float(len(samples)),
            "p95": _p95(sample.latency_ms for sample in samples),
            "max": max(sample.latency_ms for sample in samples),
            "failures": float(sum(1 for sample in samples if not sample.ok)),
        }
        for integration, samples in grouped.items()
    }


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def snapshot(window_s: int = 300) -> dict[str, object]:
    return {
        "counters": counters_snapshot(),
        "gauges": gauges_snapshot(),
        "external": external_latency_by_integration(window_s),
        "request_latency_p95_ms": request_latency_p95(),
    }


def reset() -> None:
    # Test hook; production processes never clear telemetry.
    _calls.clear()
    _request_latencies.clear()
    _counters.clear()
    _gauges.clear()

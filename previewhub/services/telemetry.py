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
    route_class: str
    status_code: int
    latency_ms: float


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_request(*, path: str, route_class: str, status_code: int, latency_ms: float) -> None:
    _request_samples.append(
        RequestSample(
            ts=time.time(),
            path=path,
            route_class=route_class,
            status_code=status_code,
            latency_ms=latency_ms,
        )
    )


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture compute/storage call latency and outcomes.
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


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def _p95(values: list[float]) -> float | None:
    if not values:
        return None
    values = sorted(values)
    idx = max(0, math.ceil(0.95 * len(values)) - 1)
    return values[idx]


def request_latency_by_class(window_s: int) -> dict[str, dict[str, float | None]]:
    # Aggregate p95/max by route class for the ops metrics endpoint.
    cutoff = time.time() - window_s
    grouped: dict[str, list[float]] = defaultdict(list)
    for sample in _request_samples:
        if sample.ts >= cutoff:
            grouped[sample.route_class].append(sample.latency_ms)
    return {
        route_class: {"p95": _p95(latencies), "max": max(latencies)}
        for route_class, latencies in grouped.items()
    }


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float | None]]:
    cutoff = time.time() - window_s
    grouped: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts >= cutoff:
            grouped[sample.integration].append(sample)
    result: dict[str, dict[str, float | None]] = {}
    for integration, samples in grouped.items():
        latencies = [sample.latency_ms for sample in samples]
        failures = sum(1 for sample in samples if not sample.success)
        result[integration] = {
            "p95": _p95(latencies),
            "max": max(latencies),
            "error_rate": failures / len(samples),
        }
    return result


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Tests assert on counters, so they need a clean slate.
    _request_samples.clear()
    _external_samples.clear()
    _counters.clear()
    _gauges.clear()

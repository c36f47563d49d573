"""Prometheus metrics helpers for the speech coordinator and conversation loop."""
from __future__ import annotations

import time
from typing import Literal

from prometheus_client import Counter, Gauge, Histogram  # type: ignore

# Gauges
VOICE_ACTIVE_SESSIONS = Gauge(
    "voice_active_sessions",
    "Number of voice conversation sessions currently connected",
)

# Counters
VOICE_OPERATION_FAILURES = Counter(
    "voice_operation_failures_total",
    "Speech engine operations that did not complete successfully",
    labelnames=("operation", "reason"),
)
VOICE_WATCHDOG_RECOVERIES = Counter(
    "voice_watchdog_recoveries_total",
    "Forced resets of the speech engine after a stuck operation",
    labelnames=("operation",),
)
VOICE_SILENCE_FINALIZATIONS = Counter(
    "voice_silence_finalizations_total",
    "Utterances finalized by the silence detector instead of the engine",
)
VOICE_RESPONSE_STREAMS = Counter(
    "voice_response_streams_total",
    "Assistant response streams relayed to speech",
    labelnames=("result",),
)

# Histograms
VOICE_OPERATION_LATENCY = Histogram(
    "voice_operation_latency_milliseconds",
    "Latency of speech engine operations issued by the coordinator",
    labelnames=("operation",),
    buckets=(10, 50, 100, 250, 500, 1000, 2000, 3000, 5000),
)


def operation_started() -> float:
    return time.perf_counter()


def operation_completed(operation: str, started_at: float) -> None:
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    VOICE_OPERATION_LATENCY.labels(operation=operation).observe(elapsed_ms)


def operation_failed(operation: str, started_at: float, *, reason: str) -> None:
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    VOICE_OPERATION_LATENCY.labels(operation=operation).observe(elapsed_ms)
    VOICE_OPERATION_FAILURES.labels(operation=operation, reason=reason).inc()


def watchdog_recovered(operation: str) -> None:
    VOICE_WATCHDOG_RECOVERIES.labels(operation=operation).inc()


def silence_finalized() -> None:
    VOICE_SILENCE_FINALIZATIONS.inc()


def response_stream_finished(result: Literal["completed", "failed", "abandoned"]) -> None:
    VOICE_RESPONSE_STREAMS.labels(result=result).inc()


def session_opened() -> None:
    VOICE_ACTIVE_SESSIONS.inc()


def session_closed() -> None:
    VOICE_ACTIVE_SESSIONS.dec()

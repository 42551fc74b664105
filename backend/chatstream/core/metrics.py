"""Prometheus metric helpers."""
from __future__ import annotations

from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "chat_requests_total",
    "HTTP requests processed by the API",
    ("method", "path", "status"),
)

REQUEST_LATENCY = Histogram(
    "chat_request_latency_seconds",
    "Latency of HTTP requests processed by the API",
    ("method", "path"),
    buckets=(
        0.005,
        0.01,
        0.025,
        0.05,
        0.1,
        0.25,
        0.5,
        1.0,
        2.5,
        5.0,
        10.0,
    ),
)

STREAM_RESULTS = Counter(
    "chat_stream_results_total",
    "Outcomes of streamed generations",
    ("result",),
)

PERSISTENCE_FAILURES = Counter(
    "chat_persistence_failures_total",
    "Cache or durable store operations that failed",
    ("store", "operation"),
)


def record_request(method: str, path: str, status_code: int, duration: float) -> None:
    """Record counters and histograms for a processed HTTP request."""

    REQUEST_COUNT.labels(method, path, str(status_code)).inc()
    REQUEST_LATENCY.labels(method, path).observe(duration)


def record_stream_result(result: str) -> None:
    """Increment the stream outcome counter (completed, cancelled, failed, rejected)."""

    STREAM_RESULTS.labels(result).inc()


def record_persistence_failure(store: str, operation: str) -> None:
    PERSISTENCE_FAILURES.labels(store, operation).inc()

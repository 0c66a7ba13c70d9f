"""
Prometheus metrics for the tick pipeline.

Metrics are registered on the default prometheus_client registry. Call
sites use the small helper functions below instead of touching metric
objects directly, so label sets stay consistent across components.
"""

import time
from contextlib import contextmanager
from typing import Iterator

from prometheus_client import Counter, Gauge, Histogram

MESSAGES_PROCESSED = Counter(
    "tick_pipeline_messages_processed_total",
    "Messages processed, by component, stage and outcome",
    ["component", "stage", "status"],
)

ERRORS = Counter(
    "tick_pipeline_errors_total",
    "Errors by component, error type and severity",
    ["component", "error_type", "severity"],
)

RETRIES = Counter(
    "tick_pipeline_retries_total",
    "Retry attempts by component, operation and outcome",
    ["component", "operation", "status"],
)

VALIDATION_ERRORS = Counter(
    "tick_pipeline_validation_errors_total",
    "Validation failures by category",
    ["category"],
)

CONNECTIONS = Counter(
    "tick_pipeline_connections_total",
    "TCP connections by component and outcome",
    ["component", "status"],
)

ACTIVE_CONNECTIONS = Gauge(
    "tick_pipeline_active_connections",
    "Currently open TCP connections",
    ["component"],
)

QUEUE_DEPTH = Gauge(
    "tick_pipeline_queue_depth",
    "Records waiting in an in-process queue",
    ["component"],
)

OPERATION_LATENCY = Histogram(
    "tick_pipeline_operation_latency_seconds",
    "Latency of instrumented operations",
    ["component", "operation"],
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0),
)

TICK_LATENCY = Histogram(
    "tick_pipeline_tick_latency_ms",
    "Receipt time minus event timestamp in milliseconds",
    buckets=(-1000, 0, 5, 10, 50, 100, 500, 1000, 5000, 30000),
)


def record_message_processed(component: str, stage: str, status: str) -> None:
    MESSAGES_PROCESSED.labels(component=component, stage=stage, status=status).inc()


def record_error(component: str, error_type: str, severity: str = "error") -> None:
    ERRORS.labels(component=component, error_type=error_type, severity=severity).inc()


def record_retry(component: str, operation: str, status: str) -> None:
    RETRIES.labels(component=component, operation=operation, status=status).inc()


def record_validation_error(category: str) -> None:
    VALIDATION_ERRORS.labels(category=category).inc()


def record_connection(component: str, status: str) -> None:
    CONNECTIONS.labels(component=component, status=status).inc()


def set_active_connections(component: str, count: int) -> None:
    ACTIVE_CONNECTIONS.labels(component=component).set(count)


def set_queue_depth(component: str, depth: int) -> None:
    QUEUE_DEPTH.labels(component=component).set(depth)


def observe_tick_latency(latency_ms: float) -> None:
    TICK_LATENCY.observe(latency_ms)


@contextmanager
def track_latency(component: str, operation: str) -> Iterator[None]:
    """Time the wrapped block and record it in OPERATION_LATENCY."""
    start = time.perf_counter()
    try:
        yield
    finally:
        OPERATION_LATENCY.labels(component=component, operation=operation).observe(
            time.perf_counter() - start
        )

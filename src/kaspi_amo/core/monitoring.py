"""Prometheus metrics for the pipelines and the health server.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- track_batch(): Context manager timing one pipeline run
- record_order(): Per-order outcome counter
- set_health_gauges(): Gauges refreshed from persisted state
- get_metrics_response(): Prometheus text exposition for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# ── Pipeline Metrics ─────────────────────────────────────────────────────────

sync_orders_total = Counter(
    "sync_orders_total",
    "Orders handled by a pipeline, by outcome",
    ["pipeline", "outcome"],
)

sync_batches_total = Counter(
    "sync_batches_total",
    "Pipeline runs, by status",
    ["pipeline", "status"],
)

sync_batch_duration_seconds = Histogram(
    "sync_batch_duration_seconds",
    "Pipeline run duration in seconds",
    ["pipeline"],
    buckets=(0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 900.0),
)

external_api_errors_total = Counter(
    "external_api_errors_total",
    "External API failures after retries",
    ["service", "rate_limited"],
)

# ── State Gauges ─────────────────────────────────────────────────────────────

heartbeat_age_seconds = Gauge(
    "sync_heartbeat_age_seconds",
    "Seconds since the last successful poll run",
)

reconcile_lag_seconds = Gauge(
    "sync_reconcile_lag_seconds",
    "Seconds between now and the reconciliation watermark",
)

consecutive_failures = Gauge(
    "sync_consecutive_failures",
    "Current poll failure streak",
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """Records request count and duration per method/endpoint.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        endpoint = request.url.path
        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()
        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)
        return response


# ── Pipeline Helpers ─────────────────────────────────────────────────────────


@asynccontextmanager
async def track_batch(pipeline: str) -> AsyncGenerator[None, None]:
    """Time one pipeline run and count it as success or error.

    Usage:
        async with track_batch("poll"):
            ...
    """
    start_time = time.perf_counter()
    status = "success"
    try:
        yield
    except BaseException:
        status = "error"
        raise
    finally:
        sync_batch_duration_seconds.labels(pipeline=pipeline).observe(
            time.perf_counter() - start_time
        )
        sync_batches_total.labels(pipeline=pipeline, status=status).inc()


def record_order(pipeline: str, outcome: str) -> None:
    sync_orders_total.labels(pipeline=pipeline, outcome=outcome).inc()


def record_api_error(service: str, rate_limited: bool) -> None:
    external_api_errors_total.labels(
        service=service, rate_limited=str(rate_limited).lower()
    ).inc()


def set_health_gauges(
    heartbeat_age: float | None,
    reconcile_lag: float | None,
    failures: int,
) -> None:
    if heartbeat_age is not None:
        heartbeat_age_seconds.set(heartbeat_age)
    if reconcile_lag is not None:
        reconcile_lag_seconds.set(reconcile_lag)
    consecutive_failures.set(failures)


def get_metrics_response() -> Response:
    """Prometheus exposition of the default registry."""
    return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)

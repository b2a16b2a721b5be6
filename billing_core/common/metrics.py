"""Prometheus metrics definitions and FastAPI middleware for the billing core.

Exposes counters and histograms for every stage of the reconciliation flow:
billing-event recording (and its duplicate path), import-batch row outcomes,
unlock grants and access checks, customer conversions, and per-request HTTP
latency for the API adapter.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable

from fastapi import FastAPI, Request, Response
from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse

# --------------------------------------------------------------------------- #
# Counters                                                                     #
# --------------------------------------------------------------------------- #
billing_events_recorded_total = Counter(
    "billing_events_recorded_total",
    "Billing events handed to the event store, by source and outcome.",
    labelnames=["source", "outcome"],
)

import_rows_total = Counter(
    "import_rows_total",
    "Bulk-import rows processed, by outcome (accepted/rejected/duplicate).",
    labelnames=["outcome"],
)

import_batches_total = Counter(
    "import_batches_total",
    "Import batches that reached a terminal status.",
    labelnames=["status"],
)

unlock_grants_total = Counter(
    "unlock_grants_total",
    "Unlock grant attempts, by outcome (granted/already_granted).",
    labelnames=["outcome"],
)

access_checks_total = Counter(
    "access_checks_total",
    "Paywall access checks, by result.",
    labelnames=["granted"],
)

customer_conversions_total = Counter(
    "customer_conversions_total",
    "Purchases applied to the customer ledger, by outcome (first/repeat/already_applied).",
    labelnames=["outcome"],
)

# --------------------------------------------------------------------------- #
# Histograms                                                                   #
# --------------------------------------------------------------------------- #
processing_latency_seconds = Histogram(
    "processing_latency_seconds",
    "Latency of a reconciliation stage.",
    labelnames=["stage"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# --------------------------------------------------------------------------- #
# Gauges                                                                       #
# --------------------------------------------------------------------------- #
tenant_connections_open = Gauge(
    "tenant_connections_open",
    "Number of tenant database clients currently open.",
)

# --------------------------------------------------------------------------- #
# FastAPI Prometheus middleware                                                 #
# --------------------------------------------------------------------------- #
_http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests handled.",
    labelnames=["method", "endpoint", "status_code"],
)

_http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds.",
    labelnames=["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that records request count and latency."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        method = request.method
        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)
        start = time.perf_counter()
        response: Response = await call_next(request)
        elapsed = time.perf_counter() - start

        _http_requests_total.labels(
            method=method,
            endpoint=path,
            status_code=response.status_code,
        ).inc()
        _http_request_duration_seconds.labels(
            method=method,
            endpoint=path,
        ).observe(elapsed)
        return response


# --------------------------------------------------------------------------- #
# Metrics app factory                                                          #
# --------------------------------------------------------------------------- #
def get_metrics_app() -> FastAPI:
    """Return a minimal FastAPI application that serves ``/metrics``.

    Mounted by the billing API under ``/internal`` so Prometheus can scrape
    it without the route being part of the public schema.
    """
    app = FastAPI(title="Billing Core Metrics", docs_url=None, redoc_url=None)

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint() -> StarletteResponse:
        body = generate_latest(REGISTRY)
        return StarletteResponse(
            content=body,
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    return app

"""Prometheus metrics and Sentry integration.

Provides:
- Engine counters: ledger appends, rule executions, cascade aborts, dispatches
- analytics_generation_duration_seconds histogram
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- init_sentry(): Initialize Sentry with tenant-aware before_send callback
- get_metrics_response(): Prometheus exposition for the /metrics route
"""

from __future__ import annotations

import time

import sentry_sdk
from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "stageflow_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code", "tenant_id"],
)

http_request_duration_seconds = Histogram(
    "stageflow_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "tenant_id"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Engine Metrics ───────────────────────────────────────────────────────────

movements_appended_total = Counter(
    "stageflow_movements_appended_total",
    "Deal movements appended to the ledger",
    ["automated"],
)

rule_executions_total = Counter(
    "stageflow_rule_executions_total",
    "Automation rule executions by outcome",
    ["status"],
)

cascade_aborts_total = Counter(
    "stageflow_cascade_aborts_total",
    "Automated move chains aborted by the cascade limit",
)

dispatch_requests_total = Counter(
    "stageflow_dispatch_requests_total",
    "Side-effect dispatch requests by type and outcome",
    ["request_type", "status"],
)

scheduled_actions_total = Counter(
    "stageflow_scheduled_actions_total",
    "Delayed action items by lifecycle event",
    ["event"],
)

analytics_generation_duration_seconds = Histogram(
    "stageflow_analytics_generation_duration_seconds",
    "Time to compute a pipeline analytics report",
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Reads the tenant from the X-Tenant-ID header and records request count
    and duration per method/endpoint/tenant. Skips the /metrics endpoint
    itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        tenant_id = request.headers.get("X-Tenant-ID", "default")
        endpoint = request.url.path

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
            tenant_id=tenant_id,
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
            tenant_id=tenant_id,
        ).observe(duration)

        return response


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK with tenant tagging from the request scope.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Copy the tenant header into Sentry tags."""
        headers = event.get("request", {}).get("headers", {})
        tenant_id = headers.get("X-Tenant-ID") or headers.get("x-tenant-id")
        if tenant_id:
            event.setdefault("tags", {})["tenant_id"] = tenant_id
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=before_send,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )

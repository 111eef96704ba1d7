"""Prometheus metrics utilities for the API and the reconciliation worker."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable

from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware

REQUEST_LATENCY_SECONDS = Histogram(
    "http_request_latency_seconds",
    "Latency of HTTP requests in seconds.",
    labelnames=("method", "path"),
)
REQUEST_COUNTER = Counter(
    "http_requests_total",
    "Total number of HTTP requests processed.",
    labelnames=("method", "path", "status"),
)
REQUEST_ERROR_COUNTER = Counter(
    "http_request_errors_total",
    "Total number of HTTP requests that resulted in server errors.",
    labelnames=("method", "path", "status"),
)
BALLOT_TRANSITIONS = Counter(
    "ballot_transitions_total",
    "Ballot state transitions applied by the vote ledger.",
    labelnames=("transition",),
)
PENDING_APPROVALS_GAUGE = Gauge(
    "ballots_pending_approval",
    "Number of ballots waiting for an admin to review their payment proof.",
)
TALLY_RECONCILIATION_CORRECTIONS = Counter(
    "tally_reconciliation_corrections_total",
    "Candidate counters repaired by tally reconciliation.",
)


def _path_label(request: Request) -> str:
    """Full route template for the request, or the raw path when unmatched.

    Routes from included routers may report their path relative to the
    mount point; the missing leading segments are taken from the URL.
    """

    route = request.scope.get("route")
    template = getattr(route, "path", None)
    raw_path = request.url.path
    if not template:
        return raw_path
    raw_parts = raw_path.rstrip("/").split("/")
    template_parts = template.rstrip("/").split("/")
    missing = len(raw_parts) - len(template_parts)
    if missing < 0:
        return raw_path
    if missing:
        template = "/".join(raw_parts[: missing + 1]) + template
    if "{" not in template and template.rstrip("/") != raw_path.rstrip("/"):
        return raw_path
    return template


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware that records request metrics for Prometheus scraping."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:  # type: ignore[override]
        method = request.method
        path = request.url.path
        start_time = time.perf_counter()
        status = "500"

        try:
            response = await call_next(request)
            path = _path_label(request)
            status = str(response.status_code)
            if response.status_code >= 500:
                REQUEST_ERROR_COUNTER.labels(method=method, path=path, status=status).inc()
            return response
        except Exception:
            REQUEST_ERROR_COUNTER.labels(method=method, path=path, status="500").inc()
            raise
        finally:
            latency = time.perf_counter() - start_time
            REQUEST_LATENCY_SECONDS.labels(method=method, path=path).observe(latency)
            REQUEST_COUNTER.labels(method=method, path=path, status=status).inc()


metrics_router = APIRouter(tags=["observability"])


@metrics_router.get("/metrics", include_in_schema=False)
def metrics_endpoint() -> Response:
    """Expose Prometheus metrics for scraping."""
    payload = generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)


def record_transition(transition: str) -> None:
    BALLOT_TRANSITIONS.labels(transition=transition).inc()


def report_pending_approvals(depth: int | float) -> None:
    """Report how many ballots currently wait for review."""
    PENDING_APPROVALS_GAUGE.set(max(0.0, float(depth)))


__all__ = [
    "BALLOT_TRANSITIONS",
    "PENDING_APPROVALS_GAUGE",
    "PrometheusMiddleware",
    "REQUEST_COUNTER",
    "REQUEST_ERROR_COUNTER",
    "REQUEST_LATENCY_SECONDS",
    "TALLY_RECONCILIATION_CORRECTIONS",
    "metrics_endpoint",
    "metrics_router",
    "record_transition",
    "report_pending_approvals",
]

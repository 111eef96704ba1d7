"""Observability utilities."""

from .audit import AuditLogRecord, AuditMiddleware
from .metrics import (
    BALLOT_TRANSITIONS,
    PENDING_APPROVALS_GAUGE,
    REQUEST_COUNTER,
    REQUEST_ERROR_COUNTER,
    REQUEST_LATENCY_SECONDS,
    TALLY_RECONCILIATION_CORRECTIONS,
    PrometheusMiddleware,
    metrics_router,
    record_transition,
    report_pending_approvals,
)
from .tracing import (
    initialise_tracing,
    inject_traceparent,
    instrument_fastapi_app,
    instrument_sqlalchemy_engine,
    span_from_traceparent,
    workflow_span,
)

__all__ = [
    "AuditLogRecord",
    "AuditMiddleware",
    "BALLOT_TRANSITIONS",
    "PENDING_APPROVALS_GAUGE",
    "PrometheusMiddleware",
    "REQUEST_COUNTER",
    "REQUEST_ERROR_COUNTER",
    "REQUEST_LATENCY_SECONDS",
    "TALLY_RECONCILIATION_CORRECTIONS",
    "metrics_router",
    "record_transition",
    "report_pending_approvals",
    "initialise_tracing",
    "inject_traceparent",
    "instrument_fastapi_app",
    "instrument_sqlalchemy_engine",
    "span_from_traceparent",
    "workflow_span",
]

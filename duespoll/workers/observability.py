"""Shared observability helpers for worker processes."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator

from opentelemetry.trace import Span

from duespoll.core.config import get_settings
from duespoll.core.logging import configure_logging
from duespoll.obs import initialise_tracing, span_from_traceparent


def configure_worker(service_name: str) -> None:
    """Configure logging and tracing for a worker service."""

    configure_logging()
    settings = get_settings()
    if settings.enable_tracing:
        initialise_tracing(
            service_name=service_name,
            endpoint=settings.otel_exporter_endpoint,
            instrument_logging=False,
        )


@contextmanager
def worker_span(name: str, traceparent: str | None = None, **attributes: Any) -> Iterator[Span]:
    """Start a worker span, continuing ``traceparent`` when one is supplied."""

    with span_from_traceparent(name, traceparent, **attributes) as span:
        yield span


__all__ = ["configure_worker", "worker_span"]

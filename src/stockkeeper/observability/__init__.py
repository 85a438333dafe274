"""
Observability Module

Tracing, metrics and structured logging for the dispatcher, the
reservation coordinator and the background sweepers.
"""

from .tracing import (
    init_tracing,
    get_tracer,
    get_current_span,
    get_trace_id,
    trace_headers,
    create_span,
    traced,
    add_event_to_span,
)
from .metrics import (
    init_metrics,
    get_meter,
    record_counter,
    record_histogram,
)
from .logging import configure_logging

__all__ = [
    # Tracing
    "init_tracing",
    "get_tracer",
    "get_current_span",
    "get_trace_id",
    "trace_headers",
    "create_span",
    "traced",
    "add_event_to_span",
    # Metrics
    "init_metrics",
    "get_meter",
    "record_counter",
    "record_histogram",
    # Logging
    "configure_logging",
]

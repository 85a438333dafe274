"""
OpenTelemetry Metrics

Counters and histograms for outbox delivery and stock reservations.
"""

import logging
from typing import Any, Dict, Optional

from opentelemetry import metrics
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    PeriodicExportingMetricReader,
)
from opentelemetry.sdk.resources import SERVICE_NAME, Resource

logger = logging.getLogger(__name__)

_meter: Optional[metrics.Meter] = None

_counters: Dict[str, metrics.Counter] = {}
_histograms: Dict[str, metrics.Histogram] = {}

COUNTERS = {
    "outbox_published_total": "Outbox events delivered to the broker",
    "outbox_failed_total": "Failed outbox delivery attempts",
    "dlq_entries_total": "Outbox events moved to the dead-letter state",
    "reservations_total": "Reservation operations by outcome",
    "reservation_conflicts_total": "Reservations rejected for insufficient stock",
    "reservations_expired_total": "Reservations expired by the sweeper",
    "low_stock_alerts_total": "Low-stock alerts raised",
}

HISTOGRAMS = {
    "outbox_dispatch_duration_seconds": "Duration of one dispatch batch",
    "reservation_duration_seconds": "Duration of reservation operations",
}


def init_metrics(
    service_name: str = "stockkeeper",
    otlp_endpoint: Optional[str] = None,
    console_export: bool = False,
    export_interval_ms: int = 60000
) -> metrics.Meter:
    """
    Initialize OpenTelemetry metrics.

    Args:
        service_name: Name of the service
        otlp_endpoint: OTLP exporter endpoint
        console_export: Enable console export for debugging
        export_interval_ms: Export interval in milliseconds

    Returns:
        Configured meter
    """
    global _meter

    readers = []

    if otlp_endpoint:
        readers.append(PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=otlp_endpoint, insecure=True),
            export_interval_millis=export_interval_ms
        ))
        logger.info(f"OTel metrics: OTLP exporter configured -> {otlp_endpoint}")

    if console_export:
        readers.append(PeriodicExportingMetricReader(
            ConsoleMetricExporter(),
            export_interval_millis=export_interval_ms
        ))
        logger.info("OTel metrics: Console exporter enabled")

    resource = Resource.create({SERVICE_NAME: service_name})
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=readers))

    _meter = metrics.get_meter(service_name)
    _init_standard_metrics()

    logger.info(f"OTel metrics initialized: {service_name}")
    return _meter


def _init_standard_metrics():
    meter = get_meter()

    for name, description in COUNTERS.items():
        _counters[name] = meter.create_counter(name, description=description, unit="1")

    for name, description in HISTOGRAMS.items():
        _histograms[name] = meter.create_histogram(name, description=description, unit="s")


def get_meter() -> metrics.Meter:
    """Get the global meter."""
    global _meter
    if _meter is None:
        _meter = metrics.get_meter("stockkeeper")
    return _meter


def record_counter(
    name: str,
    value: int = 1,
    attributes: Dict[str, Any] = None
):
    """Record a counter metric. No-op until init_metrics has run."""
    if name in _counters:
        _counters[name].add(value, attributes or {})


def record_histogram(
    name: str,
    value: float,
    attributes: Dict[str, Any] = None
):
    """Record a histogram metric."""
    if name in _histograms:
        _histograms[name].record(value, attributes or {})

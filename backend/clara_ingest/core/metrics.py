"""Prometheus metrics instrumentation."""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

REGISTRY = CollectorRegistry()

UPLOAD_ATTEMPTS = Counter(
    "clara_upload_attempts_total",
    "Signed-URL upload attempts",
    labelnames=("outcome",),
    registry=REGISTRY,
)

INGEST_OUTCOMES = Counter(
    "clara_ingest_outcomes_total",
    "Per-file ingestion outcomes",
    labelnames=("kind", "outcome"),
    registry=REGISTRY,
)

QUALITY_VERDICTS = Counter(
    "clara_quality_verdicts_total",
    "Text quality recommendations",
    labelnames=("recommendation",),
    registry=REGISTRY,
)

BATCHES_SENT = Counter(
    "clara_ingest_batches_total",
    "Text batches transmitted to ingest-batch",
    registry=REGISTRY,
)

INGEST_DURATION = Histogram(
    "clara_ingest_duration_seconds",
    "Wall-clock duration of one file's ingestion",
    labelnames=("kind",),
    buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1800),
    registry=REGISTRY,
)

IN_FLIGHT = Gauge(
    "clara_in_flight_documents",
    "Documents tracked by the background job poller",
    registry=REGISTRY,
)


def render_metrics() -> tuple[bytes, str]:
    """Return the exposition payload and its content type."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST


__all__ = [
    "REGISTRY",
    "UPLOAD_ATTEMPTS",
    "INGEST_OUTCOMES",
    "QUALITY_VERDICTS",
    "BATCHES_SENT",
    "INGEST_DURATION",
    "IN_FLIGHT",
    "render_metrics",
]

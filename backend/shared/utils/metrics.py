"""
Prometheus metrics for the match logger.
Metric objects live at module level; call sites only label and increment.
"""
from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from shared.config import get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Counters ────────────────────────────────────────────────────────────
EVENTS_SUBMITTED = Counter(
    "ml_events_submitted_total",
    "Events submitted to the timeline",
    ["event_type"],
)
ACKS = Counter(
    "ml_acks_total",
    "Acknowledgements merged, by outcome",
    ["status"],
)
DUPLICATES = Counter(
    "ml_duplicates_total",
    "Duplicate events detected",
    ["source"],
)
UNDO_OPERATIONS = Counter(
    "ml_undo_total",
    "Undo operations, by mode",
    ["mode"],
)
CLOCK_RESYNCS = Counter(
    "ml_clock_resyncs_total",
    "Clock resynchronisations",
    ["reason"],
)
TRANSITIONS = Counter(
    "ml_transitions_total",
    "Period transitions attempted",
    ["target", "result"],
)
RESETS = Counter(
    "ml_resets_total",
    "Match resets",
    ["forced"],
)

# ── Gauges ──────────────────────────────────────────────────────────────
PENDING_ACKS = Gauge(
    "ml_pending_acks",
    "Events sent and awaiting acknowledgement",
)
QUEUED_EVENTS = Gauge(
    "ml_queued_events",
    "Events recorded locally but not yet sent",
)
STATUS_SUBSCRIBERS = Gauge(
    "ml_status_subscribers",
    "Operator websocket clients receiving status pushes",
)

# ── Histograms ──────────────────────────────────────────────────────────
TRANSPORT_LATENCY = Histogram(
    "ml_transport_latency_seconds",
    "Backend request latency in seconds",
    ["operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)


@asynccontextmanager
async def atrack_latency(histogram: Histogram, **labels: str) -> AsyncIterator[None]:
    """Async context manager to track operation latency."""
    start = time.perf_counter()
    try:
        yield
    finally:
        histogram.labels(**labels).observe(time.perf_counter() - start)


def start_metrics_server(port: int | None = None) -> None:
    """Start the Prometheus metrics HTTP server."""
    settings = get_settings()
    if not settings.metrics_enabled:
        return
    metrics_port = port or settings.metrics_port
    try:
        start_http_server(metrics_port)
        logger.info("metrics_server_started", port=metrics_port)
    except OSError as exc:
        logger.warning("metrics_server_failed", error=str(exc), port=metrics_port)

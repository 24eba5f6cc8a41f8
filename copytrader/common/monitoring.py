"""Metrics collection for the copy-trading engine."""

import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server
from prometheus_client.core import CollectorRegistry

from .config import settings
from .logging import get_logger

logger = get_logger(__name__)

# Prometheus metrics
REGISTRY = CollectorRegistry()

# Feed metrics
FEED_CONNECTED = Gauge(
    "feed_connected", "Whether the trade feed session is live (0/1)", registry=REGISTRY
)
FEED_RECONNECTS = Counter(
    "feed_reconnects_total", "Trade feed reconnection attempts", registry=REGISTRY
)
FEED_SUBSCRIPTIONS = Gauge(
    "feed_subscriptions", "Master wallets in the subscription set", registry=REGISTRY
)
MESSAGES_RECEIVED = Counter(
    "feed_messages_received_total", "Total feed messages received", ["channel"], registry=REGISTRY
)
FILLS_RECEIVED = Counter(
    "fills_received_total", "Accepted master fills", ["symbol", "event_kind"], registry=REGISTRY
)

# Execution client metrics
REST_REQUESTS = Counter(
    "rest_requests_total", "REST dispatches by outcome", ["method", "status"], registry=REGISTRY
)
RATE_LIMIT_HITS = Counter(
    "rest_rate_limit_hits_total", "HTTP 429 responses", ["outcome"], registry=REGISTRY
)
REST_QUEUE_DEPTH = Gauge(
    "rest_queue_depth", "Requests waiting in the dispatch queue", registry=REGISTRY
)

# Replication metrics
REPLICATIONS_TOTAL = Counter(
    "replications_total", "Relationship outcomes per fill", ["status"], registry=REGISTRY
)
REPLICATION_SKIPS = Counter(
    "replication_skips_total", "Relationships skipped per fill", ["reason"], registry=REGISTRY
)
ORDERS_SUBMITTED = Counter(
    "orders_submitted_total", "Copy orders accepted by the exchange", ["symbol", "side"], registry=REGISTRY
)
REPLICATION_LATENCY = Histogram(
    "replication_latency_seconds", "Fill receipt to fan-out completion", registry=REGISTRY
)
PROCESSING_TIME = Histogram(
    "processing_time_seconds", "Processing time in seconds", ["component"], registry=REGISTRY
)

# Error metrics
ERRORS_TOTAL = Counter(
    "errors_total", "Total errors", ["component", "error_type"], registry=REGISTRY
)


@asynccontextmanager
async def measure_time(component: str) -> AsyncGenerator[None, None]:
    """Context manager to measure processing time."""
    start_time = time.perf_counter()
    try:
        yield
    finally:
        duration = time.perf_counter() - start_time
        PROCESSING_TIME.labels(component=component).observe(duration)


def increment_counter(metric: Counter, **labels: str) -> None:
    """Safely increment a counter metric."""
    try:
        if labels:
            metric.labels(**labels).inc()
        else:
            metric.inc()
    except Exception as e:
        logger.error(f"Error incrementing counter {metric._name}", exception=e)


def set_gauge(metric: Gauge, value: float, **labels: str) -> None:
    """Safely set a gauge metric."""
    try:
        if labels:
            metric.labels(**labels).set(value)
        else:
            metric.set(value)
    except Exception as e:
        logger.error(f"Error setting gauge {metric._name}", exception=e)


def observe_histogram(metric: Histogram, value: float, **labels: str) -> None:
    """Safely observe a histogram metric."""
    try:
        if labels:
            metric.labels(**labels).observe(value)
        else:
            metric.observe(value)
    except Exception as e:
        logger.error(f"Error observing histogram {metric._name}", exception=e)


def setup_metrics_server(port: Optional[int] = None) -> None:
    """Setup and start the Prometheus metrics server.

    Args:
        port: Port to run the metrics server on. If None, uses config value.
    """
    if port is None:
        port = settings.monitoring.prometheus_port

    if port:
        try:
            start_http_server(port, registry=REGISTRY)
            logger.info(f"Prometheus metrics server started on port {port}")
        except Exception as e:
            logger.error(f"Failed to start metrics server on port {port}", exception=e)

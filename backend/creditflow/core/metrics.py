"""Prometheus metrics for the billing service.

Tracks HTTP traffic, credit ledger activity, connector calls and payment
provider events on a private registry exposed at ``/metrics``.
"""

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
    multiprocess,
)
import os

# Create a custom registry for our metrics
REGISTRY = CollectorRegistry()

# Check if running in multiprocess mode (e.g., with gunicorn)
if "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "creditflow_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# HTTP Request Metrics
# ============================================
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently in progress",
    ["method", "endpoint"],
    registry=REGISTRY,
)


# ============================================
# Credit Ledger Metrics
# ============================================
LEDGER_OPERATIONS_TOTAL = Counter(
    "ledger_operations_total",
    "Ledger operations by kind and outcome",
    ["operation", "outcome"],
    registry=REGISTRY,
)

LEDGER_CREDITS_TOTAL = Counter(
    "ledger_credits_total",
    "Credits moved through the ledger",
    ["direction"],
    registry=REGISTRY,
)

LEDGER_RETRIES_TOTAL = Counter(
    "ledger_retries_total",
    "Ledger write conflicts that were retried",
    ["operation"],
    registry=REGISTRY,
)

LEDGER_OPERATION_DURATION_SECONDS = Histogram(
    "ledger_operation_duration_seconds",
    "Ledger operation duration in seconds",
    ["operation"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
    registry=REGISTRY,
)


# ============================================
# Usage Metrics
# ============================================
USAGE_RECORDS_TOTAL = Counter(
    "usage_records_total",
    "Usage records by resource type and deduction outcome",
    ["resource_type", "outcome"],
    registry=REGISTRY,
)


# ============================================
# Integration Connector Metrics
# ============================================
CONNECTOR_CALLS_TOTAL = Counter(
    "connector_calls_total",
    "Outbound data source calls",
    ["provider", "operation", "outcome"],
    registry=REGISTRY,
)

CONNECTOR_CALL_DURATION_SECONDS = Histogram(
    "connector_call_duration_seconds",
    "Outbound data source call duration in seconds",
    ["provider", "operation"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=REGISTRY,
)


# ============================================
# Payment Provider Metrics
# ============================================
PAYMENT_EVENTS_TOTAL = Counter(
    "payment_events_total",
    "Payment provider events received",
    ["event_type", "handled"],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })

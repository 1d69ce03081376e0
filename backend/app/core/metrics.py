"""Prometheus metrics for the subscription service."""

import os

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    multiprocess,
)

REGISTRY = CollectorRegistry()

# Running under gunicorn with several workers
if "PROMETHEUS_MULTIPROC_DIR" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "subscription_service_app",
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
# Billing Metrics
# ============================================
SUBSCRIPTIONS_CREATED_TOTAL = Counter(
    "subscriptions_created_total",
    "Subscriptions created through checkout",
    ["billing_cycle"],
    registry=REGISTRY,
)

SUBSCRIPTION_FAILURES_TOTAL = Counter(
    "subscription_failures_total",
    "Checkout attempts rejected, by reason",
    ["reason"],
    registry=REGISTRY,
)

PROMO_REDEMPTIONS_TOTAL = Counter(
    "promo_redemptions_total",
    "Promo code redemptions recorded",
    ["discount_type"],
    registry=REGISTRY,
)

USAGE_LIMIT_DENIALS_TOTAL = Counter(
    "usage_limit_denials_total",
    "Limit checks that refused an action",
    ["resource_type"],
    registry=REGISTRY,
)

SUBSCRIPTIONS_EXPIRED_TOTAL = Counter(
    "subscriptions_expired_total",
    "Subscriptions moved to EXPIRED by the sweeper",
    registry=REGISTRY,
)


# ============================================
# Cache Metrics
# ============================================
CACHE_OPERATIONS_TOTAL = Counter(
    "cache_operations_total",
    "Cache operations by outcome (hit, miss, error)",
    ["operation", "result"],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Render all registered metrics in the Prometheus text format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })

"""Prometheus metrics for the reconciliation paths."""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    Info,
    generate_latest,
)

REGISTRY = CollectorRegistry()

APP_INFO = Info(
    "paysub_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# Gateway
# ============================================
GATEWAY_REQUESTS_TOTAL = Counter(
    "paysub_gateway_requests_total",
    "Outbound gateway requests",
    ["operation", "outcome"],
    registry=REGISTRY,
)

GATEWAY_REQUEST_DURATION_SECONDS = Histogram(
    "paysub_gateway_request_duration_seconds",
    "Outbound gateway request duration in seconds",
    ["operation"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=REGISTRY,
)


# ============================================
# Ledgers and webhooks
# ============================================
PAYMENT_TRANSITIONS_TOTAL = Counter(
    "paysub_payment_transitions_total",
    "Applied payment status transitions",
    ["target", "outcome"],
    registry=REGISTRY,
)

WEBHOOKS_TOTAL = Counter(
    "paysub_webhooks_total",
    "Inbound gateway webhooks by outcome",
    ["outcome"],
    registry=REGISTRY,
)


# ============================================
# Renewal scheduler
# ============================================
RENEWAL_ATTEMPTS_TOTAL = Counter(
    "paysub_renewal_attempts_total",
    "Renewal sweep outcomes per subscription",
    ["outcome"],
    registry=REGISTRY,
)

RENEWAL_SWEEP_DURATION_SECONDS = Histogram(
    "paysub_renewal_sweep_duration_seconds",
    "Duration of a full renewal sweep",
    buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    APP_INFO.info({"version": version, "environment": environment})

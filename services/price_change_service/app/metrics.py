"""Prometheus metrics for the price change service."""

from __future__ import annotations

from typing import Final

from prometheus_client import Counter, Histogram


PRICE_CHANGE_TRANSITIONS_TOTAL: Final = Counter(
    "price_change_transitions_total",
    "Number of committed price change status transitions.",
    labelnames=("action", "status"),
)

PRICE_CHANGE_REJECTED_REQUESTS_TOTAL: Final = Counter(
    "price_change_rejected_requests_total",
    "Number of lifecycle requests refused before any mutation.",
    labelnames=("action", "error"),
)

PRICE_CHANGE_CONNECTOR_FAILURES_TOTAL: Final = Counter(
    "price_change_connector_failures_total",
    "Number of failed connector price updates.",
    labelnames=("target", "retryable"),
)

PRICE_CHANGE_COMPENSATIONS_TOTAL: Final = Counter(
    "price_change_compensations_total",
    "Number of compensating connector calls by outcome.",
    labelnames=("action", "outcome"),
)

PRICE_CHANGE_CONNECTOR_LATENCY_SECONDS: Final = Histogram(
    "price_change_connector_latency_seconds",
    "Latency of connector price update calls.",
    labelnames=("target",),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
)

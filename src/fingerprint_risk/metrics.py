"""Prometheus metrics for the risk engine.

Metrics live in the default registry so a host process can expose them
alongside its own with ``render_metrics()``.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram, generate_latest

EVALUATIONS_TOTAL = Counter(
    "fingerprint_risk_evaluations_total",
    "Total number of identity risk evaluations",
    ["outcome"],
)

RISK_EVENTS_TOTAL = Counter(
    "fingerprint_risk_events_total",
    "Total number of risk events written",
    ["risk_type"],
)

PERSISTENCE_FAILURES_TOTAL = Counter(
    "fingerprint_risk_persistence_failures_total",
    "Evaluations whose score or risk event could not be stored",
)

RATE_LIMIT_DECISIONS_TOTAL = Counter(
    "fingerprint_risk_rate_limit_decisions_total",
    "Rate limiter decisions",
    ["action_type", "decision"],
)

EVALUATION_LATENCY = Histogram(
    "fingerprint_risk_evaluation_latency_seconds",
    "Identity evaluation latency in seconds",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
)

RISK_SCORE = Histogram(
    "fingerprint_risk_score",
    "Distribution of evaluated risk scores",
    buckets=[0, 1, 2, 3, 4, 5, 6, 7, 8, 9, 10],
)


def render_metrics() -> bytes:
    """Return all metrics in the Prometheus text exposition format."""
    return generate_latest()

"""Prometheus counters for OpsAgent self-monitoring.

Exposed by the REST API at ``GET /metrics``.
"""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, Counter, generate_latest

violations_total = Counter(
    "opsagent_violations_total",
    "Rule violations produced by the rule engine",
    ["metric_family"],
)

alert_events_total = Counter(
    "opsagent_alert_events_total",
    "Alert lifecycle events emitted by the alert manager",
    ["type"],
)

remediation_actions_total = Counter(
    "opsagent_remediation_actions_total",
    "Remediation actions by outcome",
    ["status"],
)

ai_requests_total = Counter(
    "opsagent_ai_requests_total",
    "AI analysis requests",
    ["success"],
)

notifications_total = Counter(
    "opsagent_notifications_total",
    "Notification deliveries per channel",
    ["channel", "success"],
)

backend_writes_total = Counter(
    "opsagent_backend_writes_total",
    "Persistence backend writes",
    ["operation", "success"],
)


def render_latest() -> tuple[bytes, str]:
    """Return the exposition payload and its content type."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST


def sample(name: str, **labels: str) -> float:
    """Current value of a counter sample, 0.0 when never incremented."""
    value = REGISTRY.get_sample_value(f"{name}_total", labels)
    return value or 0.0

"""Alert data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from uuid import uuid4

from opsagent.models.rules import Severity, Violation


class AlertEventType(StrEnum):
    """Lifecycle transitions emitted by the AlertManager."""

    NEW = "new"
    RESOLVED = "resolved"
    ACKNOWLEDGED = "acknowledged"
    UPDATED = "updated"


def new_alert_id() -> str:
    return f"alert-{uuid4().hex}"


def alert_key(metric: str, severity: str, message: str) -> str:
    """Dedup identity of an alert.  Independent of the current value."""
    return f"{metric}|{severity}|{message}"


@dataclass
class Alert:
    """An active or historical alert.

    Mutated only by the AlertManager: acknowledgement, agent-response
    attachment and resolution.
    """

    severity: Severity
    message: str
    metric: str
    current_value: float
    threshold: float
    timestamp: datetime
    id: str = field(default_factory=new_alert_id)
    acknowledged: bool = False
    resolved_at: datetime | None = None
    agent_response: str | None = None
    agent_actions: list[str] | None = None

    @property
    def key(self) -> str:
        return alert_key(self.metric, self.severity.value, self.message)

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    @classmethod
    def from_violation(cls, violation: Violation) -> Alert:
        return cls(
            severity=Severity(violation.rule.severity),
            message=violation.rule.message,
            metric=violation.metric,
            current_value=violation.current_value,
            threshold=violation.rule.threshold,
            timestamp=violation.timestamp,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "severity": self.severity.value,
            "message": self.message,
            "metric": self.metric,
            "current_value": self.current_value,
            "threshold": self.threshold,
            "timestamp": self.timestamp.isoformat(),
            "acknowledged": self.acknowledged,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "agent_response": self.agent_response,
            "agent_actions": list(self.agent_actions) if self.agent_actions is not None else None,
        }


@dataclass(frozen=True)
class AlertEvent:
    """A lifecycle event delivered to AlertManager subscribers."""

    type: AlertEventType
    alert: Alert
    emitted_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

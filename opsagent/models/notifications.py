"""Notification data structures."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from opsagent.models.rules import Severity


class NotificationKind(StrEnum):
    NEW_ALERT = "new_alert"
    ALERT_RESOLVED = "alert_resolved"
    AGENT_ANALYSIS = "agent_analysis"
    HUMAN_INTERVENTION = "human_intervention"
    CUSTOM = "custom"


class NotificationPriority(StrEnum):
    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @classmethod
    def from_severity(cls, severity: Severity) -> NotificationPriority:
        if severity is Severity.CRITICAL:
            return cls.URGENT
        if severity is Severity.WARNING:
            return cls.HIGH
        return cls.NORMAL


@dataclass(frozen=True)
class Notification:
    """Channel-agnostic message handed to every NotificationChannel."""

    kind: NotificationKind
    priority: NotificationPriority
    title: str
    body: str
    fields: tuple[tuple[str, str], ...] = ()
    alert_id: str | None = None
    mention: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "priority": self.priority.value,
            "title": self.title,
            "body": self.body,
            "fields": [{"name": n, "value": v} for n, v in self.fields],
            "alert_id": self.alert_id,
            "mention": self.mention,
        }

"""Core data structures for OpsAgent."""

from opsagent.models.agent import (
    ActionStatus,
    AgentAction,
    AgentResponse,
    AgentResult,
    ExecutionResult,
    RiskTier,
)
from opsagent.models.alerts import Alert, AlertEvent, AlertEventType, alert_key
from opsagent.models.config import AgentPolicy, OpsAgentConfig
from opsagent.models.metrics import MetricSnapshot
from opsagent.models.notifications import Notification, NotificationKind, NotificationPriority
from opsagent.models.rules import (
    Direction,
    LevelRule,
    MetricFamily,
    RuleScope,
    RuleSet,
    RuleType,
    Severity,
    SustainedRule,
    Violation,
    ViolationRule,
)

__all__ = [
    "ActionStatus",
    "AgentAction",
    "AgentPolicy",
    "AgentResponse",
    "AgentResult",
    "Alert",
    "AlertEvent",
    "AlertEventType",
    "Direction",
    "ExecutionResult",
    "LevelRule",
    "MetricFamily",
    "MetricSnapshot",
    "Notification",
    "NotificationKind",
    "NotificationPriority",
    "OpsAgentConfig",
    "RiskTier",
    "RuleScope",
    "RuleSet",
    "RuleType",
    "Severity",
    "SustainedRule",
    "Violation",
    "ViolationRule",
    "alert_key",
]

"""Remediation data structures: AI responses, action plans and their outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum


class RiskTier(StrEnum):
    """Risk classification of a remediation action, lowest first."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]

    def exceeds(self, ceiling: RiskTier) -> bool:
        return self.rank > ceiling.rank


_RISK_RANK = {RiskTier.LOW: 0, RiskTier.MEDIUM: 1, RiskTier.HIGH: 2}


class ActionStatus(StrEnum):
    """Persisted outcome of one action.  Derived, never stored on ExecutionResult."""

    EXECUTED = "executed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class AgentAction:
    """One step of the AI-proposed plan."""

    action: str
    description: str = ""
    risk: RiskTier = RiskTier.HIGH
    command: str | None = None
    pid: int | None = None
    service: str | None = None
    message: str | None = None

    def display(self) -> str:
        text = f"[{self.risk.value.upper()}] {self.action}: {self.description}"
        if self.command:
            text += f" (cmd: {self.command})"
        return text


@dataclass(frozen=True)
class AgentResponse:
    """Structured portion of an AI reply."""

    analysis: str
    can_auto_remediate: bool = False
    requires_human_attention: bool = False
    human_notification_reason: str | None = None
    actions: tuple[AgentAction, ...] = ()


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of policy evaluation plus (maybe) execution of one action."""

    action: AgentAction
    success: bool = False
    skipped: bool = False
    skip_reason: str | None = None
    output: str | None = None
    error: str | None = None
    rejected: bool = False

    @property
    def status(self) -> ActionStatus:
        if self.success:
            return ActionStatus.EXECUTED
        if self.skipped:
            return ActionStatus.SKIPPED
        return ActionStatus.FAILED


@dataclass(frozen=True)
class AgentResult:
    """Complete, immutable record of one remediation attempt for one alert."""

    alert_id: str
    raw_response: str
    response: AgentResponse | None = None
    execution_results: tuple[ExecutionResult, ...] = ()
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    @property
    def response_id(self) -> str:
        return f"resp-{self.alert_id}-{int(self.timestamp.timestamp() * 1000)}"

    @property
    def summary(self) -> str:
        if self.response is not None and self.response.analysis:
            return self.response.analysis
        return self.raw_response

    def action_summaries(self) -> list[str]:
        return [f"{r.action.action}: {r.status.value}" for r in self.execution_results]

    def to_dict(self) -> dict[str, object]:
        response = None
        if self.response is not None:
            response = {
                "analysis": self.response.analysis,
                "can_auto_remediate": self.response.can_auto_remediate,
                "requires_human_attention": self.response.requires_human_attention,
                "human_notification_reason": self.response.human_notification_reason,
                "actions": [_action_dict(a) for a in self.response.actions],
            }
        return {
            "id": self.response_id,
            "alert_id": self.alert_id,
            "timestamp": self.timestamp.isoformat(),
            "raw_response": self.raw_response,
            "response": response,
            "execution_results": [
                {
                    "action": _action_dict(r.action),
                    "status": r.status.value,
                    "success": r.success,
                    "skipped": r.skipped,
                    "skip_reason": r.skip_reason,
                    "rejected": r.rejected,
                    "output": r.output,
                    "error": r.error,
                }
                for r in self.execution_results
            ],
        }


def _action_dict(action: AgentAction) -> dict[str, object]:
    return {
        "action": action.action,
        "description": action.description,
        "risk": action.risk.value,
        "command": action.command,
        "pid": action.pid,
        "service": action.service,
        "message": action.message,
    }

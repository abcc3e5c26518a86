"""Pydantic response and request models for the OpsAgent REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from opsagent.models.agent import AgentAction, AgentResult, ExecutionResult
from opsagent.models.alerts import Alert
from opsagent.models.rules import Violation


class ErrorResponse(BaseModel):
    """Error envelope returned for every non-2xx response."""

    error: str
    detail: str


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    agent_name: str
    active_alerts: int
    rules: int
    remediation_enabled: bool
    auto_remediate: bool
    cycles: int = 0


class AlertOut(BaseModel):
    id: str
    severity: str
    message: str
    metric: str
    current_value: float
    threshold: float
    timestamp: datetime
    acknowledged: bool
    resolved_at: datetime | None = None
    agent_response: str | None = None
    agent_actions: list[str] | None = None

    @classmethod
    def from_alert(cls, alert: Alert) -> AlertOut:
        return cls(
            id=alert.id,
            severity=alert.severity.value,
            message=alert.message,
            metric=alert.metric,
            current_value=alert.current_value,
            threshold=alert.threshold,
            timestamp=alert.timestamp,
            acknowledged=alert.acknowledged,
            resolved_at=alert.resolved_at,
            agent_response=alert.agent_response,
            agent_actions=list(alert.agent_actions) if alert.agent_actions is not None else None,
        )


class AlertListResponse(BaseModel):
    count: int
    alerts: list[AlertOut]


class AcknowledgeResponse(BaseModel):
    id: str
    acknowledged: bool


class ActionOut(BaseModel):
    action: str
    description: str
    risk: str
    command: str | None = None
    pid: int | None = None
    service: str | None = None
    message: str | None = None

    @classmethod
    def from_action(cls, action: AgentAction) -> ActionOut:
        return cls(
            action=action.action,
            description=action.description,
            risk=action.risk.value,
            command=action.command,
            pid=action.pid,
            service=action.service,
            message=action.message,
        )


class ExecutionOut(BaseModel):
    action: ActionOut
    status: str
    success: bool
    skipped: bool
    skip_reason: str | None = None
    output: str | None = None
    error: str | None = None
    rejected: bool = False

    @classmethod
    def from_result(cls, result: ExecutionResult) -> ExecutionOut:
        return cls(
            action=ActionOut.from_action(result.action),
            status=result.status.value,
            success=result.success,
            skipped=result.skipped,
            skip_reason=result.skip_reason,
            output=result.output,
            error=result.error,
            rejected=result.rejected,
        )


class AgentResultOut(BaseModel):
    id: str
    alert_id: str
    timestamp: datetime
    analysis: str | None = None
    can_auto_remediate: bool = False
    requires_human_attention: bool = False
    human_notification_reason: str | None = None
    raw_response: str
    execution_results: list[ExecutionOut] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: AgentResult) -> AgentResultOut:
        response = result.response
        return cls(
            id=result.response_id,
            alert_id=result.alert_id,
            timestamp=result.timestamp,
            analysis=response.analysis if response else None,
            can_auto_remediate=response.can_auto_remediate if response else False,
            requires_human_attention=response.requires_human_attention if response else True,
            human_notification_reason=response.human_notification_reason if response else None,
            raw_response=result.raw_response,
            execution_results=[ExecutionOut.from_result(r) for r in result.execution_results],
        )


class AgentResultListResponse(BaseModel):
    count: int
    results: list[AgentResultOut]


class ViolationOut(BaseModel):
    metric: str
    current_value: float | None
    severity: str
    message: str
    type: str
    threshold: float | None = None
    rate_per_hour: float | None = None
    operator: str
    timestamp: datetime

    @classmethod
    def from_violation(cls, violation: Violation) -> ViolationOut:
        rule = violation.rule
        return cls(
            metric=violation.metric,
            current_value=violation.current_value,
            severity=rule.severity.value,
            message=rule.message,
            type=rule.type.value,
            threshold=rule.value,
            rate_per_hour=rule.rate_per_hour,
            operator=rule.operator,
            timestamp=violation.timestamp,
        )


class SnapshotResponse(BaseModel):
    count: int
    violations: list[ViolationOut]


class SnapshotRequest(BaseModel):
    """A raw metric snapshot as produced by a collector (camelCase or snake_case)."""

    model_config = ConfigDict(extra="allow")

    timestamp: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)

"""Builders turning alerts and agent results into channel-agnostic Notifications."""

from __future__ import annotations

from opsagent.models.agent import ActionStatus, AgentResult
from opsagent.models.alerts import Alert
from opsagent.models.notifications import Notification, NotificationKind, NotificationPriority

_STATUS_MARK = {
    ActionStatus.EXECUTED: "[ok]",
    ActionStatus.SKIPPED: "[skipped]",
    ActionStatus.FAILED: "[failed]",
}

_FIELD_LIMIT = 1000
_BODY_LIMIT = 2000


def new_alert(alert: Alert) -> Notification:
    return Notification(
        kind=NotificationKind.NEW_ALERT,
        priority=NotificationPriority.from_severity(alert.severity),
        title=f"{alert.severity.value.upper()}: System Alert",
        body=alert.message,
        fields=(
            ("Metric", alert.metric),
            ("Current Value", f"{alert.current_value:.2f}"),
            ("Threshold", f"{alert.threshold:g}"),
        ),
        alert_id=alert.id,
    )


def alert_resolved(alert: Alert) -> Notification:
    return Notification(
        kind=NotificationKind.ALERT_RESOLVED,
        priority=NotificationPriority.LOW,
        title="Alert Resolved",
        body=f"{alert.metric} is back within thresholds.",
        fields=(("Original Alert", alert.message),),
        alert_id=alert.id,
    )


def agent_analysis(alert: Alert, result: AgentResult) -> Notification:
    fields: list[tuple[str, str]] = []
    lines = []
    for r in result.execution_results:
        status = r.status
        if status is ActionStatus.SKIPPED:
            detail = r.skip_reason
        elif status is ActionStatus.EXECUTED:
            detail = (r.output or "")[:100]
        else:
            detail = r.error
        lines.append(f"{_STATUS_MARK[status]} {r.action.action}: {detail or 'completed'}")
    if lines:
        fields.append(("Actions Taken", "\n".join(lines)[:_FIELD_LIMIT]))

    pending = [r for r in result.execution_results if r.skipped]
    if pending:
        fields.append(
            (
                "Pending Approvals",
                "\n".join(f"- {r.action.action}: {r.action.description}" for r in pending)[:_FIELD_LIMIT],
            )
        )

    body = result.response.analysis if result.response and result.response.analysis else result.raw_response[:1000]
    return Notification(
        kind=NotificationKind.AGENT_ANALYSIS,
        priority=NotificationPriority.from_severity(alert.severity),
        title="AI Agent Response",
        body=body[:_BODY_LIMIT],
        fields=tuple(fields),
        alert_id=alert.id,
    )


def human_intervention(alert: Alert, reason: str, suggested: list[str] | None = None) -> Notification:
    fields = [
        ("Alert", alert.message),
        ("Severity", alert.severity.value.upper()),
        ("Metric", f"{alert.metric}: {alert.current_value:.2f}"),
    ]
    if suggested:
        fields.append(("Suggested Actions", "\n".join(f"- {s}" for s in suggested)[:_FIELD_LIMIT]))
    return Notification(
        kind=NotificationKind.HUMAN_INTERVENTION,
        priority=NotificationPriority.URGENT,
        title="Human Intervention Required",
        body=reason,
        fields=tuple(fields),
        alert_id=alert.id,
        mention=True,
    )


def custom(title: str, body: str, urgent: bool = False, alert_id: str | None = None) -> Notification:
    return Notification(
        kind=NotificationKind.CUSTOM,
        priority=NotificationPriority.URGENT if urgent else NotificationPriority.NORMAL,
        title=title,
        body=body,
        alert_id=alert_id,
        mention=urgent,
    )

"""Unit tests for RemediationOrchestrator.

The AI client is an AsyncMock, the executor runs against a recording fake
runner and notifications land in a recording channel.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

from opsagent.alerts import AlertManager
from opsagent.backend.base import NullBackend
from opsagent.errors import CollaboratorUnavailable
from opsagent.models.agent import ActionStatus, AgentResult, RiskTier
from opsagent.models.alerts import Alert
from opsagent.models.config import AgentPolicy, NotificationConfig
from opsagent.models.notifications import Notification, NotificationKind, NotificationPriority
from opsagent.models.rules import RuleType, Severity, Violation, ViolationRule
from opsagent.notifications.manager import NotificationChannel, NotificationDispatcher
from opsagent.remediation import ActionExecutor, RemediationOrchestrator
from opsagent.remediation.executor import CommandOutput

_T0 = datetime(2024, 1, 15, 10, 0, 0, tzinfo=UTC)


class _RecordingChannel(NotificationChannel):
    def __init__(self) -> None:
        self.sent: list[Notification] = []

    @property
    def channel_name(self) -> str:
        return "recording"

    async def send(self, notification: Notification) -> bool:
        self.sent.append(notification)
        return True

    def kinds(self) -> list[NotificationKind]:
        return [n.kind for n in self.sent]


class _RecordingBackend(NullBackend):
    def __init__(self, fail: bool = False) -> None:
        self.saved: list[tuple[str, AgentResult, str]] = []
        self._fail = fail

    async def save_agent_response(self, alert: Alert, result: AgentResult, model: str) -> None:
        if self._fail:
            raise ConnectionError("database is locked")
        self.saved.append((alert.id, result, model))


class _Runner:
    def __init__(self) -> None:
        self.commands: list[str] = []

    async def __call__(self, command: str, timeout: float) -> CommandOutput:
        self.commands.append(command)
        return CommandOutput(0, stdout="done")


class _FailFirstRunner(_Runner):
    async def __call__(self, command: str, timeout: float) -> CommandOutput:
        await super().__call__(command, timeout)
        if len(self.commands) == 1:
            return CommandOutput(1, stderr="journalctl: permission denied")
        return CommandOutput(0, stdout="done")


class _SlowRunner(_Runner):
    async def __call__(self, command: str, timeout: float) -> CommandOutput:
        await asyncio.sleep(0.05)
        return await super().__call__(command, timeout)


class _Clock:
    def __init__(self) -> None:
        self.now = _T0

    def __call__(self) -> datetime:
        return self.now


def _reply(actions: list[dict[str, Any]], **fields: Any) -> str:
    payload = {
        "analysis": "nginx is leaking memory",
        "canAutoRemediate": True,
        "requiresHumanAttention": False,
        "recommendations": actions,
        **fields,
    }
    return f"Analysis follows.\n```json\n{json.dumps(payload)}\n```"


def _make_ai(reply: str | None = None, error: Exception | None = None) -> MagicMock:
    ai = MagicMock()
    ai.model = "gpt-test"
    if error is not None:
        ai.complete = AsyncMock(side_effect=error)
    else:
        ai.complete = AsyncMock(return_value=reply or "")
    return ai


def _make_alert(manager: AlertManager, severity: Severity = Severity.WARNING) -> Alert:
    violation = Violation(
        metric="memory.usedPercent",
        current_value=91.0,
        rule=ViolationRule(severity=severity, message="Memory usage at or above 75%", type=RuleType.THRESHOLD, value=75),
        timestamp=_T0,
    )
    (alert,) = manager.process_violations([violation])
    return alert


def _make_orchestrator(
    ai: Any,
    policy: AgentPolicy | None = None,
    backend: _RecordingBackend | None = None,
    runner: _Runner | None = None,
    clock: Callable[[], datetime] | None = None,
    **kwargs: Any,
) -> tuple[RemediationOrchestrator, AlertManager, _RecordingChannel, _Runner]:
    manager = AlertManager()
    channel = _RecordingChannel()
    runner = runner or _Runner()
    orchestrator = RemediationOrchestrator(
        ai_client=ai,
        alert_manager=manager,
        policy=policy or AgentPolicy(auto_remediate=True, max_auto_risk=RiskTier.MEDIUM),
        executor=ActionExecutor(runner=runner),
        backend=backend or _RecordingBackend(),
        dispatcher=NotificationDispatcher(channels=[channel]),
        notification_config=NotificationConfig(),
        clock=clock or (lambda: _T0),
        **kwargs,
    )
    return orchestrator, manager, channel, runner


async def _drain(orchestrator: RemediationOrchestrator) -> None:
    await orchestrator._dispatcher.drain(timeout=2)


# ---------------------------------------------------------------------------
# Structured replies
# ---------------------------------------------------------------------------


class TestHandle:
    async def test_permitted_action_is_executed_and_reported(self) -> None:
        backend = _RecordingBackend()
        ai = _make_ai(_reply([{"action": "clear_cache", "description": "drop caches", "risk": "low"}]))
        orchestrator, manager, channel, runner = _make_orchestrator(ai, backend=backend)
        alert = _make_alert(manager)

        result = await orchestrator.handle(alert)
        await _drain(orchestrator)

        assert [r.status for r in result.execution_results] == [ActionStatus.EXECUTED]
        assert len(runner.commands) == 1
        assert alert.agent_response == "nginx is leaking memory"
        assert alert.agent_actions == ["clear_cache: executed"]
        assert backend.saved == [(alert.id, result, "gpt-test")]
        assert orchestrator.get_result_for_alert(alert.id) is result
        assert channel.kinds() == [NotificationKind.AGENT_ANALYSIS]

    async def test_prompt_carries_alert_details(self) -> None:
        ai = _make_ai(_reply([]))
        orchestrator, manager, _, _ = _make_orchestrator(ai)
        alert = _make_alert(manager)

        await orchestrator.handle(alert)

        system_prompt, user_prompt = ai.complete.call_args.args
        assert "OpsAgent" in system_prompt
        assert "memory.usedPercent" in user_prompt
        assert "Memory usage at or above 75%" in user_prompt

    async def test_high_risk_action_is_skipped_when_auto_remediation_disabled(self) -> None:
        ai = _make_ai(_reply([{"action": "kill_process", "description": "kill worker", "risk": "high", "pid": 4242}]))
        orchestrator, manager, channel, runner = _make_orchestrator(ai, policy=AgentPolicy(auto_remediate=False))
        alert = _make_alert(manager)

        result = await orchestrator.handle(alert)
        await _drain(orchestrator)

        (execution,) = result.execution_results
        assert execution.skipped is True
        assert execution.skip_reason == "auto-remediation disabled"
        assert runner.commands == []
        assert alert.agent_actions == ["kill_process: skipped"]
        analysis = channel.sent[0]
        assert dict(analysis.fields)["Pending Approvals"] == "- kill_process: kill worker"

    async def test_budget_limits_executions(self) -> None:
        ai = _make_ai(
            _reply(
                [
                    {"action": "clear_cache", "risk": "low"},
                    {"action": "log_analysis", "risk": "low"},
                ]
            )
        )
        policy = AgentPolicy(auto_remediate=True, max_actions_per_hour=1)
        orchestrator, manager, _, _ = _make_orchestrator(ai, policy=policy)

        result = await orchestrator.handle(_make_alert(manager))

        assert [r.status for r in result.execution_results] == [ActionStatus.EXECUTED, ActionStatus.SKIPPED]
        assert result.execution_results[1].skip_reason == "hourly action limit reached (1 actions/hour)"
        assert orchestrator.budget.used() == 1

    async def test_failed_action_does_not_abort_the_rest(self) -> None:
        ai = _make_ai(
            _reply(
                [
                    {"action": "log_analysis", "risk": "low"},
                    {"action": "clear_cache", "risk": "low"},
                    {"action": "notify_human", "risk": "low", "message": "check the journal"},
                ]
            )
        )
        runner = _FailFirstRunner()
        orchestrator, manager, _, _ = _make_orchestrator(ai, runner=runner)
        alert = _make_alert(manager)

        result = await orchestrator.handle(alert)

        assert [r.status for r in result.execution_results] == [
            ActionStatus.FAILED,
            ActionStatus.EXECUTED,
            ActionStatus.EXECUTED,
        ]
        assert "permission denied" in (result.execution_results[0].error or "")
        assert len(runner.commands) == 2
        assert alert.agent_actions == ["log_analysis: failed", "clear_cache: executed", "notify_human: executed"]

    async def test_human_attention_requested_by_ai(self) -> None:
        ai = _make_ai(
            _reply(
                [{"action": "restart_service", "description": "restart db", "risk": "high", "service": "postgres"}],
                requiresHumanAttention=True,
                humanNotificationReason="Database may be corrupt",
            )
        )
        orchestrator, manager, channel, _ = _make_orchestrator(ai)
        alert = _make_alert(manager)

        await orchestrator.handle(alert)
        await _drain(orchestrator)

        assert channel.kinds() == [NotificationKind.AGENT_ANALYSIS, NotificationKind.HUMAN_INTERVENTION]
        human = channel.sent[1]
        assert human.body == "Database may be corrupt"
        assert human.priority is NotificationPriority.URGENT
        assert human.mention is True
        assert "[HIGH] restart_service: restart db" in dict(human.fields)["Suggested Actions"]

    async def test_notify_human_action_sends_custom_notification(self) -> None:
        ai = _make_ai(_reply([{"action": "notify_human", "risk": "low", "message": "Disk is dying, replace it"}]))
        orchestrator, manager, channel, _ = _make_orchestrator(ai)
        alert = _make_alert(manager, severity=Severity.CRITICAL)

        await orchestrator.handle(alert)
        await _drain(orchestrator)

        custom = [n for n in channel.sent if n.kind is NotificationKind.CUSTOM]
        assert len(custom) == 1
        assert custom[0].title == "Agent Notification"
        assert custom[0].body == "Disk is dying, replace it"
        assert custom[0].priority is NotificationPriority.URGENT

    async def test_analysis_notification_can_be_disabled(self) -> None:
        ai = _make_ai(_reply([]))
        orchestrator, manager, channel, _ = _make_orchestrator(ai)
        orchestrator._notify = NotificationConfig(notify_analysis=False)

        await orchestrator.handle(_make_alert(manager))
        await _drain(orchestrator)

        assert channel.sent == []


# ---------------------------------------------------------------------------
# Degraded paths
# ---------------------------------------------------------------------------


class TestDegraded:
    async def test_unstructured_reply_asks_for_a_human(self) -> None:
        ai = _make_ai("I think the server is fine, honestly.")
        orchestrator, manager, channel, runner = _make_orchestrator(ai)
        alert = _make_alert(manager)

        result = await orchestrator.handle(alert)
        await _drain(orchestrator)

        assert result.response is None
        assert result.raw_response == "I think the server is fine, honestly."
        assert result.execution_results == ()
        assert runner.commands == []
        assert alert.agent_response == "I think the server is fine, honestly."
        assert channel.kinds() == [NotificationKind.HUMAN_INTERVENTION]
        assert channel.sent[0].body == "AI response could not be parsed into an action plan"

    async def test_deeply_nested_reply_is_unstructured(self) -> None:
        raw = "[" * 100_000 + "]" * 100_000
        orchestrator, manager, channel, runner = _make_orchestrator(_make_ai(raw))
        alert = _make_alert(manager)

        result = await orchestrator.handle(alert)
        await _drain(orchestrator)

        assert result.response is None
        assert runner.commands == []
        assert channel.kinds() == [NotificationKind.HUMAN_INTERVENTION]

    async def test_ai_failure_is_recorded(self) -> None:
        ai = _make_ai(error=CollaboratorUnavailable("ai", "HTTP 503"))
        orchestrator, manager, channel, _ = _make_orchestrator(ai)
        alert = _make_alert(manager)

        result = await orchestrator.handle(alert)
        await _drain(orchestrator)

        assert result.raw_response == "AI request failed: ai unavailable: HTTP 503"
        assert result.response is None
        assert channel.sent[0].body == "AI analysis unavailable: ai unavailable: HTTP 503"

    async def test_ai_timeout(self) -> None:
        async def _hang(_system: str, _user: str) -> str:
            await asyncio.sleep(5)
            return ""

        ai = MagicMock()
        ai.model = "gpt-test"
        ai.complete = _hang
        policy = AgentPolicy(auto_remediate=True)
        policy.ai_timeout_seconds = 0.05  # type: ignore[assignment]
        orchestrator, manager, _, _ = _make_orchestrator(ai, policy=policy)

        result = await orchestrator.handle(_make_alert(manager))
        assert result.raw_response == "AI request failed: timed out after 0.05s"

    async def test_no_ai_client(self) -> None:
        orchestrator, manager, _, _ = _make_orchestrator(None)
        result = await orchestrator.handle(_make_alert(manager))

        assert result.raw_response == "AI request failed: no AI client configured"
        assert orchestrator.model == "unknown"

    async def test_backend_failure_does_not_break_handling(self) -> None:
        ai = _make_ai(_reply([]))
        orchestrator, manager, _, _ = _make_orchestrator(ai, backend=_RecordingBackend(fail=True))
        alert = _make_alert(manager)

        result = await orchestrator.handle(alert)
        assert orchestrator.get_result_for_alert(alert.id) is result

    async def test_results_are_bounded(self) -> None:
        ai = _make_ai(_reply([]))
        orchestrator, _, _, _ = _make_orchestrator(ai, max_results=2)
        manager = AlertManager(cooldown=timedelta(0))
        orchestrator._alerts = manager
        ids = []
        for metric in ("a", "b", "c"):
            violation = Violation(
                metric=metric,
                current_value=1.0,
                rule=ViolationRule(severity=Severity.INFO, message=metric, type=RuleType.THRESHOLD, value=1),
            )
            (alert,) = manager.process_violations([violation])
            ids.append(alert.id)
            await orchestrator.handle(alert)

        assert [r.alert_id for r in orchestrator.get_results()] == ids[1:]


# ---------------------------------------------------------------------------
# Approval
# ---------------------------------------------------------------------------


class TestApproveAction:
    async def test_skipped_action_runs_after_approval(self) -> None:
        backend = _RecordingBackend()
        ai = _make_ai(_reply([{"action": "kill_process", "description": "kill worker", "risk": "high", "pid": 4242}]))
        orchestrator, manager, _, runner = _make_orchestrator(ai, backend=backend)
        alert = _make_alert(manager)
        first = await orchestrator.handle(alert)
        assert first.execution_results[0].skipped is True

        outcome = await orchestrator.approve_action(alert.id, 0)

        assert outcome is not None
        assert outcome.status is ActionStatus.EXECUTED
        assert runner.commands == ["kill -15 4242"]
        updated = orchestrator.get_result_for_alert(alert.id)
        assert updated is not None
        assert updated.execution_results[0] is outcome
        assert alert.agent_actions == ["kill_process: executed"]
        assert len(backend.saved) == 2

    async def test_approval_still_honours_blocklist(self) -> None:
        ai = _make_ai(_reply([{"action": "custom_command", "risk": "high", "command": "rm -rf /"}]))
        orchestrator, manager, _, runner = _make_orchestrator(ai)
        alert = _make_alert(manager)
        await orchestrator.handle(alert)

        outcome = await orchestrator.approve_action(alert.id, 0)

        assert outcome is not None
        assert outcome.status is ActionStatus.FAILED
        assert runner.commands == []

    async def test_nothing_to_approve(self) -> None:
        ai = _make_ai(_reply([{"action": "clear_cache", "risk": "low"}]))
        orchestrator, manager, _, _ = _make_orchestrator(ai)
        alert = _make_alert(manager)
        await orchestrator.handle(alert)

        assert await orchestrator.approve_action(alert.id, 0) is None
        assert await orchestrator.approve_action(alert.id, 5) is None
        assert await orchestrator.approve_action("alert-unknown", 0) is None

    async def test_concurrent_approvals_execute_once(self) -> None:
        ai = _make_ai(_reply([{"action": "kill_process", "description": "kill worker", "risk": "high", "pid": 4242}]))
        orchestrator, manager, _, runner = _make_orchestrator(ai, runner=_SlowRunner())
        alert = _make_alert(manager)
        await orchestrator.handle(alert)

        outcomes = await asyncio.gather(
            orchestrator.approve_action(alert.id, 0),
            orchestrator.approve_action(alert.id, 0),
        )

        assert len([o for o in outcomes if o is not None]) == 1
        assert runner.commands == ["kill -15 4242"]
        assert await orchestrator.approve_action(alert.id, 0) is None

    async def test_approval_window_expires(self) -> None:
        clock = _Clock()
        policy = AgentPolicy(auto_remediate=True, max_auto_risk=RiskTier.MEDIUM, approval_window_seconds=60)
        ai = _make_ai(_reply([{"action": "kill_process", "risk": "high", "pid": 4242}]))
        orchestrator, manager, _, runner = _make_orchestrator(ai, policy=policy, clock=clock)
        alert = _make_alert(manager)
        await orchestrator.handle(alert)

        clock.now = _T0 + timedelta(seconds=61)

        assert await orchestrator.approve_action(alert.id, 0) is None
        assert await orchestrator.reject_action(alert.id, 0) is None
        assert runner.commands == []

    async def test_zero_window_never_expires(self) -> None:
        clock = _Clock()
        policy = AgentPolicy(auto_remediate=True, max_auto_risk=RiskTier.MEDIUM, approval_window_seconds=0)
        ai = _make_ai(_reply([{"action": "kill_process", "risk": "high", "pid": 4242}]))
        orchestrator, manager, _, runner = _make_orchestrator(ai, policy=policy, clock=clock)
        alert = _make_alert(manager)
        await orchestrator.handle(alert)

        clock.now = _T0 + timedelta(days=30)

        assert await orchestrator.approve_action(alert.id, 0) is not None
        assert runner.commands == ["kill -15 4242"]

    async def test_rejected_action_cannot_be_approved(self) -> None:
        backend = _RecordingBackend()
        ai = _make_ai(_reply([{"action": "kill_process", "risk": "high", "pid": 4242}]))
        orchestrator, manager, _, runner = _make_orchestrator(ai, backend=backend)
        alert = _make_alert(manager)
        await orchestrator.handle(alert)

        rejected = await orchestrator.reject_action(alert.id, 0, reason="not during business hours")

        assert rejected is not None
        assert rejected.status is ActionStatus.SKIPPED
        assert rejected.rejected is True
        assert rejected.skip_reason == "not during business hours"
        assert await orchestrator.approve_action(alert.id, 0) is None
        assert await orchestrator.reject_action(alert.id, 0) is None
        assert runner.commands == []
        assert alert.agent_actions == ["kill_process: skipped"]
        assert len(backend.saved) == 2
        assert backend.saved[-1][1].to_dict()["execution_results"][0]["rejected"] is True

"""Remediation orchestrator.

Turns a new alert into an AI-produced action plan, gates every action
through the risk policy, executes what is permitted and reports the outcome
to the alert manager, the persistence backend and the notification
dispatcher.

One ``handle`` call per new alert; calls for different alerts may run
concurrently.  The AI is called at most once per alert with no internal
retry.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime

import structlog

from opsagent.alerts.manager import AlertManager
from opsagent.backend.base import Backend, NullBackend, safe_write
from opsagent.llm.client import AIClient
from opsagent.models.agent import AgentAction, AgentResponse, AgentResult, ExecutionResult
from opsagent.models.alerts import Alert
from opsagent.models.config import AgentPolicy, NotificationConfig
from opsagent.models.metrics import MetricSnapshot
from opsagent.models.rules import Severity
from opsagent.notifications import messages
from opsagent.notifications.manager import NotificationDispatcher
from opsagent.observability.logging import alert_log_context
from opsagent.observability.metrics import ai_requests_total, remediation_actions_total
from opsagent.remediation.executor import ActionExecutor
from opsagent.remediation.parser import parse_agent_response
from opsagent.remediation.policy import ActionBudget, evaluate_action
from opsagent.remediation.prompts import SYSTEM_PROMPT, build_alert_prompt

_log = structlog.get_logger(component="remediation.orchestrator")

DEFAULT_MAX_RESULTS = 500
_UNPARSEABLE_REASON = "AI response could not be parsed into an action plan"


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class RemediationOrchestrator:
    """Coordinates AI analysis and policy-gated execution for new alerts.

    Args:
        ai_client:     AI collaborator; ``None`` disables analysis entirely.
        alert_manager: Receives the summary and per-action statuses.
        policy:        Risk policy applied to every proposed action.
        executor:      Runs permitted actions.
        backend:       Persistence collaborator.
        dispatcher:    Notification fan-out.
        notification_config: Which optional notifications are sent.
        clock:         Returns the current UTC time.  Injected by tests.
        max_results:   Capacity of the in-memory result record.
    """

    def __init__(
        self,
        ai_client: AIClient | None,
        alert_manager: AlertManager,
        policy: AgentPolicy | None = None,
        executor: ActionExecutor | None = None,
        backend: Backend | None = None,
        dispatcher: NotificationDispatcher | None = None,
        notification_config: NotificationConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
        max_results: int = DEFAULT_MAX_RESULTS,
    ) -> None:
        self._ai = ai_client
        self._alerts = alert_manager
        self._policy = policy or AgentPolicy()
        self._executor = executor or ActionExecutor(timeout=self._policy.action_timeout_seconds)
        self._backend = backend or NullBackend()
        self._dispatcher = dispatcher or NotificationDispatcher(channels=[])
        self._notify = notification_config or NotificationConfig()
        self._clock = clock
        self._budget = ActionBudget(self._policy.max_actions_per_hour, clock=clock)
        self._max_results = max_results
        # alert id -> latest result, oldest first
        self._results: OrderedDict[str, AgentResult] = OrderedDict()
        # (alert id, action index) pairs whose approval is executing
        self._approving: set[tuple[str, int]] = set()

    @property
    def policy(self) -> AgentPolicy:
        return self._policy

    @property
    def budget(self) -> ActionBudget:
        return self._budget

    @property
    def model(self) -> str:
        return self._policy.model or getattr(self._ai, "model", "") or "unknown"

    # ------------------------------------------------------------------
    # Alert handling
    # ------------------------------------------------------------------

    async def handle(self, alert: Alert, snapshot: MetricSnapshot | None = None) -> AgentResult:
        """Analyse *alert*, execute what the policy permits and report the outcome."""
        with alert_log_context(alert_id=alert.id, metric=alert.metric):
            _log.info("remediation_started", severity=alert.severity.value)

            raw, failure = await self._ask(alert, snapshot)
            response = parse_agent_response(raw) if failure is None else None

            executions: list[ExecutionResult] = []
            if response is not None:
                for action in response.actions:
                    executions.append(await self._apply(response, action))

            result = AgentResult(
                alert_id=alert.id,
                raw_response=raw,
                response=response,
                execution_results=tuple(executions),
                timestamp=self._clock(),
            )
            await self._report(alert, result, failure)
            _log.info(
                "remediation_finished",
                structured=response is not None,
                actions=len(executions),
                executed=sum(1 for r in executions if r.success),
                skipped=sum(1 for r in executions if r.skipped),
            )
            return result

    async def _ask(self, alert: Alert, snapshot: MetricSnapshot | None) -> tuple[str, str | None]:
        """Return ``(raw_response, failure)``; failure is None on success."""
        if self._ai is None:
            failure = "no AI client configured"
            return f"AI request failed: {failure}", failure

        prompt = build_alert_prompt(alert, snapshot, self._alerts.get_recent_alerts(5))
        try:
            raw = await asyncio.wait_for(
                self._ai.complete(SYSTEM_PROMPT, prompt),
                timeout=self._policy.ai_timeout_seconds,
            )
        except TimeoutError:
            failure = f"timed out after {self._policy.ai_timeout_seconds}s"
        except Exception as exc:  # noqa: BLE001
            failure = str(exc) or type(exc).__name__
        else:
            ai_requests_total.labels(success="true").inc()
            return raw, None

        ai_requests_total.labels(success="false").inc()
        _log.warning("ai_request_failed", error=failure)
        return f"AI request failed: {failure}", failure

    async def _apply(self, response: AgentResponse, action: AgentAction) -> ExecutionResult:
        reason = evaluate_action(self._policy, response, action, self._budget)
        if reason is not None:
            _log.info("remediation_action_skipped", action=action.action, reason=reason)
            result = ExecutionResult(action=action, skipped=True, skip_reason=reason)
        else:
            self._budget.consume()
            result = await self._executor.execute(action)
        remediation_actions_total.labels(status=result.status.value).inc()
        return result

    async def _report(self, alert: Alert, result: AgentResult, failure: str | None) -> None:
        self._remember(result)
        self._alerts.update_alert_with_agent_response(alert.id, result.summary, result.action_summaries())

        await safe_write(
            self._backend,
            "save_agent_response",
            lambda: self._backend.save_agent_response(alert, result, self.model),
            alert_id=alert.id,
        )

        response = result.response
        if self._notify.notify_analysis and (response is not None or result.execution_results):
            self._dispatcher.dispatch(messages.agent_analysis(alert, result))

        if response is None:
            reason = f"AI analysis unavailable: {failure}" if failure else _UNPARSEABLE_REASON
            self._dispatcher.dispatch(messages.human_intervention(alert, reason))
        elif response.requires_human_attention:
            reason = response.human_notification_reason or response.analysis or "Manual review requested"
            suggested = [r.action.display() for r in result.execution_results if not r.success]
            self._dispatcher.dispatch(messages.human_intervention(alert, reason, suggested or None))

        for r in result.execution_results:
            if r.success and r.action.action == "notify_human":
                self._dispatcher.dispatch(
                    messages.custom(
                        title="Agent Notification",
                        body=r.output or r.action.description,
                        urgent=alert.severity is Severity.CRITICAL,
                        alert_id=alert.id,
                    )
                )

    # ------------------------------------------------------------------
    # Human approval
    # ------------------------------------------------------------------

    async def approve_action(self, alert_id: str, index: int) -> ExecutionResult | None:
        """Execute a previously skipped action after explicit human approval.

        The policy gate is bypassed but the executor's command blocklist is
        not.  Returns None when there is no pending action at *index* for
        *alert_id*: unknown, already executed, rejected, outside the approval
        window, or already being approved by a concurrent call.
        """
        key = (alert_id, index)
        result = self._pending_result(alert_id, index)
        if result is None or key in self._approving:
            return None
        previous = result.execution_results[index]

        # Claimed before the first await so a second approval sees it in flight.
        self._approving.add(key)
        try:
            with alert_log_context(alert_id=alert_id, metric=""):
                _log.info("remediation_action_approved", action=previous.action.action, index=index)
                outcome = await self._executor.execute(previous.action)
            remediation_actions_total.labels(status=outcome.status.value).inc()
            await self._replace_execution(alert_id, index, outcome)
        finally:
            self._approving.discard(key)
        return outcome

    async def reject_action(
        self,
        alert_id: str,
        index: int,
        reason: str = "rejected by operator",
    ) -> ExecutionResult | None:
        """Close a pending action without running it.  Returns None when nothing is pending."""
        key = (alert_id, index)
        result = self._pending_result(alert_id, index)
        if result is None or key in self._approving:
            return None
        previous = result.execution_results[index]
        outcome = ExecutionResult(action=previous.action, skipped=True, skip_reason=reason, rejected=True)
        _log.info("remediation_action_rejected", alert_id=alert_id, action=previous.action.action, index=index)
        await self._replace_execution(alert_id, index, outcome)
        return outcome

    def _pending_result(self, alert_id: str, index: int) -> AgentResult | None:
        result = self._results.get(alert_id)
        if result is None or not 0 <= index < len(result.execution_results):
            return None
        previous = result.execution_results[index]
        if not previous.skipped or previous.rejected:
            return None
        window = self._policy.approval_window_seconds
        age = (self._clock() - result.timestamp).total_seconds()
        if window > 0 and age > window:
            _log.info("remediation_approval_expired", alert_id=alert_id, index=index, age_seconds=int(age))
            return None
        return result

    async def _replace_execution(self, alert_id: str, index: int, outcome: ExecutionResult) -> None:
        # Re-read: another action of the same plan may have been settled meanwhile.
        current = self._results.get(alert_id)
        if current is None:
            return
        executions = list(current.execution_results)
        executions[index] = outcome
        updated = replace(current, execution_results=tuple(executions), timestamp=self._clock())
        self._remember(updated)
        self._alerts.update_alert_with_agent_response(alert_id, updated.summary, updated.action_summaries())

        alert = self._alerts.get_alert_by_id(alert_id)
        if alert is not None:
            await safe_write(
                self._backend,
                "save_agent_response",
                lambda: self._backend.save_agent_response(alert, updated, self.model),
                alert_id=alert_id,
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _remember(self, result: AgentResult) -> None:
        self._results.pop(result.alert_id, None)
        self._results[result.alert_id] = result
        while len(self._results) > self._max_results:
            self._results.popitem(last=False)

    def get_results(self) -> list[AgentResult]:
        """Most recent result per alert, oldest first."""
        return list(self._results.values())

    def get_result_for_alert(self, alert_id: str) -> AgentResult | None:
        return self._results.get(alert_id)

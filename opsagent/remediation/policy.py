"""Risk policy gate applied to every proposed action before execution."""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from opsagent.models.agent import AgentAction, AgentResponse
from opsagent.models.config import AgentPolicy

_WINDOW = timedelta(hours=1)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class ActionBudget:
    """Sliding one-hour window of executed actions."""

    def __init__(self, limit: int, clock: Callable[[], datetime] = _utcnow) -> None:
        self._limit = limit
        self._clock = clock
        self._executed: deque[datetime] = deque()

    def _prune(self, now: datetime) -> None:
        while self._executed and now - self._executed[0] >= _WINDOW:
            self._executed.popleft()

    def used(self) -> int:
        self._prune(self._clock())
        return len(self._executed)

    def exhausted(self) -> bool:
        return self.used() >= self._limit

    def consume(self) -> None:
        now = self._clock()
        self._prune(now)
        self._executed.append(now)

    @property
    def limit(self) -> int:
        return self._limit


def evaluate_action(
    policy: AgentPolicy,
    response: AgentResponse,
    action: AgentAction,
    budget: ActionBudget | None = None,
) -> str | None:
    """Return why *action* must be skipped, or None when it may execute."""
    if not policy.auto_remediate:
        return "auto-remediation disabled"
    if not response.can_auto_remediate:
        return "requires approval: plan not marked auto-remediable"
    if action.risk.exceeds(policy.max_auto_risk):
        return f"requires approval: {action.risk.value} risk exceeds {policy.max_auto_risk.value} ceiling"
    if action.action not in policy.allowed_actions:
        return f"action '{action.action}' not in allowed actions"
    if budget is not None and budget.exhausted():
        return f"hourly action limit reached ({budget.limit} actions/hour)"
    return None

"""AI-driven, risk-gated remediation.

Exports:
    RemediationOrchestrator -- Alert -> AI plan -> policy -> execution -> report.
    ActionExecutor          -- Runs one action.
    ActionBudget            -- Sliding one-hour action budget.
    evaluate_action         -- Policy gate for one action.
    parse_agent_response    -- Raw AI text -> AgentResponse or None.
"""

from __future__ import annotations

from opsagent.remediation.executor import ActionExecutor
from opsagent.remediation.orchestrator import RemediationOrchestrator
from opsagent.remediation.parser import parse_agent_response
from opsagent.remediation.policy import ActionBudget, evaluate_action

__all__ = [
    "ActionBudget",
    "ActionExecutor",
    "RemediationOrchestrator",
    "evaluate_action",
    "parse_agent_response",
]

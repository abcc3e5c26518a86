"""Extract the structured part of an AI reply."""

from __future__ import annotations

import json
import re
from typing import Any

import structlog

from opsagent.models.agent import AgentAction, AgentResponse, RiskTier

_log = structlog.get_logger(component="remediation.parser")

_FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)\s*```")


def _field(obj: dict[str, Any], camel: str, snake: str) -> Any:
    return obj[camel] if camel in obj else obj.get(snake)


def _risk(raw: Any) -> RiskTier:
    try:
        return RiskTier(str(raw).lower())
    except ValueError:
        return RiskTier.HIGH


def _pid(raw: Any) -> int | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        pid = int(raw)
    except (TypeError, ValueError):
        return None
    return pid if pid > 0 else None


def _optional_str(raw: Any) -> str | None:
    return raw if isinstance(raw, str) and raw else None


def _action(raw: Any) -> AgentAction | None:
    if not isinstance(raw, dict) or not isinstance(raw.get("action"), str) or not raw["action"]:
        return None
    return AgentAction(
        action=raw["action"],
        description=raw.get("description") if isinstance(raw.get("description"), str) else "",
        risk=_risk(raw.get("risk")),
        command=_optional_str(raw.get("command")),
        pid=_pid(raw.get("pid")),
        service=_optional_str(raw.get("service")),
        message=_optional_str(raw.get("message")),
    )


def _validate(obj: Any) -> AgentResponse | None:
    if not isinstance(obj, dict):
        return None
    raw_actions = obj.get("recommendations")
    if raw_actions is None:
        raw_actions = obj.get("actions")
    actions = []
    if isinstance(raw_actions, list):
        for raw in raw_actions:
            action = _action(raw)
            if action is not None:
                actions.append(action)
    reason = _field(obj, "humanNotificationReason", "human_notification_reason")
    return AgentResponse(
        analysis=obj["analysis"] if isinstance(obj.get("analysis"), str) else "",
        can_auto_remediate=_field(obj, "canAutoRemediate", "can_auto_remediate") is True,
        requires_human_attention=_field(obj, "requiresHumanAttention", "requires_human_attention") is True,
        human_notification_reason=reason if isinstance(reason, str) else None,
        actions=tuple(actions),
    )


def parse_agent_response(raw: str) -> AgentResponse | None:
    """Return the structured response, or None when the reply has none.

    A fenced ```json block wins over the reply body; a reply that is itself a
    JSON object is accepted too.  Unknown risk tiers are treated as high.
    """
    match = _FENCED_JSON.search(raw)
    candidate = match.group(1) if match else raw.strip()
    try:
        obj = json.loads(candidate)
    except (ValueError, RecursionError):
        _log.info("agent_response_unstructured", length=len(raw), fenced=match is not None)
        return None
    return _validate(obj)

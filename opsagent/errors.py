"""Error taxonomy for OpsAgent.

The rule engine and alert manager never let these escape into a monitoring
cycle: they catch, log and degrade (skip a rule, skip a violation).  The
orchestrator turns collaborator and execution failures into recorded results.
"""

from __future__ import annotations


class OpsAgentError(Exception):
    """Base class for all OpsAgent errors."""


class ConfigurationError(OpsAgentError):
    """A rule, policy or environment value is malformed."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Invalid configuration at '{path}': {reason}")
        self.path = path
        self.reason = reason


class CollaboratorUnavailable(OpsAgentError):
    """An external collaborator (AI, backend, notification channel) failed."""

    def __init__(self, collaborator: str, cause: Exception | str) -> None:
        super().__init__(f"{collaborator} unavailable: {cause}")
        self.collaborator = collaborator
        self.cause = cause


class ExecutionFailure(OpsAgentError):
    """A single remediation action failed to execute."""

    def __init__(self, action: str, reason: str) -> None:
        super().__init__(f"Action '{action}' failed: {reason}")
        self.action = action
        self.reason = reason

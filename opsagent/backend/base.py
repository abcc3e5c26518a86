"""Persistence collaborator contract.

The core only ever calls this interface; which variant is active is decided
once at startup by ``build_backend``.  Implementations may raise; callers go
through ``safe_write`` so a failed write is logged and counted, never retried
and never propagated into a monitoring cycle.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime

import structlog

from opsagent.models.agent import AgentResult, ExecutionResult
from opsagent.models.alerts import Alert
from opsagent.models.metrics import MetricSnapshot
from opsagent.observability.metrics import backend_writes_total

_log = structlog.get_logger(component="backend")


class Backend(ABC):
    """Durable storage for alerts, agent responses and per-action records."""

    @property
    @abstractmethod
    def backend_name(self) -> str:
        """Identifier used in logs and metrics."""

    @abstractmethod
    async def initialize(self) -> None: ...

    @abstractmethod
    async def heartbeat(self, snapshot: MetricSnapshot | None = None) -> None: ...

    @abstractmethod
    async def save_alert(self, alert: Alert) -> None: ...

    @abstractmethod
    async def resolve_alert(self, alert_id: str, resolved_at: datetime) -> None: ...

    @abstractmethod
    async def acknowledge_alert(self, alert_id: str, acknowledged_by: str | None = None) -> None: ...

    @abstractmethod
    async def save_agent_response(self, alert: Alert, result: AgentResult, model: str) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    async def stop(self) -> None:
        await self.close()


class NullBackend(Backend):
    """Standalone mode: nothing is persisted."""

    @property
    def backend_name(self) -> str:
        return "none"

    async def initialize(self) -> None:
        _log.info("backend_disabled", reason="no control panel url or database path configured")

    async def heartbeat(self, snapshot: MetricSnapshot | None = None) -> None:
        return None

    async def save_alert(self, alert: Alert) -> None:
        return None

    async def resolve_alert(self, alert_id: str, resolved_at: datetime) -> None:
        return None

    async def acknowledge_alert(self, alert_id: str, acknowledged_by: str | None = None) -> None:
        return None

    async def save_agent_response(self, alert: Alert, result: AgentResult, model: str) -> None:
        return None

    async def close(self) -> None:
        return None


def action_status(result: ExecutionResult) -> str:
    """Persisted status of one action: executed, skipped or failed."""
    return result.status.value


def epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


async def safe_write(backend: Backend, operation: str, write: Callable[[], Awaitable[None]], **context: object) -> bool:
    """Attempt one backend write; log and count the outcome.  Never raises."""
    try:
        await write()
    except Exception as exc:  # noqa: BLE001
        backend_writes_total.labels(operation=operation, success="false").inc()
        _log.warning(
            "backend_write_failed",
            backend=backend.backend_name,
            operation=operation,
            error=str(exc),
            **context,
        )
        return False
    backend_writes_total.labels(operation=operation, success="true").inc()
    return True

"""Shared fixtures for OpsAgent integration tests.

Wires a real RuleEngine, AlertManager, RemediationOrchestrator, SQLite
backend and Monitor together.  Only the edges are faked: the AI client
returns canned replies, shell commands go to a recording runner and
notifications land in a recording channel.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from opsagent.alerts import AlertManager
from opsagent.backend import SQLiteBackend
from opsagent.config import DEFAULT_RULES, merge_rules
from opsagent.models.agent import RiskTier
from opsagent.models.config import AgentPolicy, CollectorConfig, NotificationConfig, OpsAgentConfig
from opsagent.models.metrics import MetricSnapshot
from opsagent.models.notifications import Notification, NotificationKind
from opsagent.monitor import Monitor
from opsagent.notifications.manager import NotificationChannel, NotificationDispatcher
from opsagent.remediation import ActionExecutor, RemediationOrchestrator
from opsagent.remediation.executor import CommandOutput
from opsagent.rules import RuleEngine

# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------

T0 = datetime(2024, 1, 15, 10, 0, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Snapshot and reply factories
# ---------------------------------------------------------------------------


def make_snapshot(
    minute: int = 0,
    cpu: float | None = None,
    memory: float | None = None,
    mounts: dict[str, float] | None = None,
    **extra: Any,
) -> MetricSnapshot:
    """Build a snapshot ``minute`` minutes after T0 with only the given families."""
    data: dict[str, Any] = {"timestamp": (T0 + timedelta(minutes=minute)).isoformat(), **extra}
    if cpu is not None:
        data["cpu"] = {"usage": cpu, "loadAverage": [1.0, 0.8, 0.5]}
    if memory is not None:
        data["memory"] = {"usedPercent": memory, "total": 16_000_000_000}
    if mounts is not None:
        data["disk"] = {"mounts": [{"mount": m, "fs": "ext4", "usedPercent": pct} for m, pct in mounts.items()]}
    return MetricSnapshot.from_dict(data)


def ai_reply(actions: list[dict[str, Any]], **fields: Any) -> str:
    """A chat-style reply wrapping the JSON plan in a fenced block."""
    payload = {
        "analysis": "page cache is bloated",
        "canAutoRemediate": True,
        "requiresHumanAttention": False,
        "recommendations": actions,
        **fields,
    }
    return f"Here is my plan.\n```json\n{json.dumps(payload)}\n```"


def make_ai(reply: str = "", error: Exception | None = None) -> MagicMock:
    ai = MagicMock()
    ai.model = "gpt-test"
    ai.complete = AsyncMock(side_effect=error) if error is not None else AsyncMock(return_value=reply)
    return ai


# ---------------------------------------------------------------------------
# Recording collaborators
# ---------------------------------------------------------------------------


class RecordingChannel(NotificationChannel):
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


class RecordingRunner:
    def __init__(self) -> None:
        self.commands: list[str] = []

    async def __call__(self, command: str, timeout: float) -> CommandOutput:
        self.commands.append(command)
        return CommandOutput(0, stdout="ok")


@dataclass
class Pipeline:
    """Every wired component of one agent, for assertions."""

    monitor: Monitor
    engine: RuleEngine
    alerts: AlertManager
    orchestrator: RemediationOrchestrator
    backend: SQLiteBackend
    dispatcher: NotificationDispatcher
    channel: RecordingChannel
    runner: RecordingRunner
    ai: MagicMock
    config: OpsAgentConfig = field(default_factory=OpsAgentConfig)

    async def settle(self) -> None:
        await self.monitor.wait_idle(timeout=5)
        await self.dispatcher.drain(timeout=5)


async def build_pipeline(
    db_path: Path,
    ai: MagicMock,
    rules: dict[str, Any] | None = None,
    policy: AgentPolicy | None = None,
    cooldown: timedelta = timedelta(minutes=5),
    source: Any = None,
) -> Pipeline:
    config = OpsAgentConfig(
        agent_name="web-01",
        rules=merge_rules(DEFAULT_RULES, rules),
        agent=policy or AgentPolicy(auto_remediate=True, max_auto_risk=RiskTier.LOW),
        notifications=NotificationConfig(),
        collector=CollectorConfig(interval_seconds=1),
    )
    backend = SQLiteBackend(db_path, server_id=config.agent_name)
    await backend.initialize()
    channel = RecordingChannel()
    runner = RecordingRunner()
    dispatcher = NotificationDispatcher(channels=[channel])
    engine = RuleEngine()
    engine.load_rules_from_config(config.rules)
    alerts = AlertManager(cooldown=cooldown)
    orchestrator = RemediationOrchestrator(
        ai_client=ai,
        alert_manager=alerts,
        policy=config.agent,
        executor=ActionExecutor(runner=runner),
        backend=backend,
        dispatcher=dispatcher,
        notification_config=config.notifications,
    )
    monitor = Monitor(engine, alerts, orchestrator, backend, dispatcher, source=source, config=config)
    return Pipeline(monitor, engine, alerts, orchestrator, backend, dispatcher, channel, runner, ai, config)


CACHE_CLEAR_PLAN = ai_reply([{"action": "clear_cache", "description": "drop page cache", "risk": "low"}])

PipelineFactory = Callable[..., Awaitable[Pipeline]]


@pytest.fixture
async def pipeline_factory(tmp_path: Path) -> AsyncIterator[PipelineFactory]:
    """Build pipelines on fresh databases and tear every one down afterwards."""
    built: list[Pipeline] = []

    async def _build(ai: MagicMock, **kwargs: Any) -> Pipeline:
        p = await build_pipeline(tmp_path / f"opsagent-{len(built)}.db", ai, **kwargs)
        built.append(p)
        return p

    yield _build
    for p in built:
        await p.monitor.stop(grace=5)
        await p.backend.close()


@pytest.fixture
async def pipeline(pipeline_factory: PipelineFactory) -> Pipeline:
    """Pipeline whose AI proposes one low-risk cache clear for every alert."""
    return await pipeline_factory(make_ai(CACHE_CLEAR_PLAN))

"""Integration tests for the full monitoring pipeline.

Each test drives: snapshot -> rule evaluation -> alert lifecycle ->
remediation -> persistence and notifications, with only the AI, shell and
notification edges faked.
"""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import pytest

from opsagent.models.agent import ActionStatus, RiskTier
from opsagent.models.config import AgentPolicy
from opsagent.models.notifications import NotificationKind
from opsagent.models.rules import Severity
from opsagent.sources import JsonlSnapshotSource

from .conftest import CACHE_CLEAR_PLAN, Pipeline, PipelineFactory, ai_reply, make_ai, make_snapshot

pytestmark = pytest.mark.integration

# ---------------------------------------------------------------------------
# New alert -> remediation
# ---------------------------------------------------------------------------


class TestNewAlertPipeline:
    async def test_violation_is_remediated_persisted_and_notified(self, pipeline: Pipeline) -> None:
        violations = await pipeline.monitor.run_cycle(make_snapshot(0, cpu=95))
        await pipeline.settle()

        assert [(v.metric, v.rule.severity) for v in violations] == [("cpu.usage", Severity.CRITICAL)]
        (alert,) = pipeline.alerts.get_active_alerts()
        assert alert.agent_response == "page cache is bloated"
        assert alert.agent_actions == ["clear_cache: executed"]
        assert len(pipeline.runner.commands) == 1

        pipeline.ai.complete.assert_awaited_once()
        _system, prompt = pipeline.ai.complete.await_args.args
        assert "cpu.usage" in prompt

        kinds = pipeline.channel.kinds()
        assert NotificationKind.NEW_ALERT in kinds
        assert NotificationKind.AGENT_ANALYSIS in kinds

        row = await pipeline.backend.get_alert(alert.id)
        assert row is not None
        assert row["severity"] == "critical"
        (response,) = await pipeline.backend.get_agent_responses(alert.id)
        assert response["model"] == "gpt-test"
        actions = await pipeline.backend.get_actions(alert.id)
        assert [a["status"] for a in actions] == ["executed"]

    async def test_repeated_violation_is_handled_once(self, pipeline: Pipeline) -> None:
        for minute in range(3):
            await pipeline.monitor.run_cycle(make_snapshot(minute, cpu=95))
            await pipeline.settle()

        assert len(pipeline.alerts.get_alert_history()) == 1
        assert pipeline.ai.complete.await_count == 1
        assert pipeline.channel.kinds().count(NotificationKind.NEW_ALERT) == 1

    async def test_two_families_give_two_alerts(self, pipeline: Pipeline) -> None:
        await pipeline.monitor.run_cycle(make_snapshot(0, cpu=75, memory=92, mounts={"/": 50.0}))
        await pipeline.settle()

        metrics = sorted(a.metric for a in pipeline.alerts.get_active_alerts())
        assert metrics == ["cpu.usage", "memory.usedPercent"]
        assert pipeline.ai.complete.await_count == 2
        assert len(pipeline.orchestrator.get_results()) == 2

    async def test_custom_rule_on_extra_metric(self, pipeline_factory: PipelineFactory) -> None:
        p = await pipeline_factory(
            make_ai(CACHE_CLEAR_PLAN),
            rules={"custom": [{"metric": "gpu.util", "warning": 80, "critical": 95}]},
        )
        await p.monitor.run_cycle(make_snapshot(0, gpu={"util": 91}))
        await p.settle()

        (alert,) = p.alerts.get_active_alerts()
        assert alert.metric == "gpu.util"
        assert alert.severity is Severity.WARNING


# ---------------------------------------------------------------------------
# Resolution and cooldown
# ---------------------------------------------------------------------------


class TestResolution:
    async def test_quiet_cycle_resolves(self, pipeline: Pipeline) -> None:
        await pipeline.monitor.run_cycle(make_snapshot(0, cpu=95))
        await pipeline.settle()
        (alert,) = pipeline.alerts.get_active_alerts()

        await pipeline.monitor.run_cycle(make_snapshot(1, cpu=10))
        await pipeline.settle()

        assert pipeline.alerts.get_active_alerts() == []
        assert alert.is_resolved
        assert NotificationKind.ALERT_RESOLVED in pipeline.channel.kinds()
        row = await pipeline.backend.get_alert(alert.id)
        assert row is not None
        assert row["resolved_at"] is not None

    async def test_cooldown_suppresses_refire(self, pipeline: Pipeline) -> None:
        for minute, cpu in enumerate((95, 10, 95)):
            await pipeline.monitor.run_cycle(make_snapshot(minute, cpu=cpu))
            await pipeline.settle()

        assert pipeline.alerts.get_active_alerts() == []
        assert len(pipeline.alerts.get_alert_history()) == 1
        assert pipeline.ai.complete.await_count == 1

    async def test_zero_cooldown_refires(self, pipeline_factory: PipelineFactory) -> None:
        p = await pipeline_factory(make_ai(CACHE_CLEAR_PLAN), cooldown=timedelta(0))
        for minute, cpu in enumerate((95, 10, 95)):
            await p.monitor.run_cycle(make_snapshot(minute, cpu=cpu))
            await p.settle()

        assert len(p.alerts.get_active_alerts()) == 1
        assert len(p.alerts.get_alert_history()) == 2
        assert p.ai.complete.await_count == 2


# ---------------------------------------------------------------------------
# Policy gate and approval
# ---------------------------------------------------------------------------


class TestPolicyPipeline:
    async def test_high_risk_action_waits_for_approval(self, pipeline_factory: PipelineFactory) -> None:
        plan = ai_reply([{"action": "kill_process", "description": "kill runaway worker", "risk": "high", "pid": 4242}])
        p = await pipeline_factory(make_ai(plan))

        await p.monitor.run_cycle(make_snapshot(0, cpu=99))
        await p.settle()

        (alert,) = p.alerts.get_active_alerts()
        assert alert.agent_actions == ["kill_process: skipped"]
        assert p.runner.commands == []

        outcome = await p.orchestrator.approve_action(alert.id, 0)

        assert outcome is not None
        assert outcome.status is ActionStatus.EXECUTED
        assert p.runner.commands == ["kill -15 4242"]
        assert alert.agent_actions == ["kill_process: executed"]

    async def test_disabled_auto_remediation_executes_nothing(self, pipeline_factory: PipelineFactory) -> None:
        p = await pipeline_factory(
            make_ai(CACHE_CLEAR_PLAN),
            policy=AgentPolicy(auto_remediate=False, max_auto_risk=RiskTier.HIGH),
        )
        await p.monitor.run_cycle(make_snapshot(0, cpu=95))
        await p.settle()

        (result,) = p.orchestrator.get_results()
        assert result.execution_results[0].skip_reason == "auto-remediation disabled"
        assert p.runner.commands == []

    async def test_ai_failure_asks_for_a_human(self, pipeline_factory: PipelineFactory) -> None:
        p = await pipeline_factory(make_ai(error=RuntimeError("upstream 502")))

        await p.monitor.run_cycle(make_snapshot(0, memory=97))
        await p.settle()

        (result,) = p.orchestrator.get_results()
        assert result.response is None
        assert result.raw_response == "AI request failed: upstream 502"
        assert NotificationKind.HUMAN_INTERVENTION in p.channel.kinds()
        (response,) = await p.backend.get_agent_responses(result.alert_id)
        assert response["raw_response"] == "AI request failed: upstream 502"


# ---------------------------------------------------------------------------
# Periodic loop
# ---------------------------------------------------------------------------


class TestMonitorLoop:
    async def test_run_drains_a_recorded_source(self, pipeline_factory: PipelineFactory, tmp_path: Path) -> None:
        path = tmp_path / "snaps.jsonl"
        lines = [
            {"timestamp": "2024-01-15T10:00:00Z", "cpu": {"usage": 95}},
            {"timestamp": "2024-01-15T10:01:00Z", "cpu": {"usage": 96}},
            {"timestamp": "2024-01-15T10:02:00Z", "cpu": {"usage": 12}},
        ]
        path.write_text("\n".join(json.dumps(line) for line in lines) + "\n", encoding="utf-8")
        source = JsonlSnapshotSource(path)
        p = await pipeline_factory(make_ai(CACHE_CLEAR_PLAN), source=source)
        p.config.collector.interval_seconds = 0

        await p.monitor.run()
        await p.settle()

        assert p.monitor.in_flight == 0
        assert p.monitor.cycles == 3
        assert source.count == 3
        assert p.monitor.latest_snapshot is not None
        assert p.monitor.latest_snapshot.cpu is not None
        assert p.monitor.latest_snapshot.cpu.usage == 12
        assert p.alerts.get_active_alerts() == []
        assert len(p.alerts.get_alert_history()) == 1

    async def test_stop_ends_the_loop(self, pipeline_factory: PipelineFactory) -> None:
        calls = 0

        async def endless() -> object:
            nonlocal calls
            calls += 1
            if calls == 2:
                await p.monitor.stop()
            return make_snapshot(calls, cpu=20)

        p = await pipeline_factory(make_ai(CACHE_CLEAR_PLAN), source=endless)
        p.config.collector.interval_seconds = 0

        await p.monitor.run()

        assert p.monitor.cycles == 2

"""OpsAgent command-line interface.

Commands:
    check-config  Load and validate configuration, print the compiled rules.
    evaluate      Evaluate one recorded snapshot and print the violations.
    replay        Run full monitoring cycles over a JSON-lines snapshot file.
    run           Start the long-running agent (monitor loop plus REST API).
"""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import timedelta
from typing import Any

import click

from opsagent import __version__
from opsagent.config import load_config
from opsagent.errors import ConfigurationError
from opsagent.models.config import OpsAgentConfig
from opsagent.observability.logging import setup_logging

_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="YAML config file (defaults to $OPSAGENT_CONFIG_FILE).",
)


def _load(config_path: str | None) -> OpsAgentConfig:
    try:
        config = load_config(config_path)
    except ConfigurationError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    setup_logging(config.log.level, "console")
    return config


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


@click.group()
@click.version_option(__version__, prog_name="opsagent")
def cli() -> None:
    """OpsAgent: host monitoring with AI-driven, risk-gated remediation."""


@cli.command("check-config")
@_config_option
def check_config(config_path: str | None) -> None:
    """Validate configuration and list the compiled rules."""
    from opsagent.rules import compile_rules

    config = _load(config_path)
    ruleset = compile_rules(config.rules)
    _echo_json(
        {
            "agent_name": config.agent_name,
            "rules": [
                {"family": r.family.value, "metric": r.metric, "kind": type(r).__name__} for r in ruleset.rules
            ],
            "skipped": list(ruleset.skipped),
            "alerts": {"cooldown_seconds": config.alerts.cooldown_seconds, "max_history": config.alerts.max_history},
            "agent": {
                "enabled": config.agent.enabled,
                "auto_remediate": config.agent.auto_remediate,
                "max_auto_risk": config.agent.max_auto_risk.value,
                "allowed_actions": list(config.agent.allowed_actions),
                "max_actions_per_hour": config.agent.max_actions_per_hour,
            },
        }
    )
    if ruleset.skipped:
        click.echo(f"{len(ruleset.skipped)} rule(s) skipped", err=True)
        sys.exit(2)


@cli.command("evaluate")
@click.argument("snapshot", type=click.Path(exists=True, dir_okay=False))
@_config_option
def evaluate(snapshot: str, config_path: str | None) -> None:
    """Evaluate SNAPSHOT (a JSON file) and print the violations as JSON."""
    from opsagent.api.schemas import ViolationOut
    from opsagent.rules import RuleEngine
    from opsagent.sources import load_snapshot

    config = _load(config_path)
    engine = RuleEngine()
    engine.load_rules_from_config(config.rules)
    try:
        snap = load_snapshot(snapshot)
    except ConfigurationError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    violations = engine.evaluate(snap)
    _echo_json([ViolationOut.from_violation(v).model_dump(mode="json") for v in violations])


@cli.command("replay")
@click.argument("snapshots", type=click.Path(exists=True, dir_okay=False))
@_config_option
@click.option("--no-remediation", is_flag=True, help="Do not call the AI or execute actions.")
def replay(snapshots: str, config_path: str | None, no_remediation: bool) -> None:
    """Run monitoring cycles over SNAPSHOTS (JSON lines) with the configured collaborators."""
    config = _load(config_path)
    if no_remediation:
        config.agent.enabled = False
    summary = asyncio.run(_replay(config, snapshots))
    _echo_json(summary)


async def _replay(config: OpsAgentConfig, path: str) -> dict[str, Any]:
    from opsagent.alerts import AlertManager
    from opsagent.backend import build_backend
    from opsagent.llm import ChatCompletionsClient
    from opsagent.monitor import Monitor
    from opsagent.notifications import build_notification_dispatcher
    from opsagent.remediation import ActionExecutor, RemediationOrchestrator
    from opsagent.rules import RuleEngine
    from opsagent.sources import JsonlSnapshotSource

    backend = build_backend(config.backend, server_id=config.agent_name)
    await backend.initialize()
    dispatcher = build_notification_dispatcher(config.notifications)
    engine = RuleEngine()
    engine.load_rules_from_config(config.rules)
    alerts = AlertManager(
        cooldown=timedelta(seconds=config.alerts.cooldown_seconds),
        max_history=config.alerts.max_history,
    )

    ai_client = None
    orchestrator = None
    if config.agent.enabled:
        if config.llm.enabled:
            ai_client = ChatCompletionsClient(
                config.llm,
                timeout_seconds=config.agent.ai_timeout_seconds,
                model=config.agent.model or None,
            )
        orchestrator = RemediationOrchestrator(
            ai_client=ai_client,
            alert_manager=alerts,
            policy=config.agent,
            executor=ActionExecutor(timeout=config.agent.action_timeout_seconds),
            backend=backend,
            dispatcher=dispatcher,
            notification_config=config.notifications,
        )

    source = JsonlSnapshotSource(path)
    monitor = Monitor(engine, alerts, orchestrator, backend, dispatcher, source=source, config=config)
    total_violations = 0
    try:
        while True:
            snapshot = await source()
            if snapshot is None:
                break
            total_violations += len(await monitor.run_cycle(snapshot))
        await monitor.stop()
        await dispatcher.drain()
    finally:
        if ai_client is not None:
            await ai_client.aclose()
        await backend.close()

    return {
        "cycles": monitor.cycles,
        "violations": total_violations,
        "alerts_created": len(alerts.get_alert_history()),
        "active_alerts": [a.to_dict() for a in alerts.get_active_alerts()],
        "agent_results": [r.to_dict() for r in orchestrator.get_results()] if orchestrator is not None else [],
    }


@cli.command("run")
@_config_option
@click.option(
    "--snapshots",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Drive the monitor from a JSON-lines file instead of waiting for pushed snapshots.",
)
def run(config_path: str | None, snapshots: str | None) -> None:
    """Start the agent and serve the REST API until interrupted."""
    from opsagent.app import main
    from opsagent.sources import JsonlSnapshotSource

    try:
        config = load_config(config_path)
    except ConfigurationError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    source = JsonlSnapshotSource(snapshots) if snapshots else None
    asyncio.run(main(config=config, source=source))

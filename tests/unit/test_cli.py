"""Tests for the ``opsagent`` command-line interface using click's CliRunner."""

from __future__ import annotations

import json
import os
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog
from click.testing import CliRunner

from opsagent import __version__
from opsagent.cli.main import cli


@pytest.fixture(autouse=True)
def _quiet_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    for key in list(os.environ):
        if key.startswith("OPSAGENT_"):
            monkeypatch.delenv(key)
    # Keep log lines out of the captured JSON output.
    monkeypatch.setattr("opsagent.cli.main.setup_logging", lambda *args, **kwargs: None)
    structlog.configure(logger_factory=structlog.ReturnLoggerFactory(), cache_logger_on_first_use=False)
    yield
    structlog.reset_defaults()


def _write(path: Path, text: str) -> str:
    path.write_text(text, encoding="utf-8")
    return str(path)


def _snapshot(minute: int, cpu: float) -> str:
    return json.dumps({"timestamp": f"2024-01-15T10:{minute:02d}:00Z", "cpu": {"usage": cpu}})


class TestCheckConfig:
    def test_defaults(self) -> None:
        result = CliRunner().invoke(cli, ["check-config"])

        assert result.exit_code == 0, result.output
        body = json.loads(result.stdout)
        metrics = [r["metric"] for r in body["rules"]]
        assert "cpu.usage" in metrics
        assert "memory.usedPercent" in metrics
        assert body["skipped"] == []
        assert body["agent"]["max_auto_risk"] == "low"

    def test_skipped_rules_exit_2(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "c.yaml", "rules:\n  gpu:\n    warning: 80\n")
        result = CliRunner().invoke(cli, ["check-config", "--config", path])

        assert result.exit_code == 2
        assert "rules.gpu" in result.output
        assert "1 rule(s) skipped" in result.output

    def test_invalid_config_exit_1(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "c.yaml", "agent:\n  max_auto_risk: extreme\n")
        result = CliRunner().invoke(cli, ["check-config", "--config", path])

        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_version(self) -> None:
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output


class TestEvaluate:
    def test_prints_violations(self, tmp_path: Path) -> None:
        snap = _write(tmp_path / "snap.json", json.dumps({"cpu": {"usage": 75}, "memory": {"usedPercent": 95}}))
        result = CliRunner().invoke(cli, ["evaluate", snap])

        assert result.exit_code == 0, result.output
        violations = json.loads(result.stdout)
        assert [(v["metric"], v["severity"]) for v in violations] == [
            ("cpu.usage", "warning"),
            ("memory.usedPercent", "critical"),
        ]

    def test_quiet_snapshot(self, tmp_path: Path) -> None:
        snap = _write(tmp_path / "snap.json", json.dumps({"cpu": {"usage": 5}}))
        result = CliRunner().invoke(cli, ["evaluate", snap])
        assert json.loads(result.stdout) == []

    def test_invalid_snapshot(self, tmp_path: Path) -> None:
        snap = _write(tmp_path / "snap.json", "[1, 2, 3]")
        result = CliRunner().invoke(cli, ["evaluate", snap])

        assert result.exit_code == 1
        assert "JSON object" in result.output


class TestReplay:
    def _file(self, tmp_path: Path) -> str:
        lines = [_snapshot(0, 95), _snapshot(1, 96), "not json", _snapshot(2, 10)]
        return _write(tmp_path / "snaps.jsonl", "\n".join(lines) + "\n")

    def test_replay_without_remediation(self, tmp_path: Path) -> None:
        result = CliRunner().invoke(cli, ["replay", self._file(tmp_path), "--no-remediation"])

        assert result.exit_code == 0, result.output
        summary = json.loads(result.stdout)
        assert summary["cycles"] == 3
        assert summary["violations"] == 2
        assert summary["alerts_created"] == 1
        assert summary["active_alerts"] == []
        assert summary["agent_results"] == []

    def test_replay_records_degraded_remediation(self, tmp_path: Path) -> None:
        # No LLM configured: the alert still gets a recorded, unstructured result.
        result = CliRunner().invoke(cli, ["replay", self._file(tmp_path)])

        assert result.exit_code == 0, result.output
        (agent_result,) = json.loads(result.stdout)["agent_results"]
        assert agent_result["response"] is None
        assert agent_result["raw_response"].startswith("AI request failed")

    def test_replay_persists_to_sqlite(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        db = tmp_path / "opsagent.db"
        monkeypatch.setenv("OPSAGENT_DATABASE_PATH", str(db))

        result = CliRunner().invoke(cli, ["replay", self._file(tmp_path), "--no-remediation"])

        assert result.exit_code == 0, result.output
        assert db.exists()

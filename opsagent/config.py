"""Configuration loading from an optional YAML file and environment variables.

Precedence, highest first: ``OPSAGENT_*`` environment variables, the YAML
file named by ``OPSAGENT_CONFIG_FILE`` (or passed explicitly), built-in
defaults.  The rule tree is merged per metric family: a family present in the
file overrides the default keys it names and keeps the rest.
"""

from __future__ import annotations

import copy
import os
import re
import socket
from pathlib import Path
from typing import Any

import yaml

from opsagent.errors import ConfigurationError
from opsagent.models.agent import RiskTier
from opsagent.models.config import (
    ACTION_TYPES,
    AgentPolicy,
    AlertsConfig,
    APIConfig,
    BackendConfig,
    CollectorConfig,
    LLMConfig,
    LogConfig,
    NotificationConfig,
    OpsAgentConfig,
)
from opsagent.rules.loader import parse_duration

DEFAULT_RULES: dict[str, dict[str, Any]] = {
    "cpu": {
        "warning": 70,
        "critical": 90,
        "sustained": {"threshold": 80, "duration": 300},
    },
    "memory": {"warning": 75, "critical": 90},
    "disk": {"warning": 80, "critical": 95},
    "network": {"error_rate_warning": 0.01},
    "processes": {"zombie_warning": 5},
}

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"OPSAGENT_{key}", default)


def _env_bool(key: str, default: bool = False) -> bool:
    val = _env(key, str(default).lower())
    return val.lower() in ("true", "1", "yes")


def _env_int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    raw = _env(key, str(default))
    try:
        val = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"OPSAGENT_{key}", f"expected an integer, got {raw!r}") from exc
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def _env_float(key: str, default: float) -> float:
    raw = _env(key, str(default))
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"OPSAGENT_{key}", f"expected a number, got {raw!r}") from exc


def _env_list(key: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = _env(key, "")
    if not raw:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ConfigurationError("log.level", f"Invalid log level: {value}. Must be one of {sorted(valid)}")
    return value.lower()


def _validate_log_format(value: str) -> str:
    if value.lower() not in ("json", "console"):
        raise ConfigurationError("log.format", f"Invalid log format: {value}. Must be json or console")
    return value.lower()


def _validate_risk(value: str) -> RiskTier:
    try:
        return RiskTier(str(value).lower())
    except ValueError as exc:
        raise ConfigurationError("agent.max_auto_risk", f"unknown risk tier {value!r}") from exc


def _validate_actions(actions: tuple[str, ...]) -> tuple[str, ...]:
    unknown = [a for a in actions if a not in ACTION_TYPES]
    if unknown:
        raise ConfigurationError("agent.allowed_actions", f"unknown action types {unknown}")
    return actions


def _seconds(value: Any, path: str, allow_zero: bool = False) -> int:
    if allow_zero and value in (0, "0"):
        return 0
    return int(parse_duration(value, path).total_seconds())


def _snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def _section(tree: dict[str, Any], name: str) -> dict[str, Any]:
    raw = tree.get(name) or {}
    if not isinstance(raw, dict):
        raise ConfigurationError(name, f"expected a mapping, got {type(raw).__name__}")
    return {_snake(str(k)): v for k, v in raw.items()}


def read_config_file(path: str | Path) -> dict[str, Any]:
    """Parse a YAML config file.  An empty file is an empty mapping."""
    try:
        with open(path, encoding="utf-8") as fh:
            loaded = yaml.safe_load(fh)
    except OSError as exc:
        raise ConfigurationError(str(path), f"cannot read config file: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(str(path), f"invalid YAML: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigurationError(str(path), "top level must be a mapping")
    return loaded


def merge_rules(defaults: dict[str, Any], loaded: dict[str, Any] | None) -> dict[str, Any]:
    """Shallow-merge each family of *loaded* over *defaults*.

    Keys are normalised to snake_case first so a camelCase key in the file
    replaces its snake_case default rather than sitting beside it.
    """
    merged = copy.deepcopy(defaults)
    for family, section in (loaded or {}).items():
        name = _snake(str(family))
        if isinstance(section, dict):
            base = merged.get(name)
            base = dict(base) if isinstance(base, dict) else {}
            base.update({_snake(str(k)): v for k, v in section.items()})
            merged[name] = base
        else:
            # custom rule lists and malformed sections go to the loader as-is
            merged[name] = section
    return merged


def load_config(path: str | Path | None = None) -> OpsAgentConfig:
    """Load configuration from the YAML file and OPSAGENT_* environment variables.

    Raises:
        ConfigurationError: for unreadable files or invalid values.  Fatal at
            startup only; individual malformed rules are skipped later by the
            rule loader.
    """
    file_path = path or _env("CONFIG_FILE", "")
    tree = read_config_file(file_path) if file_path else {}

    alerts = _section(tree, "alerts")
    agent = _section(tree, "agent")
    collector = _section(tree, "collector")

    allowed = agent.get("allowed_actions")
    allowed_default = tuple(allowed) if isinstance(allowed, list | tuple) else ACTION_TYPES[:-1]

    return OpsAgentConfig(
        agent_name=_env("AGENT_NAME", str(tree.get("agent_name") or socket.gethostname())),
        rules=merge_rules(DEFAULT_RULES, tree.get("rules")),
        alerts=AlertsConfig(
            cooldown_seconds=_env_int(
                "ALERT_COOLDOWN",
                _seconds(alerts.get("cooldown", 300), "alerts.cooldown", allow_zero=True),
                min_val=0,
                max_val=86400,
            ),
            max_history=_env_int("ALERT_MAX_HISTORY", int(alerts.get("max_history", 1000)), min_val=1, max_val=100000),
        ),
        agent=AgentPolicy(
            enabled=_env_bool("AGENT_ENABLED", bool(agent.get("enabled", True))),
            auto_remediate=_env_bool("AGENT_AUTO_REMEDIATE", bool(agent.get("auto_remediate", False))),
            model=_env("AGENT_MODEL", str(agent.get("model") or "")),
            max_auto_risk=_validate_risk(_env("AGENT_MAX_AUTO_RISK", str(agent.get("max_auto_risk", "low")))),
            allowed_actions=_validate_actions(_env_list("AGENT_ALLOWED_ACTIONS", allowed_default)),
            max_actions_per_hour=_env_int(
                "AGENT_MAX_ACTIONS_PER_HOUR",
                int(agent.get("max_actions_per_hour", 10)),
                min_val=0,
                max_val=1000,
            ),
            ai_timeout_seconds=_env_int("AGENT_AI_TIMEOUT", int(agent.get("ai_timeout", 60)), min_val=5, max_val=600),
            action_timeout_seconds=_env_int(
                "AGENT_ACTION_TIMEOUT",
                int(agent.get("action_timeout", 30)),
                min_val=1,
                max_val=600,
            ),
            approval_window_seconds=_env_int(
                "AGENT_APPROVAL_WINDOW",
                _seconds(agent.get("approval_window", 3600), "agent.approval_window", allow_zero=True),
                min_val=0,
                max_val=7 * 86400,
            ),
        ),
        llm=LLMConfig(
            enabled=_env_bool("LLM_ENABLED", False),
            base_url=_env("LLM_BASE_URL", "https://api.openai.com/v1"),
            api_key_env=_env("LLM_API_KEY_ENV", "OPENAI_API_KEY"),
            model=_env("LLM_MODEL", "gpt-4o-mini"),
            temperature=_env_float("LLM_TEMPERATURE", 0.2),
            max_tokens=_env_int("LLM_MAX_TOKENS", 2048, min_val=64, max_val=32768),
        ),
        notifications=NotificationConfig(
            discord_secret_ref=_env("NOTIFICATIONS_DISCORD_SECRET_REF", ""),
            email_secret_ref=_env("NOTIFICATIONS_EMAIL_SECRET_REF", ""),
            email_to=_env("NOTIFICATIONS_EMAIL_TO", ""),
            webhook_secret_ref=_env("NOTIFICATIONS_WEBHOOK_SECRET_REF", ""),
            notify_new_alerts=_env_bool("NOTIFY_NEW_ALERTS", True),
            notify_resolved=_env_bool("NOTIFY_RESOLVED", True),
            notify_analysis=_env_bool("NOTIFY_ANALYSIS", True),
        ),
        backend=BackendConfig(
            control_panel_url=_env("CONTROL_PANEL_URL", ""),
            control_panel_api_key=_env("CONTROL_PANEL_API_KEY", ""),
            database_path=_env("DATABASE_PATH", ""),
            timeout_seconds=_env_int("BACKEND_TIMEOUT", 10, min_val=1, max_val=120),
        ),
        collector=CollectorConfig(
            interval_seconds=_env_int(
                "COLLECTOR_INTERVAL",
                _seconds(collector.get("interval", 30), "collector.interval"),
                min_val=1,
                max_val=3600,
            ),
        ),
        api=APIConfig(
            enabled=_env_bool("API_ENABLED", True),
            host=_env("API_HOST", "0.0.0.0"),
            port=_env_int("API_PORT", 8080, min_val=1024, max_val=65535),
        ),
        log=LogConfig(
            level=_validate_log_level(_env("LOG_LEVEL", "info")),
            format=_validate_log_format(_env("LOG_FORMAT", "json")),
        ),
    )

"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from opsagent.models.agent import RiskTier

ACTION_TYPES: tuple[str, ...] = (
    "notify_human",
    "log_analysis",
    "clear_cache",
    "cleanup_disk",
    "kill_process",
    "restart_service",
    "custom_command",
)


@dataclass
class AlertsConfig:
    """Alert Manager configuration."""

    cooldown_seconds: int = 300
    max_history: int = 1000


@dataclass
class AgentPolicy:
    """Remediation policy applied by the orchestrator to every proposed action."""

    enabled: bool = True
    auto_remediate: bool = False
    model: str = ""
    max_auto_risk: RiskTier = RiskTier.LOW
    allowed_actions: tuple[str, ...] = ACTION_TYPES[:-1]
    max_actions_per_hour: int = 10
    ai_timeout_seconds: int = 60
    action_timeout_seconds: int = 30
    # 0 keeps skipped actions approvable indefinitely
    approval_window_seconds: int = 3600


@dataclass
class LLMConfig:
    """OpenAI-compatible chat-completions endpoint configuration."""

    enabled: bool = False
    base_url: str = "https://api.openai.com/v1"
    api_key_env: str = "OPENAI_API_KEY"
    model: str = "gpt-4o-mini"
    temperature: float = 0.2
    max_tokens: int = 2048


@dataclass
class NotificationConfig:
    """Notification system configuration.

    ``*_secret_ref`` fields name environment variables holding the secret
    (webhook URL, SMTP DSN); the secrets themselves never live in config.
    """

    discord_secret_ref: str = ""
    email_secret_ref: str = ""
    email_to: str = ""
    webhook_secret_ref: str = ""
    notify_new_alerts: bool = True
    notify_resolved: bool = True
    notify_analysis: bool = True


@dataclass
class BackendConfig:
    """Persistence backend selection."""

    control_panel_url: str = ""
    control_panel_api_key: str = ""
    database_path: str = ""
    timeout_seconds: int = 10


@dataclass
class CollectorConfig:
    """Periodic driver configuration."""

    interval_seconds: int = 30


@dataclass
class APIConfig:
    """REST API configuration."""

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"
    format: str = "json"


@dataclass
class OpsAgentConfig:
    """Top-level OpsAgent configuration."""

    agent_name: str = ""
    rules: dict[str, Any] = field(default_factory=dict)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    agent: AgentPolicy = field(default_factory=AgentPolicy)
    llm: LLMConfig = field(default_factory=LLMConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    collector: CollectorConfig = field(default_factory=CollectorConfig)
    api: APIConfig = field(default_factory=APIConfig)
    log: LogConfig = field(default_factory=LogConfig)

"""Prompt templates for the remediation orchestrator.

Defines the system prompt, the per-alert user prompt template and the
helpers that render a snapshot and the recent alert history into it.
"""

from __future__ import annotations

from collections.abc import Sequence

from opsagent.models.alerts import Alert
from opsagent.models.metrics import MetricSnapshot

SYSTEM_PROMPT: str = """\
You are OpsAgent, an on-host operations engineer responsible for keeping a
Linux server healthy. You receive one alert at a time together with the
current system metrics and decide how to handle it.

RULES:
1. Base your analysis ONLY on the alert and metrics provided.
2. Prefer safe, reversible actions. Anything destructive is "high" risk.
3. For critical alerts ALWAYS include a "notify_human" action with a clear message.
4. Return a single JSON object inside a ```json fenced block. No other JSON.\
"""

ALERT_PROMPT_TEMPLATE: str = """\
# System Alert - Remediation Required

## Alert Details
- Severity: {severity}
- Message: {message}
- Metric: {metric}
- Current Value: {current_value}
- Threshold: {threshold}
- Time: {timestamp}

## Current System Metrics
{metrics_section}

## Recent Alert History
{history_section}

## Your Task
Analyze this alert and decide how to handle it. You can take automated
remediation actions for safe operations, notify humans, or both.

Response format:
```json
{{
  "analysis": "your analysis of the problem and its root cause",
  "canAutoRemediate": true,
  "requiresHumanAttention": false,
  "humanNotificationReason": "why humans need to know (if applicable)",
  "recommendations": [
    {{
      "action": "action_type",
      "description": "what this action does",
      "command": "shell command (custom_command only)",
      "risk": "low|medium|high",
      "pid": 1234,
      "service": "service_name",
      "message": "message for notify_human"
    }}
  ]
}}
```

Available actions:
- "notify_human": send a message to the ops team (requires message)
- "log_analysis": collect recent error logs (low risk)
- "clear_cache": drop filesystem caches (low risk)
- "cleanup_disk": remove temporary files and vacuum the journal (medium risk)
- "kill_process": send SIGTERM to a process (requires pid)
- "restart_service": restart a system service (requires service)
- "custom_command": run a shell command (high risk, requires command)\
"""

_HISTORY_LIMIT = 5


def _bytes(value: float | None) -> str:
    if value is None:
        return "n/a"
    units = ["B", "KB", "MB", "GB", "TB"]
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{value:.2f} {units[index]}"


def _pct(value: float | None) -> str:
    return "n/a" if value is None else f"{value:.1f}%"


def format_metrics(snapshot: MetricSnapshot | None) -> str:
    if snapshot is None:
        return "(detailed metrics not available)"

    lines: list[str] = []
    if snapshot.cpu is not None:
        cpu = snapshot.cpu
        lines += ["### CPU", f"- Usage: {_pct(cpu.usage)}"]
        if cpu.load_average:
            lines.append(f"- Load Average: {', '.join(f'{v:g}' for v in cpu.load_average)}")
        if cpu.temperature is not None:
            lines.append(f"- Temperature: {cpu.temperature:g}C")
    if snapshot.memory is not None:
        mem = snapshot.memory
        lines += [
            "### Memory",
            f"- Total: {_bytes(mem.total)}",
            f"- Used: {_bytes(mem.used)} ({_pct(mem.used_percent)})",
            f"- Swap Used: {_bytes(mem.swap_used)} ({_pct(mem.swap_percent)})",
        ]
    if snapshot.disk is not None and snapshot.disk.mounts:
        lines.append("### Disk")
        lines += [
            f"- {m.mount}: {_bytes(m.used)}/{_bytes(m.size)} ({_pct(m.used_percent)})" for m in snapshot.disk.mounts
        ]
    if snapshot.network is not None:
        net = snapshot.network
        lines += ["### Network", f"- Error Rate: {_pct(net.error_rate * 100 if net.error_rate is not None else None)}"]
    if snapshot.processes is not None:
        procs = snapshot.processes
        lines += ["### Processes", f"- Running: {procs.running}", f"- Zombie: {procs.zombie}"]
        if procs.top_cpu:
            lines.append("#### Top CPU Consumers")
            lines += [f"- {p.name} (PID {p.pid}): {_pct(p.cpu)} CPU" for p in procs.top_cpu]
        if procs.top_memory:
            lines.append("#### Top Memory Consumers")
            lines += [f"- {p.name} (PID {p.pid}): {_pct(p.memory)} Memory" for p in procs.top_memory]
    return "\n".join(lines) if lines else "(detailed metrics not available)"


def format_history(recent: Sequence[Alert]) -> str:
    if not recent:
        return "No recent alerts"
    return "\n".join(
        f"- [{a.severity.value}] {a.message} at {a.timestamp.isoformat()}" for a in list(recent)[-_HISTORY_LIMIT:]
    )


def build_alert_prompt(
    alert: Alert,
    snapshot: MetricSnapshot | None = None,
    recent: Sequence[Alert] = (),
) -> str:
    """Render the user prompt for one alert."""
    return ALERT_PROMPT_TEMPLATE.format(
        severity=alert.severity.value.upper(),
        message=alert.message,
        metric=alert.metric,
        current_value=f"{alert.current_value:g}",
        threshold=f"{alert.threshold:g}",
        timestamp=alert.timestamp.isoformat(),
        metrics_section=format_metrics(snapshot),
        history_section=format_history(recent),
    )

"""Executes remediation actions on the local host.

Every handler either returns output text or raises ExecutionFailure;
``ActionExecutor.execute`` converts both into an ExecutionResult and never
raises.  Shell access goes through an injectable runner so tests never
spawn processes.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog

from opsagent.errors import ExecutionFailure
from opsagent.models.agent import AgentAction, ExecutionResult

_log = structlog.get_logger(component="remediation.executor")

MAX_OUTPUT_CHARS = 2000

_BLOCKED_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"rm\s+-rf\s+/(?!\w)"),
    re.compile(r"mkfs"),
    re.compile(r"dd\s+if="),
    re.compile(r">\s*/dev/sd"),
    re.compile(r"chmod\s+777\s+/"),
    re.compile(r"(curl|wget)\b[^|]*\|\s*(ba)?sh\b"),
)

_SERVICE_NAME = re.compile(r"[^a-zA-Z0-9_-]")

_LOG_ANALYSIS_CMD = (
    "journalctl -p err -n 50 --no-pager 2>/dev/null "
    "|| tail -50 /var/log/syslog 2>/dev/null "
    "|| echo 'No logs available'"
)
_CLEAR_CACHE_CMD = "sync && echo 3 > /proc/sys/vm/drop_caches 2>/dev/null || echo 'Cache clear requires root'"
_CLEANUP_DISK_CMDS = (
    "rm -rf /tmp/* 2>/dev/null || true",
    "rm -rf /var/tmp/* 2>/dev/null || true",
    "journalctl --vacuum-time=7d 2>/dev/null || true",
)


@dataclass(frozen=True)
class CommandOutput:
    returncode: int
    stdout: str = ""
    stderr: str = ""


CommandRunner = Callable[[str, float], Awaitable[CommandOutput]]


async def run_shell(command: str, timeout: float) -> CommandOutput:
    """Run *command* through the shell, killing it after *timeout* seconds."""
    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError as exc:
        proc.kill()
        await proc.wait()
        raise ExecutionFailure(command, f"timed out after {timeout:g}s") from exc
    return CommandOutput(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )


def blocked_reason(command: str) -> str | None:
    """Return why *command* is refused, or None when it may run."""
    for pattern in _BLOCKED_PATTERNS:
        if pattern.search(command):
            return f"Command blocked: potentially dangerous operation ({pattern.pattern})"
    return None


def _truncate(text: str) -> str:
    return text[:MAX_OUTPUT_CHARS]


class ActionExecutor:
    """Runs one AgentAction and reports the outcome.

    Args:
        runner:  Coroutine that runs a shell command.  Defaults to run_shell.
        timeout: Per-command timeout in seconds.
    """

    def __init__(self, runner: CommandRunner | None = None, timeout: float = 30.0) -> None:
        self._runner = runner or run_shell
        self._timeout = timeout
        self._handlers: dict[str, Callable[[AgentAction], Awaitable[str]]] = {
            "notify_human": self._notify_human,
            "log_analysis": self._log_analysis,
            "clear_cache": self._clear_cache,
            "cleanup_disk": self._cleanup_disk,
            "kill_process": self._kill_process,
            "restart_service": self._restart_service,
            "custom_command": self._custom_command,
        }

    async def execute(self, action: AgentAction) -> ExecutionResult:
        handler = self._handlers.get(action.action)
        if handler is None:
            _log.warning("remediation_action_unknown", action=action.action)
            return ExecutionResult(action=action, error=f"Unknown action type: {action.action}")
        try:
            output = await handler(action)
        except ExecutionFailure as exc:
            _log.warning("remediation_action_failed", action=action.action, error=exc.reason)
            return ExecutionResult(action=action, error=exc.reason)
        except Exception as exc:  # noqa: BLE001
            _log.error("remediation_action_crashed", action=action.action, error=str(exc))
            return ExecutionResult(action=action, error=str(exc) or type(exc).__name__)
        _log.info("remediation_action_executed", action=action.action, risk=action.risk.value)
        return ExecutionResult(action=action, success=True, output=_truncate(output))

    async def _run(self, name: str, command: str) -> str:
        result = await self._runner(command, self._timeout)
        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip()[:200]
            raise ExecutionFailure(name, f"exit status {result.returncode}: {detail}")
        return result.stdout or result.stderr

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _notify_human(self, action: AgentAction) -> str:
        # Delivery is the orchestrator's job; executing just records intent.
        return action.message or action.description or "Notification pending"

    async def _log_analysis(self, action: AgentAction) -> str:
        return await self._run(action.action, _LOG_ANALYSIS_CMD)

    async def _clear_cache(self, action: AgentAction) -> str:
        return await self._run(action.action, _CLEAR_CACHE_CMD) or "Cache clear attempted"

    async def _cleanup_disk(self, action: AgentAction) -> str:
        outputs = []
        for command in _CLEANUP_DISK_CMDS:
            try:
                out = await self._run(action.action, command)
            except ExecutionFailure as exc:
                _log.debug("cleanup_step_failed", command=command, error=exc.reason)
                continue
            if out.strip():
                outputs.append(out.strip())
        return f"Disk cleanup completed. {'; '.join(outputs)}".strip()

    async def _kill_process(self, action: AgentAction) -> str:
        if action.pid is None:
            raise ExecutionFailure(action.action, "No PID specified for kill_process action")
        await self._run(action.action, f"kill -15 {action.pid}")
        return f"Sent SIGTERM to process {action.pid}"

    async def _restart_service(self, action: AgentAction) -> str:
        if not action.service:
            raise ExecutionFailure(action.action, "No service name specified")
        name = _SERVICE_NAME.sub("", action.service)
        if not name:
            raise ExecutionFailure(action.action, f"Invalid service name {action.service!r}")
        try:
            await self._run(action.action, f"systemctl restart {name}")
        except ExecutionFailure:
            await self._run(action.action, f"service {name} restart")
        return f"Restarted service {name}"

    async def _custom_command(self, action: AgentAction) -> str:
        if not action.command:
            raise ExecutionFailure(action.action, "No command specified")
        reason = blocked_reason(action.command)
        if reason is not None:
            raise ExecutionFailure(action.action, reason)
        return await self._run(action.action, action.command)

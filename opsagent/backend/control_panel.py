"""Remote persistence through the OpsAgent control-panel HTTP API.

Endpoints used:
    GET  /api/health
    POST /api/agents              register this host
    POST /api/agents/heartbeat    liveness + metrics summary (404 -> re-register)
    POST /api/alerts              save an alert
    POST /api/agent-responses     save an AI response with its actions
"""

from __future__ import annotations

import platform
import socket
from datetime import datetime
from typing import Any

import httpx
import structlog

from opsagent.backend.base import Backend, action_status, epoch_ms
from opsagent.errors import CollaboratorUnavailable
from opsagent.models.agent import AgentResult
from opsagent.models.alerts import Alert
from opsagent.models.metrics import MetricSnapshot

_log = structlog.get_logger(component="backend.control_panel")


def _local_ip() -> str:
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            # No packet is sent; connect() only selects the outbound interface.
            sock.connect(("192.0.2.1", 80))
            return str(sock.getsockname()[0])
    except OSError:
        return ""


class ControlPanelBackend(Backend):
    """Persists through the control panel.

    Args:
        base_url:  Control panel root, e.g. ``https://panel.example.com``.
        server_id: Identifier of this host.
        api_key:   Optional bearer token.
        timeout:   Per-request timeout in seconds.
    """

    def __init__(self, base_url: str, server_id: str, api_key: str = "", timeout: float = 10.0) -> None:
        if not base_url:
            raise ValueError("Control panel base_url must not be empty")
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._server_id = server_id
        self._registered = False
        self._client = httpx.AsyncClient(base_url=base_url.rstrip("/"), headers=headers, timeout=timeout)

    @property
    def backend_name(self) -> str:
        return "control_panel"

    @property
    def registered(self) -> bool:
        return self._registered

    async def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        try:
            return await self._client.post(path, json=payload)
        except httpx.HTTPError as exc:
            raise CollaboratorUnavailable("control_panel", exc) from exc

    @staticmethod
    def _raise_for(response: httpx.Response, what: str) -> None:
        if not response.is_success:
            raise CollaboratorUnavailable(
                "control_panel", f"{what} failed: HTTP {response.status_code} {response.text[:200]}"
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def check_health(self) -> bool:
        try:
            response = await self._client.get("/api/health")
            return bool(response.json().get("success"))
        except (httpx.HTTPError, ValueError, AttributeError):
            return False

    async def initialize(self) -> None:
        if not await self.check_health():
            _log.warning("control_panel_unhealthy")
        await self.register()

    async def register(self) -> None:
        host = socket.gethostname()
        response = await self._post(
            "/api/agents",
            {
                "id": self._server_id,
                "hostname": host,
                "name": self._server_id or host,
                "ip_address": _local_ip(),
                "os": platform.system().lower(),
                "os_version": platform.release(),
            },
        )
        self._raise_for(response, "register")
        self._registered = True
        _log.info("control_panel_registered", server_id=self._server_id)

    async def heartbeat(self, snapshot: MetricSnapshot | None = None) -> None:
        summary = None
        if snapshot is not None:
            summary = {
                "cpu_usage": snapshot.cpu.usage if snapshot.cpu else None,
                "memory_used_percent": snapshot.memory.used_percent if snapshot.memory else None,
                "disk_max_used_percent": snapshot.disk.max_used_percent if snapshot.disk else None,
                "process_count": snapshot.processes.total if snapshot.processes else None,
            }
        response = await self._post("/api/agents/heartbeat", {"agent_id": self._server_id, "metrics_summary": summary})
        if response.status_code == 404:
            _log.info("control_panel_agent_unknown", action="re-register")
            await self.register()
            return
        self._raise_for(response, "heartbeat")

    async def close(self) -> None:
        # The panel marks the agent offline once heartbeats stop.
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def save_alert(self, alert: Alert) -> None:
        response = await self._post(
            "/api/alerts",
            {
                "id": alert.id,
                "server_id": self._server_id,
                "severity": alert.severity.value,
                "message": alert.message,
                "metric": alert.metric,
                "current_value": alert.current_value,
                "threshold": alert.threshold,
                "timestamp": epoch_ms(alert.timestamp),
            },
        )
        self._raise_for(response, "save alert")

    async def resolve_alert(self, alert_id: str, resolved_at: datetime) -> None:
        # The panel derives resolution from later alert traffic; there is no endpoint.
        _log.debug("control_panel_resolve_not_supported", alert_id=alert_id)

    async def acknowledge_alert(self, alert_id: str, acknowledged_by: str | None = None) -> None:
        _log.debug("control_panel_acknowledge_not_supported", alert_id=alert_id)

    async def save_agent_response(self, alert: Alert, result: AgentResult, model: str) -> None:
        executed_at = epoch_ms(result.timestamp)
        response = result.response
        payload = {
            "id": result.response_id,
            "alert_id": result.alert_id,
            "server_id": self._server_id,
            "model": model,
            "analysis": response.analysis if response else "",
            "can_auto_remediate": response.can_auto_remediate if response else False,
            "requires_human_attention": response.requires_human_attention if response else False,
            "human_notification_reason": response.human_notification_reason if response else None,
            "raw_response": result.raw_response,
            "actions": [
                {
                    "action_type": r.action.action,
                    "description": r.action.description,
                    "command": r.action.command,
                    "risk": r.action.risk.value,
                    "status": action_status(r),
                    "output": r.output,
                    "error": r.error,
                    "skip_reason": r.skip_reason,
                    "executed_at": executed_at,
                }
                for r in result.execution_results
            ],
            "timestamp": executed_at,
        }
        http_response = await self._post("/api/agent-responses", payload)
        self._raise_for(http_response, "save agent response")

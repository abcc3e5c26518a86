"""REST API routes.

Route handlers read their collaborators from ``request.app.state``; the
factory in ``opsagent.api.app`` puts them there.  Unknown ids answer 404 with
the ``{error, detail}`` envelope.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from opsagent.api.schemas import (
    AcknowledgeResponse,
    AgentResultListResponse,
    AgentResultOut,
    AlertListResponse,
    AlertOut,
    ErrorResponse,
    ExecutionOut,
    HealthResponse,
    SnapshotRequest,
    SnapshotResponse,
    ViolationOut,
)
from opsagent.models.metrics import MetricSnapshot
from opsagent.observability.metrics import render_latest

_log = structlog.get_logger(component="api.routes")

router = APIRouter()
metrics_router = APIRouter()


def _error(status_code: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=error, detail=detail).model_dump())


def _not_found(what: str, ident: str) -> JSONResponse:
    return _error(404, "NOT_FOUND", f"{what} '{ident}' not found")


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    from opsagent import __version__

    state = request.app.state
    config = state.config
    engine = state.engine
    monitor = state.monitor
    return HealthResponse(
        version=__version__,
        agent_name=config.agent_name if config is not None else "",
        active_alerts=len(state.alert_manager.get_active_alerts()),
        rules=len(engine.get_rules()) if engine is not None else 0,
        remediation_enabled=state.orchestrator is not None,
        auto_remediate=bool(config.agent.auto_remediate) if config is not None else False,
        cycles=monitor.cycles if monitor is not None else 0,
    )


@router.get("/alerts", response_model=AlertListResponse)
async def list_active_alerts(request: Request) -> AlertListResponse:
    alerts = request.app.state.alert_manager.get_active_alerts()
    return AlertListResponse(count=len(alerts), alerts=[AlertOut.from_alert(a) for a in alerts])


@router.get("/alerts/history", response_model=AlertListResponse)
async def list_alert_history(request: Request, limit: int = 100) -> AlertListResponse:
    history = request.app.state.alert_manager.get_alert_history()
    # newest first
    selected = list(reversed(history))[: max(limit, 0)]
    return AlertListResponse(count=len(selected), alerts=[AlertOut.from_alert(a) for a in selected])


@router.get("/alerts/{alert_id}", response_model=AlertOut, responses={404: {"model": ErrorResponse}})
async def get_alert(request: Request, alert_id: str) -> Any:
    alert = request.app.state.alert_manager.get_alert_by_id(alert_id)
    if alert is None:
        return _not_found("Alert", alert_id)
    return AlertOut.from_alert(alert)


@router.post(
    "/alerts/{alert_id}/acknowledge",
    response_model=AcknowledgeResponse,
    responses={404: {"model": ErrorResponse}},
)
async def acknowledge_alert(request: Request, alert_id: str) -> Any:
    if not request.app.state.alert_manager.acknowledge_alert(alert_id):
        return _not_found("Active alert", alert_id)
    return AcknowledgeResponse(id=alert_id, acknowledged=True)


@router.get("/agent/results", response_model=AgentResultListResponse)
async def list_agent_results(request: Request) -> Any:
    orchestrator = request.app.state.orchestrator
    results = orchestrator.get_results() if orchestrator is not None else []
    # newest first
    out = [AgentResultOut.from_result(r) for r in reversed(results)]
    return AgentResultListResponse(count=len(out), results=out)


@router.get(
    "/agent/results/{alert_id}",
    response_model=AgentResultOut,
    responses={404: {"model": ErrorResponse}},
)
async def get_agent_result(request: Request, alert_id: str) -> Any:
    orchestrator = request.app.state.orchestrator
    result = orchestrator.get_result_for_alert(alert_id) if orchestrator is not None else None
    if result is None:
        return _not_found("Agent result for alert", alert_id)
    return AgentResultOut.from_result(result)


@router.post(
    "/agent/results/{alert_id}/actions/{index}/approve",
    response_model=ExecutionOut,
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def approve_action(request: Request, alert_id: str, index: int) -> Any:
    orchestrator = request.app.state.orchestrator
    if orchestrator is None:
        return _error(503, "REMEDIATION_DISABLED", "Remediation is disabled on this agent.")
    outcome = await orchestrator.approve_action(alert_id, index)
    if outcome is None:
        return _not_found("Pending action", f"{alert_id}#{index}")
    _log.info("action_approved_via_api", alert_id=alert_id, index=index, status=outcome.status.value)
    return ExecutionOut.from_result(outcome)


@router.post(
    "/agent/results/{alert_id}/actions/{index}/reject",
    response_model=ExecutionOut,
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def reject_action(request: Request, alert_id: str, index: int) -> Any:
    orchestrator = request.app.state.orchestrator
    if orchestrator is None:
        return _error(503, "REMEDIATION_DISABLED", "Remediation is disabled on this agent.")
    outcome = await orchestrator.reject_action(alert_id, index)
    if outcome is None:
        return _not_found("Pending action", f"{alert_id}#{index}")
    _log.info("action_rejected_via_api", alert_id=alert_id, index=index)
    return ExecutionOut.from_result(outcome)


@router.post(
    "/snapshots",
    response_model=SnapshotResponse,
    responses={503: {"model": ErrorResponse}},
)
async def push_snapshot(request: Request, body: SnapshotRequest) -> Any:
    """Run one monitoring cycle on a snapshot pushed by an external collector."""
    monitor = request.app.state.monitor
    if monitor is None:
        return _error(503, "MONITOR_UNAVAILABLE", "No monitor is attached to this API.")
    violations = await monitor.run_cycle(MetricSnapshot.from_dict(body.as_dict()))
    return SnapshotResponse(count=len(violations), violations=[ViolationOut.from_violation(v) for v in violations])


@metrics_router.get("/metrics", include_in_schema=False)
async def prometheus_metrics() -> Response:
    payload, content_type = render_latest()
    return Response(content=payload, media_type=content_type)

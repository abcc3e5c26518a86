"""FastAPI application factory for OpsAgent.

Usage::

    from opsagent.api.app import create_app

    app = create_app(
        alert_manager=alert_manager,
        orchestrator=orchestrator,
        engine=engine,
        monitor=monitor,
        config=config,
    )

The factory is used by both the production bootstrap (``opsagent.app``) and
unit tests.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from opsagent.api.routes import metrics_router, router
from opsagent.api.schemas import ErrorResponse

_log = structlog.get_logger(component="api.app")

_API_PREFIX = "/api/v1"


def create_app(
    alert_manager: Any,
    orchestrator: Any = None,
    engine: Any = None,
    monitor: Any = None,
    config: Any = None,
) -> FastAPI:
    """Create and configure the OpsAgent FastAPI application.

    Args:
        alert_manager: AlertManager instance.
        orchestrator:  Optional RemediationOrchestrator (results and approvals).
        engine:        Optional RuleEngine (rule count in /health).
        monitor:       Optional Monitor (snapshot push and cycle count).
        config:        OpsAgentConfig, used for metadata.

    Returns:
        Configured FastAPI application, ready to be served by uvicorn.
    """
    from opsagent import __version__

    app = FastAPI(
        title="OpsAgent",
        summary="Host monitoring and AI-driven remediation API",
        version=__version__,
        description=(
            "OpsAgent evaluates host metric snapshots against threshold rules, tracks "
            "deduplicated alerts and records risk-gated remediation attempts."
        ),
        docs_url="/api/v1/docs",
        redoc_url="/api/v1/redoc",
        openapi_url="/api/v1/openapi.json",
    )

    # Dependencies live in app.state so route handlers can reach them
    # without module-level globals.
    app.state.alert_manager = alert_manager
    app.state.orchestrator = orchestrator
    app.state.engine = engine
    app.state.monitor = monitor
    app.state.config = config

    app.include_router(router, prefix=_API_PREFIX)
    app.include_router(metrics_router)

    # -----------------------------------------------------------------------
    # Exception handlers
    # -----------------------------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        _request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        """Map Pydantic validation errors to our error envelope."""
        errors = exc.errors()
        first_field = ""
        first_msg = ""
        if errors:
            locs = errors[0].get("loc", ())
            first_field = ".".join(str(part) for part in locs[1:]) if len(locs) > 1 else ""
            first_msg = str(errors[0].get("msg", ""))
        detail = f"{first_field}: {first_msg}" if first_field else first_msg

        return JSONResponse(
            status_code=400,
            content=ErrorResponse(error="INVALID_REQUEST", detail=detail).model_dump(),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        _request: Request,
        exc: StarletteHTTPException,
    ) -> JSONResponse:
        error = "NOT_FOUND" if exc.status_code == 404 else "HTTP_ERROR"
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(error=error, detail=str(exc.detail)).model_dump(),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        """Catch-all for unhandled exceptions; never expose stack traces."""
        _log.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error=str(exc),
        )
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="INTERNAL_ERROR",
                detail="An unexpected error occurred.",
            ).model_dump(),
        )

    return app

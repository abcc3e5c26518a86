"""Structured logging for OpsAgent using structlog.

The agent runs unattended, so the default renderer is JSON on stderr for
log shippers.  The CLI switches to the console renderer for humans.
"""

from __future__ import annotations

import logging
import sys

import structlog

_FORMATS = ("json", "console")


def setup_logging(level: str = "info", fmt: str = "json") -> None:
    """Configure structlog processors and the output renderer."""
    log_level = getattr(logging, level.upper(), logging.INFO)
    if fmt not in _FORMATS:
        fmt = "json"

    renderer: structlog.types.Processor
    if fmt == "console":
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(component: str) -> structlog.stdlib.BoundLogger:
    """Get a logger bound with a component name."""
    return structlog.get_logger(component=component)  # type: ignore[return-value]


def alert_log_context(alert_id: str, metric: str):  # type: ignore[no-untyped-def]
    """Bind alert identity to every log line emitted inside the block.

    Remediation runs as concurrent tasks; contextvars keep each task's
    binding separate.
    """
    return structlog.contextvars.bound_contextvars(alert_id=alert_id, metric=metric)

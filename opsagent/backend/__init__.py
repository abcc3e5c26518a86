"""Persistence backends.

Exports:
    Backend             -- Interface the core writes through.
    SQLiteBackend       -- Local database file.
    ControlPanelBackend -- Remote control-panel HTTP API.
    NullBackend         -- Standalone mode, persists nothing.
    build_backend       -- Chooses one variant at startup.
    safe_write          -- Logged, counted, never-raising write helper.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from opsagent.backend.base import Backend, NullBackend, action_status, safe_write
from opsagent.backend.control_panel import ControlPanelBackend
from opsagent.backend.sqlite import SQLiteBackend

if TYPE_CHECKING:
    from opsagent.models.config import BackendConfig

_log = structlog.get_logger(component="backend")

__all__ = [
    "Backend",
    "ControlPanelBackend",
    "NullBackend",
    "SQLiteBackend",
    "action_status",
    "build_backend",
    "safe_write",
]


def build_backend(config: BackendConfig, server_id: str) -> Backend:
    """Pick the backend variant once.

    A control panel URL wins over a database path; with neither, nothing
    is persisted.
    """
    if config.control_panel_url:
        _log.info("backend_selected", backend="control_panel", url=config.control_panel_url)
        return ControlPanelBackend(
            base_url=config.control_panel_url,
            server_id=server_id,
            api_key=config.control_panel_api_key,
            timeout=config.timeout_seconds,
        )
    if config.database_path:
        _log.info("backend_selected", backend="sqlite", path=config.database_path)
        return SQLiteBackend(config.database_path, server_id=server_id)
    _log.info("backend_selected", backend="none")
    return NullBackend()

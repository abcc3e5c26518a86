"""Local SQLite persistence.

sqlite3 is blocking, so every statement runs in the default thread-pool
executor behind a lock; the event loop never waits on disk I/O.
"""

from __future__ import annotations

import asyncio
import functools
import sqlite3
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

import structlog

from opsagent.backend.base import Backend, action_status, epoch_ms
from opsagent.models.agent import AgentResult
from opsagent.models.alerts import Alert
from opsagent.models.metrics import MetricSnapshot

_log = structlog.get_logger(component="backend.sqlite")

_T = TypeVar("_T")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS alerts (
    id TEXT PRIMARY KEY,
    server_id TEXT NOT NULL,
    severity TEXT NOT NULL,
    message TEXT NOT NULL,
    metric TEXT NOT NULL,
    current_value REAL NOT NULL,
    threshold REAL NOT NULL,
    created_at INTEGER NOT NULL,
    resolved_at INTEGER,
    acknowledged INTEGER DEFAULT 0,
    acknowledged_by TEXT,
    acknowledged_at INTEGER
);

CREATE INDEX IF NOT EXISTS idx_alerts_created ON alerts(created_at);

CREATE TABLE IF NOT EXISTS agent_responses (
    id TEXT PRIMARY KEY,
    alert_id TEXT NOT NULL,
    server_id TEXT NOT NULL,
    model TEXT NOT NULL,
    analysis TEXT NOT NULL,
    can_auto_remediate INTEGER DEFAULT 0,
    requires_human_attention INTEGER DEFAULT 0,
    human_notification_reason TEXT,
    raw_response TEXT,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS agent_actions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    response_id TEXT NOT NULL,
    alert_id TEXT NOT NULL,
    server_id TEXT NOT NULL,
    action_type TEXT NOT NULL,
    description TEXT,
    command TEXT,
    risk TEXT NOT NULL,
    status TEXT NOT NULL,
    output TEXT,
    error TEXT,
    skip_reason TEXT,
    executed_at INTEGER,
    FOREIGN KEY (response_id) REFERENCES agent_responses(id)
);

CREATE TABLE IF NOT EXISTS heartbeats (
    server_id TEXT PRIMARY KEY,
    last_seen_at INTEGER NOT NULL,
    cpu_usage REAL,
    memory_used_percent REAL,
    disk_max_used_percent REAL
);
"""


class SQLiteBackend(Backend):
    """Persists to a local SQLite file.

    Args:
        path:      Database file; parent directories are created.
        server_id: Identifier of this host in every row.
    """

    def __init__(self, path: str | Path, server_id: str) -> None:
        self._path = Path(path)
        self._server_id = server_id
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    @property
    def backend_name(self) -> str:
        return "sqlite"

    async def _call(self, fn: Callable[..., _T], *args: Any) -> _T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(self._locked, fn, *args))

    def _locked(self, fn: Callable[..., _T], *args: Any) -> _T:
        with self._lock:
            if self._conn is None:
                raise RuntimeError("SQLite backend is not initialized")
            return fn(self._conn, *args)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._connect)
        _log.info("sqlite_backend_ready", path=str(self._path))

    def _connect(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.executescript(_SCHEMA)
        conn.commit()
        with self._lock:
            self._conn = conn

    async def close(self) -> None:
        with self._lock:
            conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def heartbeat(self, snapshot: MetricSnapshot | None = None) -> None:
        await self._call(_write_heartbeat, self._server_id, snapshot)

    async def save_alert(self, alert: Alert) -> None:
        await self._call(_insert_alert, self._server_id, alert)

    async def resolve_alert(self, alert_id: str, resolved_at: datetime) -> None:
        await self._call(_execute, "UPDATE alerts SET resolved_at = ? WHERE id = ?", (epoch_ms(resolved_at), alert_id))

    async def acknowledge_alert(self, alert_id: str, acknowledged_by: str | None = None) -> None:
        await self._call(
            _execute,
            "UPDATE alerts SET acknowledged = 1, acknowledged_by = ?, acknowledged_at = ? WHERE id = ?",
            (acknowledged_by, epoch_ms(datetime.now(tz=UTC)), alert_id),
        )

    async def save_agent_response(self, alert: Alert, result: AgentResult, model: str) -> None:
        await self._call(_insert_agent_response, self._server_id, alert, result, model)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_alert(self, alert_id: str) -> dict[str, Any] | None:
        rows = await self._call(_query, "SELECT * FROM alerts WHERE id = ?", (alert_id,))
        return rows[0] if rows else None

    async def get_actions(self, alert_id: str) -> list[dict[str, Any]]:
        return await self._call(_query, "SELECT * FROM agent_actions WHERE alert_id = ? ORDER BY id", (alert_id,))

    async def get_agent_responses(self, alert_id: str) -> list[dict[str, Any]]:
        return await self._call(
            _query, "SELECT * FROM agent_responses WHERE alert_id = ? ORDER BY created_at", (alert_id,)
        )


# --- statement helpers (run on the executor thread, lock held) ----------------


def _execute(conn: sqlite3.Connection, sql: str, params: tuple[Any, ...]) -> None:
    conn.execute(sql, params)
    conn.commit()


def _query(conn: sqlite3.Connection, sql: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
    return [dict(row) for row in conn.execute(sql, params).fetchall()]


def _insert_alert(conn: sqlite3.Connection, server_id: str, alert: Alert) -> None:
    conn.execute(
        """INSERT INTO alerts
           (id, server_id, severity, message, metric, current_value, threshold,
            created_at, resolved_at, acknowledged)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(id) DO UPDATE SET
               current_value = excluded.current_value,
               resolved_at = excluded.resolved_at,
               acknowledged = excluded.acknowledged""",
        (
            alert.id,
            server_id,
            alert.severity.value,
            alert.message,
            alert.metric,
            alert.current_value,
            alert.threshold,
            epoch_ms(alert.timestamp),
            epoch_ms(alert.resolved_at) if alert.resolved_at else None,
            int(alert.acknowledged),
        ),
    )
    conn.commit()


def _insert_agent_response(
    conn: sqlite3.Connection,
    server_id: str,
    alert: Alert,
    result: AgentResult,
    model: str,
) -> None:
    created = epoch_ms(result.timestamp)
    response = result.response
    with conn:
        conn.execute(
            """INSERT INTO agent_responses
               (id, alert_id, server_id, model, analysis, can_auto_remediate,
                requires_human_attention, human_notification_reason, raw_response, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                result.response_id,
                alert.id,
                server_id,
                model,
                response.analysis if response else "",
                int(response.can_auto_remediate) if response else 0,
                int(response.requires_human_attention) if response else 0,
                response.human_notification_reason if response else None,
                result.raw_response,
                created,
            ),
        )
        conn.executemany(
            """INSERT INTO agent_actions
               (response_id, alert_id, server_id, action_type, description, command,
                risk, status, output, error, skip_reason, executed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            [
                (
                    result.response_id,
                    alert.id,
                    server_id,
                    r.action.action,
                    r.action.description,
                    r.action.command,
                    r.action.risk.value,
                    action_status(r),
                    r.output,
                    r.error,
                    r.skip_reason,
                    created,
                )
                for r in result.execution_results
            ],
        )


def _write_heartbeat(conn: sqlite3.Connection, server_id: str, snapshot: MetricSnapshot | None) -> None:
    now = epoch_ms(snapshot.timestamp) if snapshot else epoch_ms(datetime.now(tz=UTC))
    conn.execute(
        """INSERT OR REPLACE INTO heartbeats
           (server_id, last_seen_at, cpu_usage, memory_used_percent, disk_max_used_percent)
           VALUES (?, ?, ?, ?, ?)""",
        (
            server_id,
            now,
            snapshot.cpu.usage if snapshot and snapshot.cpu else None,
            snapshot.memory.used_percent if snapshot and snapshot.memory else None,
            snapshot.disk.max_used_percent if snapshot and snapshot.disk else None,
        ),
    )
    conn.commit()

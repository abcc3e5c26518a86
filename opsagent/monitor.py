"""Periodic monitoring driver.

One cycle: collect a snapshot, evaluate rules, hand the violations to the
alert manager, and let the lifecycle events it emits fan out to persistence
and notifications.  New alerts are remediated in tracked background tasks so
the next cycle is never held up by an AI call.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

import structlog

from opsagent.alerts.manager import AlertManager
from opsagent.backend.base import Backend, NullBackend, safe_write
from opsagent.models.alerts import Alert, AlertEvent, AlertEventType
from opsagent.models.config import OpsAgentConfig
from opsagent.models.metrics import MetricSnapshot
from opsagent.models.rules import Violation
from opsagent.notifications import messages
from opsagent.notifications.manager import NotificationDispatcher
from opsagent.remediation.orchestrator import RemediationOrchestrator
from opsagent.rules.engine import RuleEngine
from opsagent.sources import SnapshotSource

_log = structlog.get_logger(component="monitor")

_STOP_GRACE_SECONDS = 10.0


class Monitor:
    """Drives collect → evaluate → process cycles.

    Args:
        engine:        Rule engine.
        alert_manager: Alert manager; the monitor subscribes to its events.
        orchestrator:  Remediation orchestrator, or None to disable remediation.
        backend:       Persistence collaborator.
        dispatcher:    Notification fan-out.
        source:        Async snapshot source; None means snapshots are pushed
                       to ``run_cycle`` by the caller.
        config:        Full configuration (interval and notification toggles).
    """

    def __init__(
        self,
        engine: RuleEngine,
        alert_manager: AlertManager,
        orchestrator: RemediationOrchestrator | None = None,
        backend: Backend | None = None,
        dispatcher: NotificationDispatcher | None = None,
        source: SnapshotSource | None = None,
        config: OpsAgentConfig | None = None,
    ) -> None:
        self._engine = engine
        self._alerts = alert_manager
        self._orchestrator = orchestrator
        self._backend = backend or NullBackend()
        self._dispatcher = dispatcher or NotificationDispatcher(channels=[])
        self._source = source
        self._config = config or OpsAgentConfig()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._latest: MetricSnapshot | None = None
        self._cycles = 0
        self._stopping = asyncio.Event()
        self._unsubscribe = alert_manager.subscribe(self._on_event)

    @property
    def cycles(self) -> int:
        return self._cycles

    @property
    def latest_snapshot(self) -> MetricSnapshot | None:
        return self._latest

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self, snapshot: MetricSnapshot | None = None) -> list[Violation]:
        """Run one evaluation cycle.

        Uses *snapshot* when given, otherwise asks the source.  Returns the
        cycle's violations; an exhausted source yields an empty list.
        """
        if snapshot is None and self._source is not None:
            snapshot = await self._source()
        if snapshot is None:
            return []

        self._latest = snapshot
        self._cycles += 1
        violations = self._engine.evaluate(snapshot)
        created = self._alerts.process_violations(violations)

        if created and self._orchestrator is not None and self._config.agent.enabled:
            for alert in created:
                self._schedule_remediation(alert, snapshot)

        await safe_write(self._backend, "heartbeat", lambda: self._backend.heartbeat(snapshot))
        _log.debug(
            "cycle_completed",
            cycle=self._cycles,
            violations=len(violations),
            new_alerts=len(created),
            active=len(self._alerts.get_active_alerts()),
        )
        return violations

    async def run(self) -> None:
        """Run cycles at the configured interval until stopped or the source runs dry."""
        interval = self._config.collector.interval_seconds
        _log.info("monitor_started", interval_seconds=interval)
        while not self._stopping.is_set():
            try:
                snapshot = await self._source() if self._source is not None else None
            except Exception as exc:  # noqa: BLE001
                _log.error("snapshot_collection_failed", error=str(exc))
                snapshot = None
            else:
                if snapshot is None and self._source is not None:
                    _log.info("snapshot_source_exhausted", cycles=self._cycles)
                    break

            if snapshot is not None:
                try:
                    await self.run_cycle(snapshot)
                except Exception as exc:  # noqa: BLE001
                    _log.error("cycle_failed", cycle=self._cycles, error=str(exc))

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except TimeoutError:
                pass
        _log.info("monitor_loop_exited", cycles=self._cycles)

    async def stop(self, grace: float = _STOP_GRACE_SECONDS) -> None:
        """Stop the loop and wait (bounded) for in-flight remediations."""
        self._stopping.set()
        await self.wait_idle(grace)
        self._unsubscribe()

    async def wait_idle(self, timeout: float | None = None) -> None:
        """Wait until every scheduled remediation task has finished."""
        if not self._tasks:
            return
        _done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            _log.warning("remediation_tasks_abandoned", pending=len(pending))
            for task in pending:
                task.cancel()

    # ------------------------------------------------------------------
    # Event routing
    # ------------------------------------------------------------------

    def _schedule_remediation(self, alert: Alert, snapshot: MetricSnapshot) -> None:
        assert self._orchestrator is not None
        task = asyncio.ensure_future(self._remediate(alert, snapshot))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _remediate(self, alert: Alert, snapshot: MetricSnapshot) -> None:
        assert self._orchestrator is not None
        try:
            await self._orchestrator.handle(alert, snapshot)
        except Exception as exc:  # noqa: BLE001
            _log.error("remediation_crashed", alert_id=alert.id, error=str(exc))

    def _on_event(self, event: AlertEvent) -> None:
        """AlertManager subscriber; runs synchronously, schedules async work."""
        alert = event.alert
        notify = self._config.notifications
        if event.type is AlertEventType.NEW:
            self._spawn(safe_write(self._backend, "save_alert", lambda: self._backend.save_alert(alert), alert_id=alert.id))
            if notify.notify_new_alerts:
                self._dispatcher.dispatch(messages.new_alert(alert))
        elif event.type is AlertEventType.RESOLVED:
            resolved_at = alert.resolved_at or event.emitted_at
            self._spawn(
                safe_write(
                    self._backend,
                    "resolve_alert",
                    lambda: self._backend.resolve_alert(alert.id, resolved_at),
                    alert_id=alert.id,
                )
            )
            if notify.notify_resolved:
                self._dispatcher.dispatch(messages.alert_resolved(alert))
        elif event.type is AlertEventType.ACKNOWLEDGED:
            self._spawn(
                safe_write(
                    self._backend,
                    "acknowledge_alert",
                    lambda: self._backend.acknowledge_alert(alert.id),
                    alert_id=alert.id,
                )
            )

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            _log.debug("backend_write_skipped", reason="no running event loop")
            return
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

"""Application bootstrap for OpsAgent.

Wires all components in dependency order and manages the asyncio lifecycle.
Startup order: config → logging → backend → rules → alerts → AI client
              → notifications → orchestrator → monitor → REST

Shutdown is fully graceful: components are stopped in reverse startup order.
Each component's start/stop error is caught and logged independently so that
a single component failure does not prevent the rest from shutting down cleanly.
"""

from __future__ import annotations

import asyncio
import signal
from datetime import timedelta
from typing import TYPE_CHECKING

from opsagent.config import load_config
from opsagent.models.config import OpsAgentConfig
from opsagent.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    import structlog

    from opsagent.alerts.manager import AlertManager
    from opsagent.backend.base import Backend
    from opsagent.llm.client import ChatCompletionsClient
    from opsagent.monitor import Monitor
    from opsagent.notifications.manager import NotificationDispatcher
    from opsagent.remediation.orchestrator import RemediationOrchestrator
    from opsagent.rules.engine import RuleEngine
    from opsagent.sources import SnapshotSource

_SHUTDOWN_GRACE_SECONDS = 15


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


class OpsAgentApp:
    """Application root.  Owns every component and coordinates their lifecycle.

    Calling ``stop()`` on an app that was never started (or already stopped)
    is safe.

    Args:
        config: Pre-loaded configuration; loaded from the environment when None.
        source: Snapshot source driving the monitor loop.  Without one the
                monitor runs in push mode and snapshots arrive through
                ``POST /api/v1/snapshots``.
    """

    def __init__(self, config: OpsAgentConfig | None = None, source: SnapshotSource | None = None) -> None:
        self.config: OpsAgentConfig | None = config
        self._source = source

        self._backend: Backend | None = None
        self._rule_engine: RuleEngine | None = None
        self._alert_manager: AlertManager | None = None
        self._ai_client: ChatCompletionsClient | None = None
        self._notifications: NotificationDispatcher | None = None
        self._orchestrator: RemediationOrchestrator | None = None
        self._monitor: Monitor | None = None
        self._rest_server: object | None = None

        # Background tasks that must be cancelled on shutdown
        self._background_tasks: list[asyncio.Task[None]] = []

        self._running = False
        self._log: structlog.stdlib.BoundLogger | None = None

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start all components in dependency order.

        Raises _ComponentError if a mandatory component cannot start.
        The caller (main()) re-raises this as a non-zero exit.
        """
        # --- 1. Configuration -------------------------------------------
        if self.config is None:
            self.config = load_config()

        # --- 2. Logging -------------------------------------------------
        setup_logging(self.config.log.level, self.config.log.format)
        self._log = get_logger("app")
        self._log.info("opsagent_starting", version=_opsagent_version(), agent=self.config.agent_name)

        # --- 3. Persistence backend -------------------------------------
        await self._start_backend()

        # --- 4. Rule engine ----------------------------------------------
        await self._start_rule_engine()

        # --- 5. Alert manager --------------------------------------------
        await self._start_alert_manager()

        # --- 6. AI client (optional) -------------------------------------
        await self._start_ai_client()

        # --- 7. Notification dispatcher ---------------------------------
        await self._start_notifications()

        # --- 8. Remediation orchestrator ---------------------------------
        await self._start_orchestrator()

        # --- 9. Monitor loop ---------------------------------------------
        await self._start_monitor()

        # --- 10. REST API ------------------------------------------------
        await self._start_rest()

        self._running = True
        self._log.info("opsagent_started", port=self.config.api.port if self.config.api.enabled else None)

    # ------------------------------------------------------------------
    # Component startup helpers
    # ------------------------------------------------------------------

    async def _start_backend(self) -> None:
        """Select and initialise the persistence backend."""
        assert self._log is not None
        assert self.config is not None
        self._log.debug("starting_backend")
        from opsagent.backend import NullBackend, build_backend

        backend = build_backend(self.config.backend, server_id=self.config.agent_name)
        try:
            await backend.initialize()
            self._backend = backend
            self._log.info("backend_started", backend=backend.backend_name)
        except Exception as exc:
            # Persistence is non-fatal: the agent keeps monitoring standalone
            self._log.warning("backend_failed_to_start", backend=backend.backend_name, error=str(exc))
            await self._stop_component("backend", backend)
            self._backend = NullBackend()

    async def _start_rule_engine(self) -> None:
        """Compile the configured rule tree."""
        assert self._log is not None
        assert self.config is not None
        self._log.debug("starting_rule_engine")
        try:
            from opsagent.rules import RuleEngine

            engine = RuleEngine()
            ruleset = engine.load_rules_from_config(self.config.rules)
            self._rule_engine = engine
            self._log.info("rule_engine_started", rules=len(ruleset), skipped=len(ruleset.skipped))
        except Exception as exc:
            raise _ComponentError("rule_engine", exc) from exc

    async def _start_alert_manager(self) -> None:
        assert self._log is not None
        assert self.config is not None
        try:
            from opsagent.alerts import AlertManager

            self._alert_manager = AlertManager(
                cooldown=timedelta(seconds=self.config.alerts.cooldown_seconds),
                max_history=self.config.alerts.max_history,
            )
            self._log.info(
                "alert_manager_started",
                cooldown_seconds=self.config.alerts.cooldown_seconds,
                max_history=self.config.alerts.max_history,
            )
        except Exception as exc:
            raise _ComponentError("alert_manager", exc) from exc

    async def _start_ai_client(self) -> None:
        """Initialise the chat-completions client if enabled."""
        assert self._log is not None
        assert self.config is not None
        if not self.config.llm.enabled or not self.config.agent.enabled:
            self._log.info("ai_client_disabled", llm_enabled=self.config.llm.enabled)
            self._ai_client = None
            return
        try:
            from opsagent.llm import ChatCompletionsClient

            self._ai_client = ChatCompletionsClient(
                self.config.llm,
                timeout_seconds=self.config.agent.ai_timeout_seconds,
                model=self.config.agent.model or None,
            )
            self._log.info("ai_client_started", model=self._ai_client.model, base_url=self.config.llm.base_url)
        except Exception as exc:
            # AI is optional: alerts still flow, remediation asks for a human
            self._log.warning("ai_client_failed_to_start", error=str(exc))
            self._ai_client = None

    async def _start_notifications(self) -> None:
        """Configure notification dispatcher channels."""
        assert self._log is not None
        assert self.config is not None
        self._log.debug("starting_notifications")
        from opsagent.notifications import NotificationDispatcher, build_notification_dispatcher

        try:
            self._notifications = build_notification_dispatcher(config=self.config.notifications)
            self._log.info("notifications_started", channels=[c.channel_name for c in self._notifications.channels])
        except Exception as exc:
            # Notification failure is non-fatal: alerts are still recorded
            self._log.warning("notifications_failed_to_start", error=str(exc))
            self._notifications = NotificationDispatcher(channels=[])

    async def _start_orchestrator(self) -> None:
        assert self._log is not None
        assert self.config is not None
        assert self._alert_manager is not None
        if not self.config.agent.enabled:
            self._log.info("remediation_disabled")
            return
        try:
            from opsagent.remediation import ActionExecutor, RemediationOrchestrator

            self._orchestrator = RemediationOrchestrator(
                ai_client=self._ai_client,
                alert_manager=self._alert_manager,
                policy=self.config.agent,
                executor=ActionExecutor(timeout=self.config.agent.action_timeout_seconds),
                backend=self._backend,
                dispatcher=self._notifications,
                notification_config=self.config.notifications,
            )
            self._log.info(
                "orchestrator_started",
                auto_remediate=self.config.agent.auto_remediate,
                max_auto_risk=self.config.agent.max_auto_risk.value,
            )
        except Exception as exc:
            raise _ComponentError("orchestrator", exc) from exc

    async def _start_monitor(self) -> None:
        """Start the periodic collect/evaluate/process loop."""
        assert self._log is not None
        assert self._rule_engine is not None
        assert self._alert_manager is not None
        try:
            from opsagent.monitor import Monitor

            monitor = Monitor(
                engine=self._rule_engine,
                alert_manager=self._alert_manager,
                orchestrator=self._orchestrator,
                backend=self._backend,
                dispatcher=self._notifications,
                source=self._source,
                config=self.config,
            )
            self._monitor = monitor
            if self._source is not None:
                task = asyncio.create_task(monitor.run(), name="monitor")
                self._background_tasks.append(task)
            self._log.info("monitor_started", mode="poll" if self._source is not None else "push")
        except Exception as exc:
            raise _ComponentError("monitor", exc) from exc

    async def _start_rest(self) -> None:
        """Start the uvicorn REST server."""
        assert self._log is not None
        assert self.config is not None
        assert self._alert_manager is not None
        if not self.config.api.enabled:
            self._log.info("rest_api_disabled")
            return
        self._log.debug("starting_rest_api")
        try:
            import uvicorn

            from opsagent.api import create_app

            fastapi_app = create_app(
                alert_manager=self._alert_manager,
                orchestrator=self._orchestrator,
                engine=self._rule_engine,
                monitor=self._monitor,
                config=self.config,
            )
            uv_config = uvicorn.Config(
                app=fastapi_app,
                host=self.config.api.host,
                port=self.config.api.port,
                log_config=None,  # structlog handles all logging
                access_log=False,
            )
            server = uvicorn.Server(uv_config)
            task = asyncio.create_task(server.serve(), name="rest-server")
            self._background_tasks.append(task)
            self._rest_server = server
            self._log.info("rest_api_started", host=self.config.api.host, port=self.config.api.port)
        except Exception as exc:
            raise _ComponentError("rest", exc) from exc

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def wait(self) -> None:
        """Block until the monitor loop finishes or ``stop()`` is called."""
        while self._running:
            monitor_tasks = [t for t in self._background_tasks if t.get_name() == "monitor"]
            if monitor_tasks and all(t.done() for t in monitor_tasks):
                return
            await asyncio.sleep(1)

    async def stop(self) -> None:
        """Gracefully stop all components in reverse startup order.

        In-flight remediations are given a grace period before the backend
        and the notification dispatcher are closed.
        """
        if not self._running and self._log is None:
            # Never started
            return
        log = self._log or get_logger("app")
        log.info("opsagent_shutting_down")
        self._running = False

        # The monitor stops producing cycles before its consumers go away.
        await self._stop_component("monitor", self._monitor)

        for task in reversed(self._background_tasks):
            if not task.done():
                task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()

        await self._stop_component("notifications", self._notifications)
        await self._stop_component("ai_client", self._ai_client)
        await self._stop_component("backend", self._backend)
        log.info("opsagent_stopped")

    async def _stop_component(self, name: str, component: object | None) -> None:
        """Call stop() on a component if it has that method, catching all errors."""
        if component is None:
            return
        log = self._log or get_logger("app")
        stop_fn = getattr(component, "stop", None)
        if stop_fn is None:
            return
        try:
            result = stop_fn()
            if asyncio.iscoroutine(result):
                await asyncio.wait_for(result, timeout=_SHUTDOWN_GRACE_SECONDS)
        except TimeoutError:
            log.warning("component_stop_timed_out", component=name, timeout=_SHUTDOWN_GRACE_SECONDS)
        except Exception as exc:
            log.error("component_stop_failed", component=name, error=str(exc))


def _opsagent_version() -> str:
    from opsagent import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main(config: OpsAgentConfig | None = None, source: SnapshotSource | None = None) -> None:
    """Create the app, register OS signals, run until shutdown is requested."""
    app = OpsAgentApp(config=config, source=source)
    loop = asyncio.get_running_loop()

    shutdown_triggered = False

    def _request_shutdown() -> None:
        nonlocal shutdown_triggered
        if shutdown_triggered:
            return
        shutdown_triggered = True
        asyncio.create_task(app.stop(), name="shutdown")

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _request_shutdown)

    try:
        await app.start()
        await app.wait()
    except _ComponentError as exc:
        # A mandatory component failed; log and exit non-zero
        log = get_logger("app")
        log.critical("fatal_startup_error", component=exc.component, error=str(exc.cause))
        await app.stop()
        raise SystemExit(1) from exc
    finally:
        if app.running:
            await app.stop()

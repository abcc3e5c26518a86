"""Alert Manager: identity, dedup, cooldown and lifecycle of alerts.

The active map, cooldown map and history buffer are owned exclusively by
this class.  Every mutating call runs under one re-entrant lock; lifecycle
events produced during a call are delivered after the lock is released, in
the order they were produced.
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta

import structlog

from opsagent.models.alerts import Alert, AlertEvent, AlertEventType
from opsagent.models.rules import Violation
from opsagent.observability.metrics import alert_events_total

_log = structlog.get_logger(component="alerts.manager")

DEFAULT_COOLDOWN = timedelta(minutes=5)
DEFAULT_MAX_HISTORY = 1000

AlertSubscriber = Callable[[AlertEvent], None]


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class AlertManager:
    """Turns per-cycle violations into deduplicated, lifecycle-tracked alerts.

    Args:
        cooldown:    Minimum time after a key last fired before it may fire
                     again, whether or not an alert for it is still active.
        max_history: Capacity of the FIFO history buffer.
        clock:       Returns the current UTC time.  Injected by tests.
    """

    def __init__(
        self,
        cooldown: timedelta = DEFAULT_COOLDOWN,
        max_history: int = DEFAULT_MAX_HISTORY,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if max_history < 1:
            raise ValueError("max_history must be at least 1")
        self._cooldown = cooldown
        self._max_history = max_history
        self._clock = clock
        self._lock = threading.RLock()
        # key -> active alert; dict order is creation order
        self._active: dict[str, Alert] = {}
        # key -> last time the key fired
        self._last_fired: dict[str, datetime] = {}
        self._history: deque[Alert] = deque(maxlen=max_history)
        self._subscribers: list[AlertSubscriber] = []

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def subscribe(self, callback: AlertSubscriber) -> Callable[[], None]:
        """Register *callback* for lifecycle events; returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def _emit(self, events: Iterable[AlertEvent]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for event in events:
            alert_events_total.labels(type=event.type.value).inc()
            for callback in subscribers:
                try:
                    callback(event)
                except Exception as exc:  # noqa: BLE001
                    _log.error(
                        "alert_subscriber_failed",
                        event_type=event.type.value,
                        alert_id=event.alert.id,
                        error=str(exc),
                    )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def process_violations(self, violations: Iterable[Violation]) -> list[Alert]:
        """Register this cycle's violations and resolve keys that went quiet.

        Returns the alerts created by this call, in violation order.
        """
        events: list[AlertEvent] = []
        created: list[Alert] = []
        with self._lock:
            now = self._clock()
            seen: set[str] = set()
            for violation in violations:
                try:
                    alert = Alert.from_violation(violation)
                    key = alert.key
                except Exception as exc:  # noqa: BLE001
                    _log.warning("violation_skipped", metric=getattr(violation, "metric", None), error=str(exc))
                    continue
                seen.add(key)

                if key in self._active:
                    continue
                last = self._last_fired.get(key)
                if last is not None and now - last < self._cooldown:
                    _log.debug(
                        "alert_suppressed_by_cooldown",
                        key=key,
                        seconds_remaining=int((self._cooldown - (now - last)).total_seconds()),
                    )
                    continue

                self._active[key] = alert
                self._last_fired[key] = now
                self._history.append(alert)
                created.append(alert)
                events.append(AlertEvent(AlertEventType.NEW, alert, now))
                _log.info(
                    "alert_created",
                    alert_id=alert.id,
                    severity=alert.severity.value,
                    metric=alert.metric,
                    value=alert.current_value,
                    threshold=alert.threshold,
                )

            # Resolution is decided only after every violation is registered.
            for key in [k for k in self._active if k not in seen]:
                alert = self._active.pop(key)
                alert.resolved_at = now
                events.append(AlertEvent(AlertEventType.RESOLVED, alert, now))
                _log.info("alert_resolved", alert_id=alert.id, metric=alert.metric)

        self._emit(events)
        return created

    def acknowledge_alert(self, alert_id: str) -> bool:
        """Acknowledge an active alert by id.  Unknown or resolved ids return False."""
        with self._lock:
            alert = next((a for a in self._active.values() if a.id == alert_id), None)
            if alert is None:
                return False
            alert.acknowledged = True
            event = AlertEvent(AlertEventType.ACKNOWLEDGED, alert, self._clock())
        _log.info("alert_acknowledged", alert_id=alert_id)
        self._emit([event])
        return True

    def update_alert_with_agent_response(
        self,
        alert_id: str,
        response: str,
        actions: list[str] | None = None,
    ) -> bool:
        """Attach remediation output to the alert, active or historical.

        Returns False only when the id is unknown to both the active map and
        the history buffer.
        """
        with self._lock:
            touched: Alert | None = None
            for alert in self._active.values():
                if alert.id == alert_id:
                    touched = alert
                    break
            if touched is None:
                touched = next((a for a in self._history if a.id == alert_id), None)
            if touched is None:
                _log.warning("agent_response_for_unknown_alert", alert_id=alert_id)
                return False
            # Active alerts and their history entries are the same object.
            touched.agent_response = response
            touched.agent_actions = list(actions) if actions is not None else None
            event = AlertEvent(AlertEventType.UPDATED, touched, self._clock())
        self._emit([event])
        return True

    def clear_history(self) -> None:
        """Drop every history entry that is not currently active."""
        with self._lock:
            active_ids = {a.id for a in self._active.values()}
            kept = [a for a in self._history if a.id in active_ids]
            self._history.clear()
            self._history.extend(kept)
        _log.info("alert_history_cleared", kept=len(kept))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_active_alerts(self) -> list[Alert]:
        with self._lock:
            return list(self._active.values())

    def get_alert_history(self) -> list[Alert]:
        """History in insertion order, oldest first."""
        with self._lock:
            return list(self._history)

    def get_alert_by_id(self, alert_id: str) -> Alert | None:
        with self._lock:
            for alert in self._active.values():
                if alert.id == alert_id:
                    return alert
            for alert in self._history:
                if alert.id == alert_id:
                    return alert
        return None

    def get_recent_alerts(self, limit: int = 5) -> list[Alert]:
        with self._lock:
            return list(self._history)[-limit:] if limit > 0 else []

    @property
    def max_history(self) -> int:
        return self._max_history

    @property
    def cooldown(self) -> timedelta:
        return self._cooldown

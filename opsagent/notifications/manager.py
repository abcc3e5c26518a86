"""Notification dispatcher for OpsAgent.

NotificationChannel    -- ABC every channel must implement.
NotificationDispatcher -- Fans a Notification out to all registered channels;
                          failures in one channel never block others or the
                          monitoring cycle.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod

import structlog

from opsagent.models.notifications import Notification
from opsagent.observability.metrics import notifications_total

_log = structlog.get_logger(component="notifications.manager")


class NotificationChannel(ABC):
    """Abstract base class for all notification channels.

    Every concrete channel must implement ``send``, which should not
    raise: return ``False`` instead.
    """

    @property
    @abstractmethod
    def channel_name(self) -> str:
        """Human-readable channel identifier used in metrics and logs."""

    @abstractmethod
    async def send(self, notification: Notification) -> bool:
        """Deliver *notification* via this channel.

        Returns:
            True  -- message accepted by the remote endpoint.
            False -- delivery failed (already logged inside implementation).
        """


class NotificationDispatcher:
    """Fan-out dispatcher that sends a notification to every registered channel.

    * Never raises; exceptions from individual channels are caught and logged.
    * ``dispatch`` is fire-and-forget and schedules the fan-out as a
      background task; ``deliver`` awaits it.
    * ``drain`` waits for scheduled deliveries, used on shutdown.
    """

    def __init__(self, channels: list[NotificationChannel]) -> None:
        self._channels = channels
        self._pending: set[asyncio.Future[dict[str, bool]]] = set()

    @property
    def channels(self) -> list[NotificationChannel]:
        return list(self._channels)

    def dispatch(self, notification: Notification) -> None:
        """Schedule fan-out delivery of *notification* as a background task."""
        if not self._channels:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            _log.warning("notification_dropped", reason="no running event loop", alert_id=notification.alert_id)
            return
        future = loop.create_task(self.deliver(notification))
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)

    async def deliver(self, notification: Notification) -> dict[str, bool]:
        """Deliver to every channel concurrently; returns channel -> success."""
        results = await asyncio.gather(
            *(self._send_one(channel, notification) for channel in self._channels),
            return_exceptions=True,
        )
        return {
            channel.channel_name: result is True for channel, result in zip(self._channels, results, strict=True)
        }

    async def drain(self, timeout: float = 10.0) -> None:
        if not self._pending:
            return
        _done, still_pending = await asyncio.wait(set(self._pending), timeout=timeout)
        if still_pending:
            _log.warning("notifications_not_drained", pending=len(still_pending))

    async def stop(self) -> None:
        await self.drain()

    async def _send_one(self, channel: NotificationChannel, notification: Notification) -> bool:
        """Deliver to a single channel, recording metrics regardless of outcome."""
        try:
            success = await channel.send(notification)
        except Exception as exc:  # noqa: BLE001
            _log.error(
                "notification_channel_unexpected_error",
                channel=channel.channel_name,
                alert_id=notification.alert_id,
                error=str(exc),
            )
            success = False

        label = "true" if success else "false"
        notifications_total.labels(channel=channel.channel_name, success=label).inc()

        if success:
            _log.info(
                "notification_sent",
                channel=channel.channel_name,
                kind=notification.kind.value,
                priority=notification.priority.value,
                alert_id=notification.alert_id,
            )
        else:
            _log.warning(
                "notification_failed",
                channel=channel.channel_name,
                kind=notification.kind.value,
                alert_id=notification.alert_id,
            )
        return success

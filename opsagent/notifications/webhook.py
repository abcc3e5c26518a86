"""Generic JSON webhook notification channel.

Posts the Notification as a JSON body to any configured HTTP endpoint, so
consumers can parse it without OpsAgent-specific knowledge.
"""

from __future__ import annotations

import socket

import httpx
import structlog

from opsagent.models.notifications import Notification
from opsagent.notifications.manager import NotificationChannel

_log = structlog.get_logger(component="notifications.webhook")


class WebhookNotificationChannel(NotificationChannel):
    """Delivers notifications by POSTing a JSON payload to a configurable URL.

    Args:
        url:     Full endpoint URL.
        headers: Optional extra headers (e.g. Authorization).
        timeout: HTTP request timeout in seconds. Defaults to 10.
        host:    Reported host name; defaults to this machine's.
    """

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
        host: str | None = None,
    ) -> None:
        if not url:
            raise ValueError("Webhook url must not be empty")
        self._url = url
        self._headers = headers or {}
        self._timeout = timeout
        self._host = host or socket.gethostname()

    @property
    def channel_name(self) -> str:
        return "webhook"

    async def send(self, notification: Notification) -> bool:
        """POST *notification* as JSON.  True on a 2xx response."""
        payload = {"host": self._host, **notification.to_dict()}
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    self._url,
                    json=payload,
                    headers={"Content-Type": "application/json", **self._headers},
                )
                if response.is_success:
                    return True
                _log.warning(
                    "webhook_non_2xx_response",
                    status_code=response.status_code,
                    body=response.text[:200],
                    alert_id=notification.alert_id,
                )
                return False
        except httpx.TimeoutException:
            _log.warning("webhook_request_timeout", alert_id=notification.alert_id, url=self._url)
            return False
        except httpx.HTTPError as exc:
            _log.warning("webhook_http_error", error=str(exc), alert_id=notification.alert_id)
            return False

"""Discord webhook notification channel.

Renders a Notification as a single embed, coloured by priority.  Urgent
notifications ping the channel with ``@here``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import httpx
import structlog

from opsagent.models.notifications import Notification, NotificationKind, NotificationPriority
from opsagent.notifications.manager import NotificationChannel

_log = structlog.get_logger(component="notifications.discord")

_WEBHOOK_PREFIXES = (
    "https://discord.com/api/webhooks/",
    "https://discordapp.com/api/webhooks/",
)

_PRIORITY_COLOR: dict[NotificationPriority, int] = {
    NotificationPriority.URGENT: 0xFF0000,
    NotificationPriority.HIGH: 0xFFA500,
    NotificationPriority.NORMAL: 0x0099FF,
    NotificationPriority.LOW: 0x00FF00,
}

_MENTION_TEXT: dict[NotificationKind, str] = {
    NotificationKind.HUMAN_INTERVENTION: "@here Human intervention required for system alert!",
}

# Discord embed limits
_TITLE_MAX = 256
_DESCRIPTION_MAX = 4096
_FIELD_VALUE_MAX = 1024


class DiscordNotificationChannel(NotificationChannel):
    """Posts notifications to a Discord channel webhook.

    Args:
        webhook_url: ``https://discord.com/api/webhooks/...`` URL.
        timeout:     HTTP request timeout in seconds.
    """

    def __init__(self, webhook_url: str, timeout: float = 10.0) -> None:
        if not webhook_url.startswith(_WEBHOOK_PREFIXES):
            raise ValueError("Discord webhook_url must be a discord.com/api/webhooks URL")
        self._url = webhook_url
        self._timeout = timeout

    @property
    def channel_name(self) -> str:
        return "discord"

    async def send(self, notification: Notification) -> bool:
        payload = self._build_payload(notification)
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._url, json=payload)
                if response.is_success:
                    return True
                _log.warning(
                    "discord_non_2xx_response",
                    status_code=response.status_code,
                    body=response.text[:200],
                    alert_id=notification.alert_id,
                )
                return False
        except httpx.TimeoutException:
            _log.warning("discord_request_timeout", alert_id=notification.alert_id)
            return False
        except httpx.HTTPError as exc:
            _log.warning("discord_http_error", error=str(exc), alert_id=notification.alert_id)
            return False

    def _build_payload(self, notification: Notification) -> dict[str, Any]:
        embed: dict[str, Any] = {
            "title": notification.title[:_TITLE_MAX],
            "description": notification.body[:_DESCRIPTION_MAX],
            "color": _PRIORITY_COLOR[notification.priority],
            "timestamp": datetime.now(tz=UTC).isoformat(),
        }
        if notification.fields:
            embed["fields"] = [
                {"name": name, "value": (value or "-")[:_FIELD_VALUE_MAX], "inline": len(value) < 40}
                for name, value in notification.fields
            ]
        if notification.alert_id:
            embed["footer"] = {"text": f"Alert ID: {notification.alert_id}"}

        payload: dict[str, Any] = {"embeds": [embed]}
        if notification.mention or notification.priority is NotificationPriority.URGENT:
            payload["content"] = _MENTION_TEXT.get(notification.kind, "@here")
        return payload

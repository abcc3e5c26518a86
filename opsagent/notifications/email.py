"""Email notification channel.

Sends notifications as plain-text plus HTML emails via ``smtplib``, executed
in a thread-pool executor so the asyncio event loop is never blocked.
"""

from __future__ import annotations

import asyncio
import html
import smtplib
import socket
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import structlog

from opsagent.models.notifications import Notification, NotificationPriority
from opsagent.notifications.manager import NotificationChannel

_log = structlog.get_logger(component="notifications.email")

_PRIORITY_COLOR: dict[NotificationPriority, str] = {
    NotificationPriority.URGENT: "#b71c1c",
    NotificationPriority.HIGH: "#e65100",
    NotificationPriority.NORMAL: "#1565c0",
    NotificationPriority.LOW: "#2e7d32",
}


class SMTPConfig:
    """SMTP connection parameters.

    Args:
        host:       SMTP server hostname.
        port:       SMTP server port (587 for STARTTLS, 465 for SSL).
        username:   SMTP authentication username.
        password:   SMTP authentication password.
        from_addr:  Sender email address.
        use_tls:    If True, use SMTP_SSL (port 465). Defaults to False
                    (STARTTLS on port 587).
        timeout:    Socket timeout in seconds. Defaults to 10.
    """

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        from_addr: str,
        use_tls: bool = False,
        timeout: float = 10.0,
    ) -> None:
        if not host:
            raise ValueError("SMTP host must not be empty")
        if not from_addr:
            raise ValueError("SMTP from_addr must not be empty")
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_addr = from_addr
        self.use_tls = use_tls
        self.timeout = timeout


class EmailNotificationChannel(NotificationChannel):
    """Delivers notifications as emails via SMTP.

    Args:
        smtp_config: Connection and authentication parameters.
        to_addr:     Recipient email address.
    """

    def __init__(self, smtp_config: SMTPConfig, to_addr: str) -> None:
        if not to_addr:
            raise ValueError("Email to_addr must not be empty")
        self._smtp = smtp_config
        self._to_addr = to_addr
        self._host = socket.gethostname()

    @property
    def channel_name(self) -> str:
        return "email"

    async def send(self, notification: Notification) -> bool:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._send_sync, notification)
            return True
        except smtplib.SMTPException as exc:
            _log.warning("email_smtp_error", error=str(exc), alert_id=notification.alert_id)
            return False
        except OSError as exc:
            _log.warning("email_connection_error", error=str(exc), alert_id=notification.alert_id)
            return False

    def _send_sync(self, notification: Notification) -> None:
        """Blocking SMTP delivery, runs inside a thread executor."""
        msg = self.build_message(notification)
        context = ssl.create_default_context()

        if self._smtp.use_tls:
            with smtplib.SMTP_SSL(
                self._smtp.host,
                self._smtp.port,
                context=context,
                timeout=self._smtp.timeout,
            ) as server:
                if self._smtp.username:
                    server.login(self._smtp.username, self._smtp.password)
                server.send_message(msg)
        else:
            with smtplib.SMTP(self._smtp.host, self._smtp.port, timeout=self._smtp.timeout) as server:
                server.ehlo()
                server.starttls(context=context)
                server.ehlo()
                if self._smtp.username:
                    server.login(self._smtp.username, self._smtp.password)
                server.send_message(msg)

    def build_message(self, notification: Notification) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = f"[OpsAgent] [{notification.priority.value.upper()}] {self._host}: {notification.title}"
        msg["From"] = self._smtp.from_addr
        msg["To"] = self._to_addr
        msg.attach(MIMEText(self._build_plain(notification), "plain", "utf-8"))
        msg.attach(MIMEText(self._build_html(notification), "html", "utf-8"))
        return msg

    def _build_plain(self, notification: Notification) -> str:
        lines = [notification.title, "=" * 60, "", f"Host: {self._host}", ""]
        lines += [notification.body, ""]
        for name, value in notification.fields:
            lines.append(f"{name}:")
            lines.append(f"  {value}")
        if notification.alert_id:
            lines += ["", f"Alert ID: {notification.alert_id}"]
        return "\n".join(lines) + "\n"

    def _build_html(self, notification: Notification) -> str:
        color = _PRIORITY_COLOR[notification.priority]
        rows = "".join(
            f'<tr><td style="color:#757575;width:160px;"><strong>{html.escape(n)}</strong></td>'
            f'<td style="white-space:pre-wrap;">{html.escape(v)}</td></tr>'
            for n, v in notification.fields
        )
        footer = f"Alert ID: {html.escape(notification.alert_id)}" if notification.alert_id else ""
        return f"""<!DOCTYPE html>
<html lang="en">
<body style="font-family: sans-serif; background: #f5f5f5; margin: 0; padding: 24px;">
  <table width="600" cellpadding="0" cellspacing="0" style="background:#ffffff;margin:0 auto;">
    <tr><td style="background:{color};padding:20px 28px;">
      <h1 style="color:#ffffff;margin:0;font-size:20px;">{html.escape(notification.title)}</h1>
    </td></tr>
    <tr><td style="padding:24px 28px;">
      <p style="color:#212121;line-height:1.6;white-space:pre-wrap;">{html.escape(notification.body)}</p>
      <table width="100%" cellpadding="6" cellspacing="0">{rows}</table>
    </td></tr>
    <tr><td style="background:#f5f5f5;padding:12px 28px;font-size:12px;color:#9e9e9e;">
      {html.escape(self._host)} {footer}
    </td></tr>
  </table>
</body>
</html>"""

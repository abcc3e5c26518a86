"""Alert lifecycle management."""

from opsagent.alerts.manager import AlertManager, AlertSubscriber

__all__ = ["AlertManager", "AlertSubscriber"]

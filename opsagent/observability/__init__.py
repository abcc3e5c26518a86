"""Logging and Prometheus instrumentation."""

from opsagent.observability.logging import alert_log_context, get_logger, setup_logging

__all__ = ["alert_log_context", "get_logger", "setup_logging"]

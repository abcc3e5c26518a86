"""REST API layer for OpsAgent.

Exposes:
    create_app -- FastAPI application factory.
"""

from opsagent.api.app import create_app

__all__ = ["create_app"]

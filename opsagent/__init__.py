"""OpsAgent -- host monitoring with deduplicated alerts and AI-driven remediation."""

__version__ = "0.3.0"

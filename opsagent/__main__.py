"""Entry point for `python -m opsagent`.

Usage:
    python -m opsagent replay snapshots.jsonl
    python -m opsagent check-config
"""

from __future__ import annotations

from opsagent.cli import cli

cli()

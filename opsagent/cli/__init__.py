"""OpsAgent command-line interface.

Exposes:
    cli -- Click group entry point (registered as ``opsagent`` script).
"""

from opsagent.cli.main import cli

__all__ = ["cli"]

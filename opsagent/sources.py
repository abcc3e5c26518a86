"""Metric snapshot sources.

OpsAgent does not poll the operating system itself; a snapshot source is any
async callable returning the next MetricSnapshot (or None when exhausted).
The file-backed sources here feed recorded snapshots to the ``evaluate`` and
``replay`` CLI commands and to tests.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable, Iterator
from pathlib import Path

import structlog

from opsagent.errors import ConfigurationError
from opsagent.models.metrics import MetricSnapshot

_log = structlog.get_logger(component="sources")

SnapshotSource = Callable[[], Awaitable[MetricSnapshot | None]]


def load_snapshot(path: str | Path) -> MetricSnapshot:
    """Read one snapshot from a JSON file."""
    try:
        with open(path, encoding="utf-8") as fh:
            data = json.load(fh)
    except OSError as exc:
        raise ConfigurationError(str(path), f"cannot read snapshot: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(str(path), f"invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(str(path), "snapshot must be a JSON object")
    return MetricSnapshot.from_dict(data)


def iter_snapshots(path: str | Path) -> Iterator[MetricSnapshot]:
    """Yield snapshots from a JSON-lines file, skipping blank and invalid lines."""
    with open(path, encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError as exc:
                _log.warning("snapshot_line_invalid", path=str(path), line=lineno, error=str(exc))
                continue
            if not isinstance(data, dict):
                _log.warning("snapshot_line_invalid", path=str(path), line=lineno, error="not an object")
                continue
            yield MetricSnapshot.from_dict(data)


class JsonlSnapshotSource:
    """Replays a JSON-lines file one snapshot per call, then returns None."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._iter: Iterator[MetricSnapshot] | None = None
        self._count = 0

    @property
    def count(self) -> int:
        """Snapshots handed out so far."""
        return self._count

    async def __call__(self) -> MetricSnapshot | None:
        if self._iter is None:
            self._iter = iter_snapshots(self._path)
        snapshot = next(self._iter, None)
        if snapshot is not None:
            self._count += 1
        return snapshot

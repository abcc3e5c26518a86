"""Metric snapshot data structures.

A MetricSnapshot is produced by whatever collects host metrics and is never
mutated afterwards.  Every family is optional: rules over an absent family or
field simply produce no violation.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


def _get(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first present key; accepts camelCase and snake_case spellings."""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _num(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _int(value: Any) -> int:
    number = _num(value)
    if number is None or not math.isfinite(number):
        return 0
    return int(number)


def _seq(value: Any) -> tuple[Any, ...]:
    """A JSON array as a tuple; any other value reads as empty."""
    return tuple(value) if isinstance(value, list | tuple) else ()


def _parse_timestamp(value: Any) -> datetime:
    """Best-effort timestamp; an unreadable value is stamped with the current time."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    try:
        if isinstance(value, int | float) and not isinstance(value, bool):
            # Collectors written against JS clocks report epoch milliseconds.
            seconds = value / 1000.0 if value > 1e11 else float(value)
            return datetime.fromtimestamp(seconds, tz=UTC)
        if isinstance(value, str) and value:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    except (OverflowError, OSError, ValueError):
        pass
    return datetime.now(tz=UTC)


@dataclass(frozen=True)
class CpuMetrics:
    usage: float | None = None
    load_average: tuple[float, ...] = ()
    temperature: float | None = None
    iowait: float | None = None


@dataclass(frozen=True)
class MemoryMetrics:
    total: float | None = None
    used: float | None = None
    free: float | None = None
    used_percent: float | None = None
    available: float | None = None
    available_percent: float | None = None
    swap_total: float | None = None
    swap_used: float | None = None
    swap_percent: float | None = None


@dataclass(frozen=True)
class DiskMount:
    mount: str
    fs: str = ""
    size: float | None = None
    used: float | None = None
    available: float | None = None
    used_percent: float | None = None
    inodes_used_percent: float | None = None


@dataclass(frozen=True)
class DiskMetrics:
    mounts: tuple[DiskMount, ...] = ()
    read_rate: float | None = None
    write_rate: float | None = None
    growth_rate_per_hour: float | None = None

    @property
    def max_used_percent(self) -> float | None:
        values = [m.used_percent for m in self.mounts if m.used_percent is not None]
        return max(values) if values else None

    @property
    def max_inodes_used_percent(self) -> float | None:
        values = [m.inodes_used_percent for m in self.mounts if m.inodes_used_percent is not None]
        return max(values) if values else None


@dataclass(frozen=True)
class NetworkInterface:
    iface: str
    rx_bytes: float = 0.0
    tx_bytes: float = 0.0
    rx_errors: float = 0.0
    tx_errors: float = 0.0


@dataclass(frozen=True)
class NetworkMetrics:
    interfaces: tuple[NetworkInterface, ...] = ()
    total_rx_bytes: float | None = None
    total_tx_bytes: float | None = None
    total_rx_errors: float | None = None
    total_tx_errors: float | None = None
    error_rate: float | None = None
    rx_speed: float | None = None
    tx_speed: float | None = None


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    name: str
    cpu: float = 0.0
    memory: float = 0.0


@dataclass(frozen=True)
class ProcessMetrics:
    running: float | None = None
    blocked: float | None = None
    sleeping: float | None = None
    zombie: float | None = None
    total: float | None = None
    top_cpu: tuple[ProcessInfo, ...] = ()
    top_memory: tuple[ProcessInfo, ...] = ()


@dataclass(frozen=True)
class FileDescriptorMetrics:
    allocated: float | None = None
    max: float | None = None
    used_percent: float | None = None


@dataclass(frozen=True)
class MetricSnapshot:
    """One immutable reading of host state at ``timestamp``."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    cpu: CpuMetrics | None = None
    memory: MemoryMetrics | None = None
    disk: DiskMetrics | None = None
    network: NetworkMetrics | None = None
    processes: ProcessMetrics | None = None
    file_descriptors: FileDescriptorMetrics | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MetricSnapshot:
        """Build a snapshot from a JSON-like mapping.

        Unknown top-level keys are kept in ``extra`` so custom rules can
        address them by dotted path.
        """
        known = {"timestamp", "cpu", "memory", "disk", "network", "processes", "fileDescriptors", "file_descriptors"}
        return cls(
            timestamp=_parse_timestamp(data.get("timestamp")),
            cpu=_cpu_from(data.get("cpu")),
            memory=_memory_from(data.get("memory")),
            disk=_disk_from(data.get("disk")),
            network=_network_from(data.get("network")),
            processes=_processes_from(data.get("processes")),
            file_descriptors=_fds_from(_get(data, "fileDescriptors", "file_descriptors")),
            extra={k: v for k, v in data.items() if k not in known},
        )


def _cpu_from(raw: Any) -> CpuMetrics | None:
    if not isinstance(raw, Mapping):
        return None
    load = _seq(_get(raw, "loadAverage", "load_average"))
    return CpuMetrics(
        usage=_num(raw.get("usage")),
        load_average=tuple(v for v in (_num(x) for x in load) if v is not None),
        temperature=_num(raw.get("temperature")),
        iowait=_num(raw.get("iowait")),
    )


def _memory_from(raw: Any) -> MemoryMetrics | None:
    if not isinstance(raw, Mapping):
        return None
    return MemoryMetrics(
        total=_num(raw.get("total")),
        used=_num(raw.get("used")),
        free=_num(raw.get("free")),
        used_percent=_num(_get(raw, "usedPercent", "used_percent")),
        available=_num(raw.get("available")),
        available_percent=_num(_get(raw, "availablePercent", "available_percent")),
        swap_total=_num(_get(raw, "swapTotal", "swap_total")),
        swap_used=_num(_get(raw, "swapUsed", "swap_used")),
        swap_percent=_num(_get(raw, "swapPercent", "swap_percent")),
    )


def _disk_from(raw: Any) -> DiskMetrics | None:
    if not isinstance(raw, Mapping):
        return None
    mounts = []
    for m in _seq(raw.get("mounts")):
        if not isinstance(m, Mapping) or not m.get("mount"):
            continue
        mounts.append(
            DiskMount(
                mount=str(m["mount"]),
                fs=str(m.get("fs", "")),
                size=_num(m.get("size")),
                used=_num(m.get("used")),
                available=_num(m.get("available")),
                used_percent=_num(_get(m, "usedPercent", "used_percent")),
                inodes_used_percent=_num(_get(m, "inodesUsedPercent", "inodes_used_percent")),
            )
        )
    return DiskMetrics(
        mounts=tuple(mounts),
        read_rate=_num(_get(raw, "totalReadRate", "read_rate")),
        write_rate=_num(_get(raw, "totalWriteRate", "write_rate")),
        growth_rate_per_hour=_num(_get(raw, "growthRatePerHour", "growth_rate_per_hour")),
    )


def _network_from(raw: Any) -> NetworkMetrics | None:
    if not isinstance(raw, Mapping):
        return None
    interfaces = tuple(
        NetworkInterface(
            iface=str(i.get("iface", "")),
            rx_bytes=_num(_get(i, "rxBytes", "rx_bytes")) or 0.0,
            tx_bytes=_num(_get(i, "txBytes", "tx_bytes")) or 0.0,
            rx_errors=_num(_get(i, "rxErrors", "rx_errors")) or 0.0,
            tx_errors=_num(_get(i, "txErrors", "tx_errors")) or 0.0,
        )
        for i in _seq(raw.get("interfaces"))
        if isinstance(i, Mapping)
    )
    return NetworkMetrics(
        interfaces=interfaces,
        total_rx_bytes=_num(_get(raw, "totalRxBytes", "total_rx_bytes")),
        total_tx_bytes=_num(_get(raw, "totalTxBytes", "total_tx_bytes")),
        total_rx_errors=_num(_get(raw, "totalRxErrors", "total_rx_errors")),
        total_tx_errors=_num(_get(raw, "totalTxErrors", "total_tx_errors")),
        error_rate=_num(_get(raw, "errorRate", "error_rate")),
        rx_speed=_num(_get(raw, "totalRxSpeed", "rx_speed")),
        tx_speed=_num(_get(raw, "totalTxSpeed", "tx_speed")),
    )


def _process_list(raw: Any) -> tuple[ProcessInfo, ...]:
    out = []
    for p in _seq(raw):
        if not isinstance(p, Mapping):
            continue
        out.append(
            ProcessInfo(
                pid=_int(p.get("pid")),
                name=str(p.get("name", "")),
                cpu=_num(p.get("cpu")) or 0.0,
                memory=_num(p.get("memory")) or 0.0,
            )
        )
    return tuple(out)


def _processes_from(raw: Any) -> ProcessMetrics | None:
    if not isinstance(raw, Mapping):
        return None
    return ProcessMetrics(
        running=_num(raw.get("running")),
        blocked=_num(raw.get("blocked")),
        sleeping=_num(raw.get("sleeping")),
        zombie=_num(raw.get("zombie")),
        total=_num(raw.get("total")),
        top_cpu=_process_list(_get(raw, "topCpu", "top_cpu")),
        top_memory=_process_list(_get(raw, "topMemory", "top_memory")),
    )


def _fds_from(raw: Any) -> FileDescriptorMetrics | None:
    if not isinstance(raw, Mapping):
        return None
    return FileDescriptorMetrics(
        allocated=_num(raw.get("allocated")),
        max=_num(raw.get("max")),
        used_percent=_num(_get(raw, "usedPercent", "used_percent")),
    )

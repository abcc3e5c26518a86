"""Compile a rule-configuration tree into an immutable RuleSet.

The tree is the ``rules`` section of the YAML config (or any mapping of the
same shape).  Keys may be written in snake_case or camelCase.  A malformed
sub-rule raises ConfigurationError internally, is logged as ``rule_skipped``
and left out of the RuleSet; it never prevents the remaining rules from
loading.
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable, Iterable, Mapping
from datetime import timedelta
from typing import Any

import structlog

from opsagent.errors import ConfigurationError
from opsagent.models.rules import (
    CompiledRule,
    Direction,
    LevelRule,
    MetricFamily,
    RuleScope,
    RuleSet,
    RuleType,
    Severity,
    SustainedRule,
)

_log = structlog.get_logger(component="rules.loader")

_DURATION_RE = re.compile(r"^\s*([0-9]+(?:\.[0-9]+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_BARE_DURATION_WARN_SECONDS = 86400

# Metric path each family's top-level warning/critical/sustained keys apply to.
_PRIMARY_METRIC = {
    MetricFamily.CPU: "cpu.usage",
    MetricFamily.MEMORY: "memory.usedPercent",
    MetricFamily.DISK: "disk.maxUsedPercent",
    MetricFamily.FILE_DESCRIPTORS: "fileDescriptors.usedPercent",
}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p.title() for p in rest)


def _get(section: Mapping[str, Any], name: str) -> Any:
    """Look a key up by its snake_case name or the camelCase equivalent."""
    if name in section:
        return section[name]
    return section.get(_camel(name))


def _threshold(section: Mapping[str, Any], name: str, path: str) -> float | None:
    raw = _get(section, name)
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, int | float | str):
        raise ConfigurationError(f"{path}.{name}", f"expected a number, got {raw!r}")
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{path}.{name}", f"expected a number, got {raw!r}") from exc
    if not math.isfinite(value):
        raise ConfigurationError(f"{path}.{name}", "threshold must be finite")
    return value


def _section(raw: Any, path: str) -> Mapping[str, Any]:
    if not isinstance(raw, Mapping):
        raise ConfigurationError(path, f"expected a mapping, got {type(raw).__name__}")
    return raw


def parse_duration(raw: Any, path: str = "duration") -> timedelta:
    """Parse ``300``, ``"300s"``, ``"5m"``, ``"1h"`` or ``"1500ms"`` into a timedelta.

    Bare numbers are seconds; one above a day is accepted with a warning.
    """
    bare = False
    if isinstance(raw, timedelta):
        seconds = raw.total_seconds()
    elif isinstance(raw, bool):
        raise ConfigurationError(path, f"invalid duration {raw!r}")
    elif isinstance(raw, int | float):
        seconds = float(raw)
        bare = True
    elif isinstance(raw, str):
        match = _DURATION_RE.match(raw)
        if match is None:
            raise ConfigurationError(path, f"invalid duration {raw!r}")
        seconds = float(match.group(1)) * _DURATION_UNITS[match.group(2) or "s"]
        bare = match.group(2) is None
    else:
        raise ConfigurationError(path, f"invalid duration {raw!r}")
    if seconds <= 0:
        raise ConfigurationError(path, "duration must be positive")
    if bare and seconds > _BARE_DURATION_WARN_SECONDS:
        _log.warning(
            "duration_suspiciously_large", path=path, value=raw, seconds=seconds, hint="bare numbers are seconds"
        )
    return timedelta(seconds=seconds)


def _severity(raw: Any, path: str, default: Severity) -> Severity:
    if raw is None:
        return default
    try:
        return Severity(str(raw).lower())
    except ValueError as exc:
        raise ConfigurationError(path, f"unknown severity {raw!r}") from exc


def _direction(raw: Any, path: str) -> Direction:
    if raw is None:
        return Direction.ABOVE
    text = str(raw).strip().lower()
    if text in (">", ">=", "above", "gte"):
        return Direction.ABOVE
    if text in ("<", "<=", "below", "lte"):
        return Direction.BELOW
    raise ConfigurationError(path, f"unsupported operator {raw!r}")


def _level(
    family: MetricFamily,
    metric: str,
    label: str,
    warning: float | None,
    critical: float | None,
    *,
    unit: str = "",
    rule_type: RuleType = RuleType.THRESHOLD,
    direction: Direction = Direction.ABOVE,
    scope: RuleScope = RuleScope.METRIC,
    field: str = "",
) -> LevelRule | None:
    if warning is None and critical is None:
        return None
    side = "at or above" if direction is Direction.ABOVE else "at or below"
    extreme = "critically high" if direction is Direction.ABOVE else "critically low"
    return LevelRule(
        family=family,
        metric=metric,
        rule_type=rule_type,
        warning=warning,
        critical=critical,
        direction=direction,
        warning_message=f"{label} {side} {{threshold}}{unit}",
        critical_message=f"{label} {extreme} ({side} {{threshold}}{unit})",
        scope=scope,
        field=field,
    )


def _pair(
    section: Mapping[str, Any], path: str, warning_key: str = "warning", critical_key: str = "critical"
) -> tuple[float | None, float | None]:
    return _threshold(section, warning_key, path), _threshold(section, critical_key, path)


def _sustained(family: MetricFamily, section: Mapping[str, Any], path: str, label: str, unit: str) -> SustainedRule:
    block = _section(_get(section, "sustained"), f"{path}.sustained")
    threshold = _threshold(block, "threshold", f"{path}.sustained")
    if threshold is None:
        raise ConfigurationError(f"{path}.sustained.threshold", "sustained rule needs a threshold")
    if _get(block, "duration") is None:
        raise ConfigurationError(f"{path}.sustained.duration", "sustained rule needs a duration")
    return SustainedRule(
        family=family,
        metric=_PRIMARY_METRIC[family],
        threshold=threshold,
        duration=parse_duration(_get(block, "duration"), f"{path}.sustained.duration"),
        severity=_severity(_get(block, "severity"), f"{path}.sustained.severity", Severity.CRITICAL),
        message=f"{label} sustained at or above {{threshold}}{unit} for extended period",
    )


# --- per-family compilers ---------------------------------------------------
#
# Each compiler yields (sub-rule path, thunk) pairs so that a failing sub-rule
# is skipped on its own.

_Thunk = Callable[[], CompiledRule | None]


def _cpu(section: Mapping[str, Any], path: str) -> Iterable[tuple[str, _Thunk]]:
    fam = MetricFamily.CPU
    yield path, lambda: _level(fam, "cpu.usage", "CPU usage", *_pair(section, path), unit="%")
    if _get(section, "sustained") is not None:
        yield f"{path}.sustained", lambda: _sustained(fam, section, path, "CPU usage", "%")
    for key, metric, label, unit in (
        ("load_average", "cpu.loadAverage.1min", "1-minute load average", ""),
        ("temperature", "cpu.temperature", "CPU temperature", "C"),
        ("iowait", "cpu.iowait", "CPU iowait", "%"),
    ):
        if _get(section, key) is None:
            continue
        sub = f"{path}.{key}"
        yield sub, lambda s=sub, k=key, m=metric, lb=label, u=unit: _level(
            fam, m, lb, *_pair(_section(_get(section, k), s), s), unit=u
        )


def _memory(section: Mapping[str, Any], path: str) -> Iterable[tuple[str, _Thunk]]:
    fam = MetricFamily.MEMORY
    yield path, lambda: _level(fam, "memory.usedPercent", "Memory usage", *_pair(section, path), unit="%")
    if _get(section, "sustained") is not None:
        yield f"{path}.sustained", lambda: _sustained(fam, section, path, "Memory usage", "%")
    if _get(section, "swap") is not None:
        sub = f"{path}.swap"
        yield sub, lambda: _level(
            fam, "memory.swapPercent", "Swap usage", *_pair(_section(_get(section, "swap"), sub), sub), unit="%"
        )
    if _get(section, "available") is not None:
        sub = f"{path}.available"
        yield sub, lambda: _level(
            fam,
            "memory.availablePercent",
            "Available memory",
            *_pair(_section(_get(section, "available"), sub), sub),
            unit="%",
            direction=Direction.BELOW,
        )


def _disk(section: Mapping[str, Any], path: str) -> Iterable[tuple[str, _Thunk]]:
    fam = MetricFamily.DISK
    if _get(section, "per_mount"):
        yield path, lambda: _level(
            fam,
            "disk.mount.{target}",
            "Disk usage on {target}",
            *_pair(section, path),
            unit="%",
            scope=RuleScope.PER_MOUNT,
            field="used_percent",
        )
    else:
        yield path, lambda: _level(fam, "disk.maxUsedPercent", "Disk usage", *_pair(section, path), unit="%")
    if _get(section, "sustained") is not None:
        yield f"{path}.sustained", lambda: _sustained(fam, section, path, "Disk usage", "%")
    if _get(section, "inodes") is not None:
        sub = f"{path}.inodes"
        yield sub, lambda: _level(
            fam, "disk.inodes.maxUsedPercent", "Inode usage", *_pair(_section(_get(section, "inodes"), sub), sub), unit="%"
        )
    if _get(section, "io") is not None:
        sub = f"{path}.io"
        for direction in ("read", "write"):
            yield f"{sub}.{direction}", lambda d=direction: _level(
                fam,
                f"disk.io.{d}Rate",
                f"Disk {d} rate",
                *_pair(_section(_get(section, "io"), sub), sub, f"{d}_rate_warning", f"{d}_rate_critical"),
            )
    growth = _get(section, "rate")
    if growth is not None:
        sub = f"{path}.rate"
        yield sub, lambda: _level(
            fam,
            "disk.growthRatePerHour",
            "Disk growth rate",
            _threshold(_section(growth, sub), "rate_per_hour", sub),
            None,
            unit="/h",
            rule_type=RuleType.RATE,
        )
    elif _get(section, "growth_rate_warning") is not None or _get(section, "growth_rate_critical") is not None:
        yield f"{path}.growth_rate", lambda: _level(
            fam,
            "disk.growthRatePerHour",
            "Disk growth rate",
            *_pair(section, path, "growth_rate_warning", "growth_rate_critical"),
            unit="/h",
            rule_type=RuleType.RATE,
        )


def _network(section: Mapping[str, Any], path: str) -> Iterable[tuple[str, _Thunk]]:
    fam = MetricFamily.NETWORK
    rate = _get(section, "rate")
    if rate is not None:
        sub = f"{path}.rate"
        yield sub, lambda: _level(
            fam,
            "network.errorRate",
            "Network error rate",
            _threshold(_section(rate, sub), "rate_per_hour", sub),
            None,
            rule_type=RuleType.RATE,
        )
    else:
        yield path, lambda: _level(
            fam,
            "network.errorRate",
            "Network error rate",
            *_pair(section, path, "error_rate_warning", "error_rate_critical"),
            rule_type=RuleType.RATE,
        )
    if _get(section, "bandwidth") is not None:
        sub = f"{path}.bandwidth"
        for direction in ("rx", "tx"):
            yield f"{sub}.{direction}", lambda d=direction: _level(
                fam,
                f"network.bandwidth.{d}Speed",
                f"Network {d.upper()} throughput",
                *_pair(_section(_get(section, "bandwidth"), sub), sub, f"{d}_warning", f"{d}_critical"),
                unit=" B/s",
            )


def _processes(section: Mapping[str, Any], path: str) -> Iterable[tuple[str, _Thunk]]:
    fam = MetricFamily.PROCESSES
    for key, label in (("zombie", "Zombie process count"), ("blocked", "Blocked process count"), ("total", "Process count")):
        yield f"{path}.{key}", lambda k=key, lb=label: _level(
            fam, f"processes.{k}", lb, *_pair(section, path, f"{k}_warning", f"{k}_critical")
        )
    for key, field in (("high_cpu", "cpu"), ("high_memory", "memory")):
        yield f"{path}.{key}", lambda k=key, f=field: _level(
            fam,
            f"process.{{target}}.{f}",
            f"Process {{target}} {f} usage",
            *_pair(section, path, f"{k}_warning", f"{k}_critical"),
            unit="%",
            scope=RuleScope.PER_PROCESS,
            field=f,
        )


def _file_descriptors(section: Mapping[str, Any], path: str) -> Iterable[tuple[str, _Thunk]]:
    fam = MetricFamily.FILE_DESCRIPTORS
    yield path, lambda: _level(
        fam, "fileDescriptors.usedPercent", "File descriptor usage", *_pair(section, path), unit="%"
    )
    if _get(section, "sustained") is not None:
        yield f"{path}.sustained", lambda: _sustained(fam, section, path, "File descriptor usage", "%")


def _custom_rule(raw: Any, path: str) -> LevelRule | None:
    rule = _section(raw, path)
    metric = _get(rule, "metric")
    if not isinstance(metric, str) or not metric.strip():
        raise ConfigurationError(f"{path}.metric", "custom rule needs a metric path")
    direction = _direction(_get(rule, "operator"), f"{path}.operator")
    warning, critical = _pair(rule, path)
    if warning is None and critical is None:
        raise ConfigurationError(path, "custom rule needs a warning or critical threshold")
    label = _get(rule, "message") or metric.strip()
    return _level(MetricFamily.CUSTOM, metric.strip(), str(label), warning, critical, direction=direction)


_COMPILERS = {
    MetricFamily.CPU: _cpu,
    MetricFamily.MEMORY: _memory,
    MetricFamily.DISK: _disk,
    MetricFamily.NETWORK: _network,
    MetricFamily.PROCESSES: _processes,
    MetricFamily.FILE_DESCRIPTORS: _file_descriptors,
}

_FAMILY_KEYS = {
    "cpu": MetricFamily.CPU,
    "memory": MetricFamily.MEMORY,
    "disk": MetricFamily.DISK,
    "network": MetricFamily.NETWORK,
    "processes": MetricFamily.PROCESSES,
    "file_descriptors": MetricFamily.FILE_DESCRIPTORS,
    "fileDescriptors": MetricFamily.FILE_DESCRIPTORS,
    "custom": MetricFamily.CUSTOM,
}


def compile_rules(config: Mapping[str, Any] | None) -> RuleSet:
    """Compile *config* into a RuleSet ordered cpu → … → file_descriptors → custom.

    Never raises for malformed content; skipped sub-rule paths are reported
    in ``RuleSet.skipped``.
    """
    if not config:
        return RuleSet()
    if not isinstance(config, Mapping):
        _log.warning("rule_config_invalid", reason=f"expected a mapping, got {type(config).__name__}")
        return RuleSet(skipped=("rules",))

    # A wrapping {"rules": {...}} tree (the whole config file) is accepted too.
    if "rules" in config and isinstance(config["rules"], Mapping) and not set(config) & set(_FAMILY_KEYS):
        config = config["rules"]

    sections: dict[MetricFamily, Any] = {}
    skipped: list[str] = []
    for key, value in config.items():
        family = _FAMILY_KEYS.get(key)
        if family is None:
            _log.warning("rule_family_unknown", family=key)
            skipped.append(f"rules.{key}")
            continue
        sections[family] = value

    rules: list[CompiledRule] = []
    for family in MetricFamily:
        if family not in sections or sections[family] is None:
            continue
        path = f"rules.{family.value}"
        if family is MetricFamily.CUSTOM:
            thunks = _custom_thunks(sections[family], path)
        else:
            try:
                section = _section(sections[family], path)
            except ConfigurationError as exc:
                _log.warning("rule_skipped", path=exc.path, reason=exc.reason)
                skipped.append(exc.path)
                continue
            thunks = _COMPILERS[family](section, path)
        for sub_path, thunk in thunks:
            try:
                rule = thunk()
            except ConfigurationError as exc:
                _log.warning("rule_skipped", path=exc.path, reason=exc.reason)
                skipped.append(sub_path)
                continue
            if rule is not None:
                rules.append(rule)

    _log.info("rules_compiled", count=len(rules), skipped=len(skipped))
    return RuleSet(rules=tuple(rules), skipped=tuple(skipped))


def _custom_thunks(raw: Any, path: str) -> Iterable[tuple[str, _Thunk]]:
    if not isinstance(raw, list | tuple):
        def _fail() -> None:
            raise ConfigurationError(path, "custom rules must be a list")

        yield path, _fail
        return
    for index, entry in enumerate(raw):
        sub = f"{path}[{index}]"
        yield sub, lambda e=entry, s=sub: _custom_rule(e, s)

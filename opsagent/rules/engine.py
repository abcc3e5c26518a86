"""Rule engine: evaluates a MetricSnapshot against the active RuleSet.

The only mutable state is the sustained-condition tracker, keyed by metric
path.  Evaluation never raises and performs no I/O; one engine instance must
not be evaluated concurrently without external serialization.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

import structlog

from opsagent.models.metrics import MetricSnapshot
from opsagent.models.rules import (
    LevelRule,
    RuleScope,
    RuleSet,
    RuleType,
    Severity,
    SustainedRule,
    Violation,
    ViolationRule,
)
from opsagent.observability.metrics import violations_total
from opsagent.rules.loader import compile_rules

_log = structlog.get_logger(component="rules.engine")

_Extractor = Callable[[MetricSnapshot], float | None]


def _first(values: tuple[float, ...]) -> float | None:
    return values[0] if values else None


_EXTRACTORS: dict[str, _Extractor] = {
    "cpu.usage": lambda s: s.cpu.usage if s.cpu else None,
    "cpu.loadAverage.1min": lambda s: _first(s.cpu.load_average) if s.cpu else None,
    "cpu.temperature": lambda s: s.cpu.temperature if s.cpu else None,
    "cpu.iowait": lambda s: s.cpu.iowait if s.cpu else None,
    "memory.usedPercent": lambda s: s.memory.used_percent if s.memory else None,
    "memory.swapPercent": lambda s: s.memory.swap_percent if s.memory else None,
    "memory.availablePercent": lambda s: s.memory.available_percent if s.memory else None,
    "disk.maxUsedPercent": lambda s: s.disk.max_used_percent if s.disk else None,
    "disk.inodes.maxUsedPercent": lambda s: s.disk.max_inodes_used_percent if s.disk else None,
    "disk.io.readRate": lambda s: s.disk.read_rate if s.disk else None,
    "disk.io.writeRate": lambda s: s.disk.write_rate if s.disk else None,
    "disk.growthRatePerHour": lambda s: s.disk.growth_rate_per_hour if s.disk else None,
    "network.errorRate": lambda s: s.network.error_rate if s.network else None,
    "network.bandwidth.rxSpeed": lambda s: s.network.rx_speed if s.network else None,
    "network.bandwidth.txSpeed": lambda s: s.network.tx_speed if s.network else None,
    "processes.zombie": lambda s: s.processes.zombie if s.processes else None,
    "processes.blocked": lambda s: s.processes.blocked if s.processes else None,
    "processes.total": lambda s: s.processes.total if s.processes else None,
    "fileDescriptors.usedPercent": lambda s: s.file_descriptors.used_percent if s.file_descriptors else None,
}


def _snake(name: str) -> str:
    out = []
    for ch in name:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out)


def _as_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    return None


def resolve_metric(snapshot: MetricSnapshot, path: str) -> float | None:
    """Resolve a dotted metric path against *snapshot*.

    Named paths (``cpu.loadAverage.1min``, ``disk.maxUsedPercent``) use the
    built-in extractors; anything else walks dataclass attributes (camelCase
    or snake_case), mapping keys, sequence indexes and finally
    ``snapshot.extra``.  Returns None when any segment is absent.
    """
    extractor = _EXTRACTORS.get(path)
    if extractor is not None:
        return extractor(snapshot)

    node: Any = snapshot
    for part in path.split("."):
        if node is None:
            return None
        if isinstance(node, Mapping):
            node = node.get(part)
        elif isinstance(node, list | tuple):
            try:
                node = node[int(part)]
            except (ValueError, IndexError):
                return None
        elif hasattr(node, _snake(part)):
            node = getattr(node, _snake(part))
        elif node is snapshot and part in snapshot.extra:
            node = snapshot.extra[part]
        else:
            return None
    return _as_number(node)


def _render(template: str, **values: Any) -> str:
    try:
        return template.format(**values)
    except (KeyError, IndexError, ValueError):
        return template


def _fmt(value: float) -> str:
    return f"{value:g}"


class RuleEngine:
    """Evaluates snapshots; stateful only for sustained-duration tracking."""

    def __init__(self, rules: RuleSet | None = None) -> None:
        self._rules = rules or RuleSet()
        # metric path -> first timestamp of the current unbroken violating run
        self._violating_since: dict[str, datetime] = {}

    def load_rules_from_config(self, config: Mapping[str, Any] | RuleSet | None) -> RuleSet:
        """Replace the active rule set wholesale.

        Sustained state survives for metric paths that are still configured
        with a sustained rule; state for removed paths is dropped.
        """
        rules = config if isinstance(config, RuleSet) else compile_rules(config)
        keep = rules.sustained_metrics
        self._violating_since = {m: ts for m, ts in self._violating_since.items() if m in keep}
        self._rules = rules
        _log.info("rules_loaded", count=len(rules), sustained=sorted(keep))
        return rules

    def get_rules(self) -> RuleSet:
        return self._rules

    def sustained_since(self, metric: str) -> datetime | None:
        return self._violating_since.get(metric)

    def evaluate(self, snapshot: MetricSnapshot) -> list[Violation]:
        """Return violations in rule order.  Never raises."""
        rules = self._rules
        violations: list[Violation] = []
        for rule in rules.rules:
            try:
                if isinstance(rule, SustainedRule):
                    found = self._check_sustained(rule, snapshot)
                else:
                    found = self._check_level(rule, snapshot)
            except Exception as exc:  # noqa: BLE001
                _log.error("rule_evaluation_failed", metric=rule.metric, error=str(exc))
                continue
            for violation in found:
                violations_total.labels(metric_family=rule.family.value).inc()
                violations.append(violation)
        if violations:
            _log.debug("violations_detected", count=len(violations))
        return violations

    # ------------------------------------------------------------------
    # Rule kinds
    # ------------------------------------------------------------------

    def _check_level(self, rule: LevelRule, snapshot: MetricSnapshot) -> list[Violation]:
        if rule.scope is RuleScope.PER_MOUNT:
            if snapshot.disk is None:
                return []
            targets = [(m.mount, getattr(m, rule.field)) for m in snapshot.disk.mounts]
        elif rule.scope is RuleScope.PER_PROCESS:
            if snapshot.processes is None:
                return []
            source = snapshot.processes.top_cpu if rule.field == "cpu" else snapshot.processes.top_memory
            # Several PIDs may share a name; the worst one speaks for the name.
            worst: dict[str, float] = {}
            for proc in source:
                value = getattr(proc, rule.field)
                if proc.name not in worst or value > worst[proc.name]:
                    worst[proc.name] = value
            targets = list(worst.items())
        else:
            targets = [("", resolve_metric(snapshot, rule.metric))]

        out = []
        for target, value in targets:
            if value is None:
                continue
            violation = self._level_violation(rule, target, float(value), snapshot.timestamp)
            if violation is not None:
                out.append(violation)
        return out

    def _level_violation(self, rule: LevelRule, target: str, value: float, ts: datetime) -> Violation | None:
        if rule.critical is not None and rule.direction.violates(value, rule.critical):
            severity, threshold, template = Severity.CRITICAL, rule.critical, rule.critical_message
        elif rule.warning is not None and rule.direction.violates(value, rule.warning):
            severity, threshold, template = Severity.WARNING, rule.warning, rule.warning_message
        else:
            return None

        metric = _render(rule.metric, target=target) if target else rule.metric
        message = _render(template, metric=metric, threshold=_fmt(threshold), target=target)
        is_rate = rule.rule_type is RuleType.RATE
        return Violation(
            metric=metric,
            current_value=value,
            rule=ViolationRule(
                severity=severity,
                message=message,
                type=rule.rule_type,
                value=None if is_rate else threshold,
                rate_per_hour=threshold if is_rate else None,
                operator=rule.direction.value,
            ),
            timestamp=ts,
        )

    def _check_sustained(self, rule: SustainedRule, snapshot: MetricSnapshot) -> list[Violation]:
        value = resolve_metric(snapshot, rule.metric)
        if value is None:
            # Absent reading says nothing about the run; leave the tracker alone.
            return []
        now = snapshot.timestamp
        if not rule.direction.violates(value, rule.threshold):
            if self._violating_since.pop(rule.metric, None) is not None:
                _log.debug("sustained_reset", metric=rule.metric, value=value)
            return []

        since = self._violating_since.setdefault(rule.metric, now)
        if now - since < rule.duration:
            return []
        return [
            Violation(
                metric=rule.metric,
                current_value=value,
                rule=ViolationRule(
                    severity=rule.severity,
                    message=_render(rule.message, metric=rule.metric, threshold=_fmt(rule.threshold)),
                    type=RuleType.SUSTAINED,
                    value=rule.threshold,
                    operator=rule.direction.value,
                ),
                timestamp=now,
            )
        ]

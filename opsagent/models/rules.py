"""Rule and violation data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum


class Severity(StrEnum):
    """Alert severity level."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class RuleType(StrEnum):
    """How a violation was detected."""

    THRESHOLD = "threshold"
    SUSTAINED = "sustained"
    RATE = "rate"


class Direction(StrEnum):
    """Which side of a threshold is the violating side.

    Comparisons are always inclusive on the violating side.
    """

    ABOVE = ">="
    BELOW = "<="

    def violates(self, value: float, threshold: float) -> bool:
        if self is Direction.ABOVE:
            return value >= threshold
        return value <= threshold


class MetricFamily(StrEnum):
    """Rule families, in evaluation order."""

    CPU = "cpu"
    MEMORY = "memory"
    DISK = "disk"
    NETWORK = "network"
    PROCESSES = "processes"
    FILE_DESCRIPTORS = "file_descriptors"
    CUSTOM = "custom"


class RuleScope(StrEnum):
    """What a compiled rule fans out over."""

    METRIC = "metric"
    PER_MOUNT = "per_mount"
    PER_PROCESS = "per_process"


@dataclass(frozen=True)
class LevelRule:
    """Warning/critical pair for one metric path.

    At most one of the two levels fires per cycle; critical wins.
    ``message`` templates are formatted with ``threshold`` and, for fan-out
    scopes, ``target`` (mountpoint or process name).
    """

    family: MetricFamily
    metric: str
    rule_type: RuleType = RuleType.THRESHOLD
    warning: float | None = None
    critical: float | None = None
    direction: Direction = Direction.ABOVE
    warning_message: str = "{metric} at or above {threshold}"
    critical_message: str = "{metric} critically high (at or above {threshold})"
    scope: RuleScope = RuleScope.METRIC
    field: str = ""


@dataclass(frozen=True)
class SustainedRule:
    """Threshold that must hold continuously for ``duration`` before it counts."""

    family: MetricFamily
    metric: str
    threshold: float
    duration: timedelta
    severity: Severity = Severity.CRITICAL
    direction: Direction = Direction.ABOVE
    message: str = "{metric} sustained at or above {threshold} for extended period"


CompiledRule = LevelRule | SustainedRule


@dataclass(frozen=True)
class RuleSet:
    """Immutable, fully compiled rule configuration.

    Replaced wholesale on reload; never mutated while evaluation is in flight.
    """

    rules: tuple[CompiledRule, ...] = ()
    skipped: tuple[str, ...] = ()

    @property
    def sustained_metrics(self) -> frozenset[str]:
        return frozenset(r.metric for r in self.rules if isinstance(r, SustainedRule))

    def __len__(self) -> int:
        return len(self.rules)


@dataclass(frozen=True)
class ViolationRule:
    """The rule half of a Violation -- what was broken, and how."""

    severity: Severity
    message: str
    type: RuleType
    value: float | None = None
    rate_per_hour: float | None = None
    operator: str = Direction.ABOVE.value

    @property
    def threshold(self) -> float:
        if self.type is RuleType.RATE and self.rate_per_hour is not None:
            return self.rate_per_hour
        return self.value if self.value is not None else 0.0


@dataclass(frozen=True)
class Violation:
    """One rule broken by one snapshot.  Produced fresh every cycle."""

    metric: str
    current_value: float
    rule: ViolationRule
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

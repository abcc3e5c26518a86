"""Rule compilation and evaluation."""

from opsagent.rules.engine import RuleEngine, resolve_metric
from opsagent.rules.loader import compile_rules, parse_duration

__all__ = ["RuleEngine", "compile_rules", "parse_duration", "resolve_metric"]

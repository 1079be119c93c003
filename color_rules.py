from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Tuple

DEFAULT_COLOR = "#3B82F6"
EQUALITY_TOLERANCE = 0.1


class RuleOperator(str, Enum):
    EQ = "="
    LT = "<"
    GT = ">"
    LE = "<="
    GE = ">="

    def matches(self, value: float, threshold: float) -> bool:
        if self is RuleOperator.LT:
            return value < threshold
        if self is RuleOperator.GT:
            return value > threshold
        if self is RuleOperator.LE:
            return value <= threshold
        if self is RuleOperator.GE:
            return value >= threshold
        return abs(value - threshold) < EQUALITY_TOLERANCE


def parse_operator(raw: str) -> RuleOperator:
    try:
        return RuleOperator(str(raw).strip())
    except ValueError as exc:
        supported = ", ".join(op.value for op in RuleOperator)
        raise ValueError(f"Unknown rule operator {raw!r}; expected one of {supported}") from exc


@dataclass
class ColorRule:
    rule_id: str
    data_source_id: str
    operator: RuleOperator
    threshold: float
    color: str
    label: str | None = None

    def matches(self, value: float) -> bool:
        return self.operator.matches(float(value), float(self.threshold))


def classify(
    value: float,
    rules: Iterable[ColorRule],
    data_source_id: str | None = None,
) -> Tuple[str, ColorRule | None]:
    """Pick the display color for ``value``.

    Candidates are the rules of ``data_source_id`` (all rules when it is None),
    tried in descending threshold order. The first satisfied rule wins, so when
    several rules match (``>= 10`` and ``>= 25`` for 30) the larger threshold is
    chosen. Rules with equal thresholds keep their insertion order. Without a
    match the default color is returned together with ``None``.
    """
    candidates = [r for r in rules if data_source_id is None or r.data_source_id == data_source_id]
    for rule in sorted(candidates, key=lambda r: float(r.threshold), reverse=True):
        if rule.matches(value):
            return rule.color, rule
    return DEFAULT_COLOR, None

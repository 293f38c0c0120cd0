"""
Weighted (composite) valuation.

composite = Σ value(label) × weight(label) over the contributing labels,
with a missing value counting as 0. The composite only exists once at least
one contributing value is strictly positive. Nothing here is cached: callers
recompute whenever a value or a weight changes.
"""
from dataclasses import dataclass
from typing import Any, Iterable, Optional

CANONICAL_LABELS: tuple[str, ...] = ("DCF", "Comps")


@dataclass
class MethodInput:
    method_type: str
    weight: float = 0.0
    calculated_value: Optional[float] = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "MethodInput":
        value = d.get("calculated_value")
        return cls(
            method_type=str(d["method_type"]),
            weight=float(d.get("weight") or 0.0),
            calculated_value=float(value) if value is not None else None,
        )


@dataclass
class Contribution:
    method_type: str
    weight: float
    value: float
    contribution: float


def _find(methods: Iterable[MethodInput], label: str) -> Optional[MethodInput]:
    wanted = label.lower()
    for m in methods:
        if m.method_type.lower() == wanted:
            return m
    return None


def method_breakdown(
    methods: Iterable[MethodInput],
    labels: Iterable[str] = CANONICAL_LABELS,
) -> list[Contribution]:
    methods = list(methods)
    rows = []
    for label in labels:
        m = _find(methods, label)
        weight = m.weight if m is not None else 0.0
        value = m.calculated_value if m is not None and m.calculated_value is not None else 0.0
        rows.append(Contribution(method_type=label, weight=weight, value=value, contribution=value * weight))
    return rows


def composite_valuation(
    methods: Iterable[MethodInput],
    labels: Iterable[str] = CANONICAL_LABELS,
) -> Optional[float]:
    """Weighted sum of the labelled methods, or None when no value is positive yet."""
    rows = method_breakdown(methods, labels)
    if not any(r.value > 0 for r in rows):
        return None
    return sum(r.contribution for r in rows)

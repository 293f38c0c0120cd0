"""
ValuationDesk Result Extractor

Recovers structured valuation figures from free-form assistant text.

Grammar (case-insensitive):

    marker := LABEL ("_" | " ") ("VALUE" | "VALUATION") ":" WS* "$" NUMBER
    NUMBER := DIGITS ("," DIGITS)* ("." DIGITS)?

e.g. ``DCF_VALUE: $2,500,000`` or ``comps valuation: $3,000,000.50``.

Method labels come from a registry that can be extended at runtime.
Combined-result labels (FINAL, WEIGHTED) describe the blended figure
rather than a single method. Matches are reported in text order and are
never de-duplicated.
"""
import re
from dataclasses import dataclass
from typing import Optional


SAVE_PROMPT = "Valuation result detected. Would you like to save it to the project?"

# marker label (upper case) -> method type as stored by the methods table
_METHOD_LABELS: dict[str, str] = {
    "DCF": "DCF",
    "COMPS": "Comps",
}

COMBINED_LABELS: tuple[str, ...] = ("FINAL", "WEIGHTED")

_NUMBER = r"\d[\d,]*(?:\.\d+)?"

_pattern_cache: Optional[re.Pattern[str]] = None


@dataclass
class Extraction:
    method_type: Optional[str]   # None for a combined result
    value: float
    label: str                   # marker label as matched, upper-cased

    @property
    def is_combined(self) -> bool:
        return self.method_type is None


def register_method_label(label: str, method_type: str) -> None:
    """Teach the extractor a new method marker, e.g. ("PRECEDENTS", "Precedents")."""
    global _pattern_cache
    label = label.strip().upper()
    if not re.fullmatch(r"[A-Z][A-Z0-9]*", label):
        raise ValueError(f"Invalid marker label '{label}'")
    if label in COMBINED_LABELS:
        raise ValueError(f"'{label}' is reserved for combined results")
    _METHOD_LABELS[label] = method_type
    _pattern_cache = None


def method_labels() -> dict[str, str]:
    return dict(_METHOD_LABELS)


def method_type_for(name: str) -> Optional[str]:
    """Resolve a marker label or method type (any case) to the registered method type."""
    key = name.strip().upper()
    if key in _METHOD_LABELS:
        return _METHOD_LABELS[key]
    for method_type in _METHOD_LABELS.values():
        if method_type.upper() == key:
            return method_type
    return None


def _marker_pattern() -> re.Pattern[str]:
    global _pattern_cache
    if _pattern_cache is None:
        labels = sorted(list(_METHOD_LABELS) + list(COMBINED_LABELS), key=len, reverse=True)
        alternation = "|".join(re.escape(l) for l in labels)
        _pattern_cache = re.compile(
            rf"\b({alternation})[_ ](?:VALUE|VALUATION):\s*\$({_NUMBER})",
            re.IGNORECASE,
        )
    return _pattern_cache


def parse_amount(literal: str) -> float:
    """'2,500,000' -> 2500000.0"""
    return float(literal.replace(",", ""))


def extract_valuations(text: str) -> list[Extraction]:
    """
    Scan assistant text for result markers.

    Returns one Extraction per match, in order of appearance.
    """
    if not text:
        return []
    found: list[Extraction] = []
    for m in _marker_pattern().finditer(text):
        label = m.group(1).upper()
        value = parse_amount(m.group(2))
        if label in COMBINED_LABELS:
            found.append(Extraction(method_type=None, value=value, label=label))
        else:
            found.append(Extraction(method_type=_METHOD_LABELS[label], value=value, label=label))
    return found

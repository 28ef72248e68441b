"""Label maps, label selectors and template hashing."""

from __future__ import annotations

import dataclasses
import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

__all__ = [
    "LABEL_KEY_RUNNER_TEMPLATE_HASH",
    "LABEL_KEY_RUNNER_DEPLOYMENT_NAME",
    "LABEL_KEY_POD_TEMPLATE_HASH",
    "LABEL_KEY_RUNNER_SET_NAME",
    "LabelSelectorRequirement",
    "LabelSelector",
    "filter_labels",
    "clone_and_add_label",
    "clone_selector_and_add_label",
    "compute_hash",
]

LABEL_KEY_RUNNER_TEMPLATE_HASH = "runner-template-hash"
LABEL_KEY_RUNNER_DEPLOYMENT_NAME = "runner-deployment-name"
LABEL_KEY_POD_TEMPLATE_HASH = "pod-template-hash"
LABEL_KEY_RUNNER_SET_NAME = "runnerset-name"

# Characters without vowels, so that encoded hashes never spell words.
_SAFE_ALPHANUMS = "bcdfghjklmnpqrstvwxz2456789"

_FNV32_OFFSET = 0x811C9DC5
_FNV32_PRIME = 0x01000193


@dataclass
class LabelSelectorRequirement:
    """One expression of a label selector: a key, an operator and values."""

    key: str
    operator: str
    values: list[str] | None = None


@dataclass
class LabelSelector:
    """Selects objects by exact label values and by label expressions."""

    match_labels: dict[str, str] | None = None
    match_expressions: list[LabelSelectorRequirement] | None = None

    def matches(self, labels: Mapping[str, str] | None) -> bool:
        """Tell whether ``labels`` satisfy every part of this selector."""
        labels = labels or {}
        for key, value in (self.match_labels or {}).items():
            if labels.get(key) != value:
                return False
        for requirement in self.match_expressions or []:
            if not _requirement_matches(requirement, labels):
                return False
        return True


def _requirement_matches(requirement: LabelSelectorRequirement, labels: Mapping[str, str]) -> bool:
    values = requirement.values or []
    present = requirement.key in labels
    operator = requirement.operator
    if operator == "In":
        if not values:
            raise ValueError(f"values must be non-empty for operator {operator!r}")
        return present and labels[requirement.key] in values
    if operator == "NotIn":
        if not values:
            raise ValueError(f"values must be non-empty for operator {operator!r}")
        return not present or labels[requirement.key] not in values
    if operator == "Exists":
        if values:
            raise ValueError(f"values must be empty for operator {operator!r}")
        return present
    if operator == "DoesNotExist":
        if values:
            raise ValueError(f"values must be empty for operator {operator!r}")
        return not present
    raise ValueError(f"{operator!r} is not a valid label selector operator")


def filter_labels(labels: Mapping[str, str] | None, filter_key: str) -> dict[str, str]:
    """Return a copy of ``labels`` without ``filter_key``."""
    return {key: value for key, value in (labels or {}).items() if key != filter_key}


def clone_and_add_label(
    labels: dict[str, str] | None, label_key: str, label_value: str
) -> dict[str, str] | None:
    """Return a copy of ``labels`` with one label set; the input itself if the key is empty."""
    if label_key == "":
        return labels
    cloned = dict(labels or {})
    cloned[label_key] = label_value
    return cloned


def clone_selector_and_add_label(
    selector: LabelSelector, label_key: str, label_value: str
) -> LabelSelector:
    """Return a copy of ``selector`` that also requires one label; the input if the key is empty."""
    if label_key == "":
        return selector

    match_labels = dict(selector.match_labels or {})
    match_labels[label_key] = label_value

    expressions = None
    if selector.match_expressions is not None:
        expressions = [
            LabelSelectorRequirement(
                key=requirement.key,
                operator=requirement.operator,
                values=list(requirement.values) if requirement.values is not None else None,
            )
            for requirement in selector.match_expressions
        ]

    return LabelSelector(match_labels=match_labels, match_expressions=expressions)


def _describe(value: object) -> str:
    """Deterministic textual form of a value, with mapping keys sorted."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        parts = (f"{f.name}:{_describe(getattr(value, f.name))}" for f in dataclasses.fields(value))
        return f"{type(value).__name__}{{{', '.join(parts)}}}"
    if isinstance(value, Mapping):
        items = sorted(((_describe(k), _describe(v)) for k, v in value.items()))
        return "map[" + ", ".join(f"{k}:{v}" for k, v in items) + "]"
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(_describe(item) for item in value) + "]"
    if isinstance(value, (set, frozenset)):
        return "set[" + ", ".join(sorted(_describe(item) for item in value)) + "]"
    if isinstance(value, enum.Enum):
        return f"{type(value).__name__}.{value.name}"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return f"timedelta({value.total_seconds()!r})"
    return repr(value)


def _fnv1a32(data: bytes) -> int:
    result = _FNV32_OFFSET
    for byte in data:
        result ^= byte
        result = (result * _FNV32_PRIME) & 0xFFFFFFFF
    return result


def _safe_encode(text: str) -> str:
    return "".join(_SAFE_ALPHANUMS[byte % len(_SAFE_ALPHANUMS)] for byte in text.encode())


def compute_hash(template: object) -> str:
    """Hash a template into a short string safe to use as a label value."""
    digest = _fnv1a32(_describe(template).encode())
    return _safe_encode(str(digest))
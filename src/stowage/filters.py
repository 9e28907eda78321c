"""Filter expressions for in-memory record predicates.

Predicates passed to ``find``/``where`` are either plain callables taking a
record dict, or expressions built from ``where("field")``::

    Users.find(where("age") > 15, where("name").startswith("A"))
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Union

from stowage.errors import ValidationError

# --- Path validation helpers ---

_SEGMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _validate_segment(segment: str) -> None:
    """Validate a single path segment (identifier)."""
    if not _SEGMENT_RE.match(segment):
        raise ValueError(f"Invalid path segment '{segment}': must match [A-Za-z_][A-Za-z0-9_]*")


def _validate_path(path: str) -> None:
    """Validate a dotted sub-path (one or more segments)."""
    if not path:
        raise ValueError("Path must not be empty")
    for segment in path.split("."):
        _validate_segment(segment)


def resolve_nested_path(data: dict[str, Any], dotted_path: str) -> Any:
    """Resolve a dotted path against a nested dict, returning None on missing keys."""
    current: Any = data
    for segment in dotted_path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(segment)
        if current is None:
            return None
    return current


NULL_EQ_ERROR = "Use .is_null() instead of == None in Stowage filter expressions."
NULL_NE_ERROR = "Use .is_not_null() instead of != None in Stowage filter expressions."


def _like_to_regex(pattern: str) -> re.Pattern[str]:
    parts = []
    for ch in pattern:
        if ch == "%":
            parts.append(".*")
        elif ch == "_":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("".join(parts), re.DOTALL)


_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
}


class FilterExpression:
    """Base class for filter expressions."""

    def __and__(self, other: FilterExpression) -> LogicalExpression:
        return LogicalExpression(op="AND", children=[self, other])

    def __or__(self, other: FilterExpression) -> LogicalExpression:
        return LogicalExpression(op="OR", children=[self, other])

    def __invert__(self) -> LogicalExpression:
        return LogicalExpression(op="NOT", children=[self])

    def matches(self, record: dict[str, Any]) -> bool:
        raise NotImplementedError

    def __call__(self, record: dict[str, Any]) -> bool:
        return self.matches(record)


@dataclass
class ComparisonExpression(FilterExpression):
    """A comparison between a field path and a value.

    Comparisons against a missing/None field are false, as are comparisons
    between values of incomparable types.
    """

    field_path: str
    op: str  # "==", "!=", ">", ">=", "<", "<=", "LIKE", "IN", "IS_NULL", "IS_NOT_NULL"
    value: Any = None

    def __hash__(self) -> int:
        v = self.value
        if isinstance(v, list):
            v = tuple(v)
        return hash((self.field_path, self.op, v))

    def __eq__(self, other: object) -> bool:  # type: ignore[override]
        if not isinstance(other, ComparisonExpression):
            return NotImplemented
        return (
            self.field_path == other.field_path
            and self.op == other.op
            and self.value == other.value
        )

    def matches(self, record: dict[str, Any]) -> bool:
        actual = resolve_nested_path(record, self.field_path)
        if self.op == "IS_NULL":
            return actual is None
        if self.op == "IS_NOT_NULL":
            return actual is not None
        if actual is None:
            return False
        if self.op == "IN":
            return actual in self.value
        if self.op == "LIKE":
            return isinstance(actual, str) and bool(_like_to_regex(self.value).fullmatch(actual))
        try:
            return bool(_COMPARATORS[self.op](actual, self.value))
        except TypeError:
            return False


@dataclass
class LogicalExpression(FilterExpression):
    """A logical combination of filter expressions."""

    op: str  # "AND", "OR", "NOT"
    children: list[FilterExpression] = field(default_factory=list)

    def matches(self, record: dict[str, Any]) -> bool:
        if self.op == "NOT":
            return not self.children[0].matches(record)
        if self.op == "AND":
            return all(c.matches(record) for c in self.children)
        if self.op == "OR":
            return any(c.matches(record) for c in self.children)
        raise ValueError(f"Unknown logical operator: {self.op}")


class FieldProxy:
    """Proxy that generates FilterExpression from field operations."""

    def __init__(self, field_path: str) -> None:
        self._field_path = field_path

    def __eq__(self, other: object) -> ComparisonExpression:  # type: ignore[override]
        if other is None:
            raise TypeError(NULL_EQ_ERROR)
        return ComparisonExpression(self._field_path, "==", other)

    def __ne__(self, other: object) -> ComparisonExpression:  # type: ignore[override]
        if other is None:
            raise TypeError(NULL_NE_ERROR)
        return ComparisonExpression(self._field_path, "!=", other)

    def __gt__(self, other: Any) -> ComparisonExpression:
        return ComparisonExpression(self._field_path, ">", other)

    def __ge__(self, other: Any) -> ComparisonExpression:
        return ComparisonExpression(self._field_path, ">=", other)

    def __lt__(self, other: Any) -> ComparisonExpression:
        return ComparisonExpression(self._field_path, "<", other)

    def __le__(self, other: Any) -> ComparisonExpression:
        return ComparisonExpression(self._field_path, "<=", other)

    def startswith(self, prefix: str) -> ComparisonExpression:
        return ComparisonExpression(self._field_path, "LIKE", f"{prefix}%")

    def endswith(self, suffix: str) -> ComparisonExpression:
        return ComparisonExpression(self._field_path, "LIKE", f"%{suffix}")

    def contains(self, substring: str) -> ComparisonExpression:
        return ComparisonExpression(self._field_path, "LIKE", f"%{substring}%")

    def in_(self, values: list[Any]) -> ComparisonExpression:
        return ComparisonExpression(self._field_path, "IN", values)

    def is_null(self) -> ComparisonExpression:
        return ComparisonExpression(self._field_path, "IS_NULL")

    def is_not_null(self) -> ComparisonExpression:
        return ComparisonExpression(self._field_path, "IS_NOT_NULL")

    def path(self, sub_path: str) -> FieldProxy:
        """Navigate into a nested object field via dotted sub-path."""
        _validate_path(sub_path)
        return FieldProxy(f"{self._field_path}.{sub_path}")

    def __getitem__(self, segment: str) -> FieldProxy:
        _validate_segment(segment)
        return FieldProxy(f"{self._field_path}.{segment}")


def where(field_path: str) -> FieldProxy:
    """Start a filter expression on a (dotted) record field."""
    _validate_path(field_path)
    return FieldProxy(field_path)


Predicate = Union[FilterExpression, Callable[[dict[str, Any]], bool]]


def check_predicates(predicates: tuple[Any, ...]) -> tuple[Predicate, ...]:
    """Return predicates unchanged after checking each one is callable."""
    for p in predicates:
        if not callable(p):
            raise ValidationError(f"Predicate must be callable or a filter expression, got {p!r}")
    return tuple(predicates)


def matches_all(predicates: tuple[Predicate, ...], record: dict[str, Any]) -> bool:
    """AND-combine predicates over a candidate record."""
    return all(bool(p(record)) for p in predicates)

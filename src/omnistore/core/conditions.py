"""Engine-neutral filter and ordering expressions.

A ``Condition`` is a small tree: ``Predicate`` leaves (attribute, operator,
value) composed with ``And``, ``Or`` and ``Not``. Adapters translate the
tree into their native form (bound SQL expressions, MongoDB filter
documents, Elasticsearch bool queries). An operator an engine cannot
express is rejected with ``UnsupportedFilterError`` rather than being
approximated.

Conditions compose with Python operators::

    cond = eq("status", "active") & (gt("age", 30) | is_null("age"))
    cond = ~eq("role", "admin")

Key-value adapters that filter client-side use ``Condition.evaluate``.
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from omnistore.core.errors import UnsupportedFilterError
from omnistore.core.values import Value, to_native


class Operator(str, Enum):
    EQ = "eq"
    NE = "ne"
    LT = "lt"
    LTE = "lte"
    GT = "gt"
    GTE = "gte"
    IN = "in"
    NOT_IN = "not_in"
    LIKE = "like"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"
    MATCH = "match"  # full-text


_SET_OPERATORS = {Operator.IN, Operator.NOT_IN}
_UNARY_OPERATORS = {Operator.IS_NULL, Operator.IS_NOT_NULL}


class Condition:
    """Base class for filter expressions."""

    def __and__(self, other: Condition) -> Condition:
        return And((self, other))

    def __or__(self, other: Condition) -> Condition:
        return Or((self, other))

    def __invert__(self) -> Condition:
        return Not(self)

    def walk(self) -> Iterator[Condition]:
        yield self

    def predicates(self) -> Iterator[Predicate]:
        for node in self.walk():
            if isinstance(node, Predicate):
                yield node

    def attributes(self) -> set[str]:
        """Attribute names referenced anywhere in the tree."""
        return {p.attribute for p in self.predicates()}

    def operators(self) -> set[Operator]:
        return {p.operator for p in self.predicates()}

    def evaluate(self, row: Mapping[str, Any]) -> bool:
        """Evaluate against a plain mapping of attribute -> Python value."""
        raise NotImplementedError


@dataclass(frozen=True)
class Predicate(Condition):
    attribute: str
    operator: Operator
    value: Any = None

    def __post_init__(self) -> None:
        if not self.attribute:
            raise UnsupportedFilterError("Predicate needs an attribute name")
        if self.operator in _SET_OPERATORS:
            if isinstance(self.value, (str, bytes)) or not hasattr(self.value, "__iter__"):
                raise UnsupportedFilterError(
                    f"{self.operator.value} needs a sequence of values"
                )
            object.__setattr__(self, "value", tuple(self.value))
        elif self.operator in (Operator.LIKE, Operator.MATCH):
            if not isinstance(self.native_value, str):
                raise UnsupportedFilterError(f"{self.operator.value} needs a string pattern")

    @property
    def native_value(self) -> Any:
        """Predicate value with any ``Value`` wrappers removed."""
        if self.operator in _SET_OPERATORS:
            return tuple(to_native(v, self.attribute) for v in self.value)
        return to_native(self.value, self.attribute)

    def evaluate(self, row: Mapping[str, Any]) -> bool:
        actual = row.get(self.attribute)
        if isinstance(actual, Value):
            actual = actual.to_python()
        expected = self.native_value
        op = self.operator
        if op is Operator.IS_NULL:
            return actual is None
        if op is Operator.IS_NOT_NULL:
            return actual is not None
        if op is Operator.EQ:
            return actual == expected
        if op is Operator.NE:
            return actual != expected
        if op is Operator.IN:
            return actual in expected
        if op is Operator.NOT_IN:
            return actual not in expected
        if op is Operator.LIKE:
            return actual is not None and like_to_regex(expected).fullmatch(str(actual)) is not None
        if op is Operator.MATCH:
            raise UnsupportedFilterError("Full-text match cannot be evaluated client-side")
        if actual is None:
            return False
        try:
            if op is Operator.LT:
                return actual < expected
            if op is Operator.LTE:
                return actual <= expected
            if op is Operator.GT:
                return actual > expected
            return actual >= expected
        except TypeError:
            return False


@dataclass(frozen=True)
class And(Condition):
    conditions: tuple[Condition, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "conditions", tuple(self.conditions))
        if not self.conditions:
            raise UnsupportedFilterError("And needs at least one condition")

    def walk(self) -> Iterator[Condition]:
        yield self
        for child in self.conditions:
            yield from child.walk()

    def evaluate(self, row: Mapping[str, Any]) -> bool:
        return all(c.evaluate(row) for c in self.conditions)


@dataclass(frozen=True)
class Or(Condition):
    conditions: tuple[Condition, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "conditions", tuple(self.conditions))
        if not self.conditions:
            raise UnsupportedFilterError("Or needs at least one condition")

    def walk(self) -> Iterator[Condition]:
        yield self
        for child in self.conditions:
            yield from child.walk()

    def evaluate(self, row: Mapping[str, Any]) -> bool:
        return any(c.evaluate(row) for c in self.conditions)


@dataclass(frozen=True)
class Not(Condition):
    condition: Condition

    def walk(self) -> Iterator[Condition]:
        yield self
        yield from self.condition.walk()

    def evaluate(self, row: Mapping[str, Any]) -> bool:
        return not self.condition.evaluate(row)


@dataclass(frozen=True)
class SortKey:
    attribute: str
    descending: bool = False


# ── Builders ─────────────────────────────────────────────────────────────


def where(attribute: str, operator: Operator | str, value: Any = None) -> Predicate:
    return Predicate(attribute, Operator(operator), value)


def eq(attribute: str, value: Any) -> Predicate:
    return Predicate(attribute, Operator.EQ, value)


def ne(attribute: str, value: Any) -> Predicate:
    return Predicate(attribute, Operator.NE, value)


def gt(attribute: str, value: Any) -> Predicate:
    return Predicate(attribute, Operator.GT, value)


def lt(attribute: str, value: Any) -> Predicate:
    return Predicate(attribute, Operator.LT, value)


def in_(attribute: str, values: Any) -> Predicate:
    return Predicate(attribute, Operator.IN, values)


def like(attribute: str, pattern: str) -> Predicate:
    return Predicate(attribute, Operator.LIKE, pattern)


def is_null(attribute: str) -> Predicate:
    return Predicate(attribute, Operator.IS_NULL)


def match(attribute: str, text: str) -> Predicate:
    return Predicate(attribute, Operator.MATCH, text)


def all_of(*conditions: Condition) -> Condition:
    return conditions[0] if len(conditions) == 1 else And(conditions)


def from_mapping(values: Mapping[str, Any]) -> Condition:
    """Equality on every pair, the shape used to address a single row."""
    if not values:
        raise UnsupportedFilterError("Cannot build a condition from an empty mapping")
    return all_of(*(eq(k, v) for k, v in values.items()))


# ── Analysis helpers ─────────────────────────────────────────────────────


def equality_map(condition: Condition | None) -> dict[str, Any] | None:
    """Return ``{attribute: value}`` when the condition is a conjunction of
    equalities (the only shape that can pin a row to a key), else None."""
    if condition is None:
        return None
    if isinstance(condition, Predicate):
        if condition.operator is Operator.EQ:
            return {condition.attribute: condition.native_value}
        return None
    if isinstance(condition, And):
        result: dict[str, Any] = {}
        for child in condition.conditions:
            part = equality_map(child)
            if part is None:
                return None
            for key, value in part.items():
                if key in result and result[key] != value:
                    return None
                result[key] = value
        return result
    return None


def ensure_supported(
    condition: Condition | None,
    operators: set[Operator] | frozenset[Operator],
    engine: str,
) -> None:
    """Reject conditions that use operators outside ``operators``."""
    if condition is None:
        return
    unsupported = condition.operators() - set(operators)
    if unsupported:
        names = ", ".join(sorted(op.value for op in unsupported))
        raise UnsupportedFilterError(
            f"{engine} cannot express operator(s): {names}"
        ).with_context(engine=engine)


def like_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a SQL LIKE pattern (``%``, ``_``, ``\\`` escape) to a regex."""
    return re.compile(like_to_regex_source(pattern), re.DOTALL)


def like_to_regex_source(pattern: str) -> str:
    out: list[str] = []
    escaped = False
    for ch in pattern:
        if escaped:
            out.append(re.escape(ch))
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == "%":
            out.append(".*")
        elif ch == "_":
            out.append(".")
        else:
            out.append(re.escape(ch))
    if escaped:
        out.append(re.escape("\\"))
    return "".join(out)


_GLOB_SPECIAL = set("*?[]\\")


def like_to_glob(pattern: str) -> str:
    """Translate a SQL LIKE pattern to a glob (Redis MATCH, ES wildcard)."""
    out: list[str] = []
    escaped = False
    for ch in pattern:
        if escaped:
            out.append("\\" + ch if ch in _GLOB_SPECIAL else ch)
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == "%":
            out.append("*")
        elif ch == "_":
            out.append("?")
        elif ch in _GLOB_SPECIAL:
            out.append("\\" + ch)
        else:
            out.append(ch)
    if escaped:
        out.append("\\\\")
    return "".join(out)


__all__ = [
    "Operator",
    "Condition",
    "Predicate",
    "And",
    "Or",
    "Not",
    "SortKey",
    "where",
    "eq",
    "ne",
    "gt",
    "lt",
    "in_",
    "like",
    "is_null",
    "match",
    "all_of",
    "from_mapping",
    "equality_map",
    "ensure_supported",
    "like_to_regex",
    "like_to_regex_source",
    "like_to_glob",
]

"""Where-clause conditions for list queries and their SQL compilation.

A where mapping pairs a field name with one of:

    "Alpha"                    equality
    None                       IS NULL
    ["<", 2000]                comparison (any operator in COMPARISON_OPS)
    ["IN", [1980, 1983]]       membership; an empty list matches nothing
    between(1980, 1985)        inclusive range; open ends via at_least/at_most
"""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from docstore.errors import ArgumentError

COMPARISON_OPS = frozenset({"=", "!=", "<>", "<", "<=", ">", ">=", "LIKE", "NOT LIKE"})

_LITERAL_TYPES = (str, int, float, bool)


class Condition:
    """Base class for parsed where conditions."""


@dataclass(frozen=True)
class Comparison(Condition):
    op: str
    value: Any


@dataclass(frozen=True)
class IsNull(Condition):
    pass


@dataclass(frozen=True)
class Membership(Condition):
    values: tuple[Any, ...]


@dataclass(frozen=True)
class Range(Condition):
    """Inclusive range; None or an infinity leaves that end open."""

    low: Any = None
    high: Any = None

    @property
    def low_open(self) -> bool:
        return self.low is None or (isinstance(self.low, float) and math.isinf(self.low))

    @property
    def high_open(self) -> bool:
        return self.high is None or (isinstance(self.high, float) and math.isinf(self.high))


def between(low: Any, high: Any) -> Range:
    return Range(low, high)


def at_least(low: Any) -> Range:
    return Range(low, None)


def at_most(high: Any) -> Range:
    return Range(None, high)


def _check_literal(field: str, value: Any) -> Any:
    if not isinstance(value, _LITERAL_TYPES):
        raise ArgumentError(f"Unable to parse value {value!r} for field {field!r}")
    return value


def parse_condition(field: str, raw: Any) -> Condition:
    """Parse one where value into a Condition."""
    if isinstance(raw, Condition):
        return raw
    if raw is None:
        return IsNull()
    if isinstance(raw, _LITERAL_TYPES):
        return Comparison("=", raw)
    if isinstance(raw, (list, tuple)) and len(raw) == 2 and isinstance(raw[0], str):
        op = raw[0].strip().upper()
        if op == "IN":
            values = raw[1]
            if not isinstance(values, (list, tuple, set, frozenset)):
                raise ArgumentError(
                    f"IN value {values!r} for field {field!r} is expected to be a list"
                )
            return Membership(tuple(_check_literal(field, v) for v in values))
        if op not in COMPARISON_OPS:
            raise ArgumentError(f"Unsupported operator {raw[0]!r} for field {field!r}")
        return Comparison(op, _check_literal(field, raw[1]))
    raise ArgumentError(f"Unable to parse condition {raw!r} for field {field!r}")


def compile_condition(
    column_sql: str,
    cond: Condition,
    params: list[Any],
    to_param: Callable[[Any], Any] = lambda v: v,
) -> str | None:
    """Compile cond against column_sql; returns None when it filters nothing."""
    if isinstance(cond, IsNull):
        return f"{column_sql} IS NULL"
    if isinstance(cond, Comparison):
        params.append(to_param(cond.value))
        return f"{column_sql} {cond.op} ?"
    if isinstance(cond, Membership):
        if not cond.values:
            return "1 = 0"
        params.extend(to_param(v) for v in cond.values)
        placeholders = ", ".join("?" for _ in cond.values)
        return f"{column_sql} IN ({placeholders})"
    if isinstance(cond, Range):
        if cond.low_open and cond.high_open:
            return None
        if cond.low_open:
            params.append(to_param(cond.high))
            return f"{column_sql} <= ?"
        if cond.high_open:
            params.append(to_param(cond.low))
            return f"{column_sql} >= ?"
        params.extend([to_param(cond.low), to_param(cond.high)])
        return f"{column_sql} BETWEEN ? AND ?"
    raise ArgumentError(f"Unknown condition type: {type(cond)}")

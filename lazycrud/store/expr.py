"""
Filter expressions understood by every DocumentStore.

Expressions are small immutable trees built with FilterBuilder and
handed to Query.filter(). The in-memory store evaluates them directly;
the SQLite store compiles them to SQL over json_extract().

Comparison semantics (shared with the where-clause matcher):
    - eq/neq use same_value(): booleans never equal numbers, NaN equals
      NaN, and a missing field equals only None
    - gt/gte/lt/lte are False when either side is missing or the two
      sides are not mutually comparable

Example:
    >>> q = FilterBuilder()
    >>> expr = q.and_(q.eq(q.field("status"), "published"), q.gte(q.field("views"), 10))
    >>> evaluate(expr, {"status": "published", "views": 12})
    True
"""

from __future__ import annotations

import math
import operator
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Tuple, Union


@dataclass(frozen=True)
class FieldRef:
    """Reference to a document field."""

    name: str


@dataclass(frozen=True)
class Literal:
    """Constant value."""

    value: Any


@dataclass(frozen=True)
class Compare:
    """Binary comparison; op is one of COMPARATORS."""

    op: str
    left: "Expr"
    right: "Expr"


@dataclass(frozen=True)
class And:
    items: Tuple["Expr", ...]


@dataclass(frozen=True)
class Or:
    items: Tuple["Expr", ...]


Expr = Union[FieldRef, Literal, Compare, And, Or]


def same_value(a: Any, b: Any) -> bool:
    """Strict equality: 1 != True, NaN == NaN, 1 == 1.0."""
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a is b
    if isinstance(a, float) and isinstance(b, float) and math.isnan(a) and math.isnan(b):
        return True
    if isinstance(a, (int, float)) != isinstance(b, (int, float)):
        return False
    return a == b


def _ordered(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(a: Any, b: Any) -> bool:
        if a is None or b is None:
            return False
        if isinstance(a, bool) != isinstance(b, bool):
            return False
        try:
            return bool(op(a, b))
        except TypeError:
            return False

    return compare


COMPARATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": same_value,
    "neq": lambda a, b: not same_value(a, b),
    "gt": _ordered(operator.gt),
    "gte": _ordered(operator.ge),
    "lt": _ordered(operator.lt),
    "lte": _ordered(operator.le),
}


class FilterBuilder:
    """Builds filter expressions.

    Plain Python values passed where an expression is expected are
    wrapped in Literal.
    """

    def field(self, name: str) -> FieldRef:
        return FieldRef(name)

    def literal(self, value: Any) -> Literal:
        return Literal(value)

    def _cmp(self, op: str, left: Any, right: Any) -> Compare:
        return Compare(op, _wrap(left), _wrap(right))

    def eq(self, left: Any, right: Any) -> Compare:
        return self._cmp("eq", left, right)

    def neq(self, left: Any, right: Any) -> Compare:
        return self._cmp("neq", left, right)

    def gt(self, left: Any, right: Any) -> Compare:
        return self._cmp("gt", left, right)

    def gte(self, left: Any, right: Any) -> Compare:
        return self._cmp("gte", left, right)

    def lt(self, left: Any, right: Any) -> Compare:
        return self._cmp("lt", left, right)

    def lte(self, left: Any, right: Any) -> Compare:
        return self._cmp("lte", left, right)

    def and_(self, *items: Any) -> And:
        return And(tuple(_wrap(i) for i in items))

    def or_(self, *items: Any) -> Or:
        return Or(tuple(_wrap(i) for i in items))


def _wrap(value: Any) -> Expr:
    if isinstance(value, (FieldRef, Literal, Compare, And, Or)):
        return value
    return Literal(value)


def evaluate(expr: Expr, doc: Mapping[str, Any]) -> Any:
    """Evaluate an expression against a document."""
    if isinstance(expr, FieldRef):
        return doc.get(expr.name)
    if isinstance(expr, Literal):
        return expr.value
    if isinstance(expr, Compare):
        return COMPARATORS[expr.op](evaluate(expr.left, doc), evaluate(expr.right, doc))
    if isinstance(expr, And):
        return all(bool(evaluate(item, doc)) for item in expr.items)
    if isinstance(expr, Or):
        return any(bool(evaluate(item, doc)) for item in expr.items)
    raise TypeError(f"Unsupported filter expression: {expr!r}")

"""
Where-clause matcher.

A where clause is a dict of field predicates plus the optional keys
"own" and "or":

    {"status": "published", "views": {"$gte": 10}, "own": True,
     "or": [{"featured": True}]}

The top-level group and every entry of "or" are alternatives; the
predicates inside one group are ANDed. A predicate is either a plain
value (strict equality) or a dict of comparison operators ($gt, $gte,
$lt, $lte, $between), every one of which must hold.

Invariants:
    - A group with no live predicates and no own=True is dropped
    - No groups means no filter (everything matches)
    - own=True matches only documents whose user_id is the viewer;
      with no viewer it matches nothing
    - $between is inclusive on both ends

How to change safely:
    - New operators must be added to OPERATORS, match_field, build_expr
      and parse_where together
    - build_expr and match_where must agree on every document
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import ErrorCode, err, validation_error
from .schema.types import FieldKind, TableDef
from .store.expr import COMPARATORS, Expr, FilterBuilder, same_value

logger = logging.getLogger(__name__)

OPERATORS = ("$gt", "$gte", "$lt", "$lte", "$between")
RESERVED_KEYS = ("own", "or")
LARGE_FILTER_THRESHOLD = 1000

WhereGroup = Dict[str, Any]


def _is_comparison(value: Any) -> bool:
    return isinstance(value, Mapping) and bool(value) and all(k in OPERATORS for k in value)


def group_list(where: Optional[Mapping[str, Any]]) -> List[WhereGroup]:
    """Flatten a clause into its live groups (top-level first, then "or")."""
    if not where:
        return []
    top = {k: v for k, v in where.items() if k != "or"}
    groups = [top, *(where.get("or") or [])]
    live = []
    for group in groups:
        if not group:
            continue
        if group.get("own") or any(
            v is not None for k, v in group.items() if k != "own"
        ):
            live.append(dict(group))
    return live


def match_field(doc_value: Any, predicate: Any) -> bool:
    """Evaluate one predicate against a field value."""
    if not _is_comparison(predicate):
        return same_value(doc_value, predicate)
    for op, operand in predicate.items():
        if op == "$between":
            low, high = operand
            if not (COMPARATORS["gte"](doc_value, low) and COMPARATORS["lte"](doc_value, high)):
                return False
        elif not COMPARATORS[op[1:]](doc_value, operand):
            return False
    return True


def _match_group(doc: Mapping[str, Any], group: WhereGroup, viewer_id: Optional[str]) -> bool:
    for key, predicate in group.items():
        if key == "own":
            if predicate and (viewer_id is None or doc.get("user_id") != viewer_id):
                return False
            continue
        if predicate is None:
            continue
        if not match_field(doc.get(key), predicate):
            return False
    return True


def match_where(
    doc: Mapping[str, Any],
    where: Optional[Mapping[str, Any]],
    viewer_id: Optional[str],
) -> bool:
    """True if any live group of the clause fully matches the document."""
    groups = group_list(where)
    if not groups:
        return True
    return any(_match_group(doc, group, viewer_id) for group in groups)


def can_use_own_index(where: Optional[Mapping[str, Any]]) -> bool:
    """True when the clause is exactly one group consisting only of own=True."""
    if not where or where.get("or"):
        return False
    groups = group_list(where)
    if len(groups) != 1:
        return False
    group = groups[0]
    return bool(group.get("own")) and all(
        v is None for k, v in group.items() if k != "own"
    )


def build_expr(q: FilterBuilder, group: WhereGroup, viewer_id: Optional[str]) -> Expr:
    """Translate one group into a store filter expression."""
    parts: List[Expr] = []
    for key, predicate in group.items():
        if key == "own":
            if predicate:
                if viewer_id is None:
                    return q.literal(False)
                parts.append(q.eq(q.field("user_id"), viewer_id))
            continue
        if predicate is None:
            continue
        ref = q.field(key)
        if not _is_comparison(predicate):
            parts.append(q.eq(ref, predicate))
            continue
        for op, operand in predicate.items():
            if op == "$between":
                parts.append(q.gte(ref, operand[0]))
                parts.append(q.lte(ref, operand[1]))
            else:
                parts.append(getattr(q, op[1:])(ref, operand))
    return q.and_(*parts)


def build_where_expr(
    q: FilterBuilder,
    where: Optional[Mapping[str, Any]],
    viewer_id: Optional[str],
) -> Optional[Expr]:
    """OR of every live group, or None when there is nothing to filter."""
    groups = group_list(where)
    if not groups:
        return None
    return q.or_(*(build_expr(q, group, viewer_id) for group in groups))


def warn_large_filter_set(
    count: int,
    table: str,
    context: str,
    strict: bool = False,
    threshold: int = LARGE_FILTER_THRESHOLD,
) -> None:
    """Flag in-memory filtering over more than threshold documents.

    Raises:
        CrudError: LIMIT_EXCEEDED when strict is set
    """
    if count <= threshold:
        return
    if strict:
        raise err(
            ErrorCode.LIMIT_EXCEEDED,
            f"{table}:{context}",
            message=f"{context} filtered {count} documents in memory (limit {threshold})",
        )
    logger.warning(
        "query:large_filter_set",
        extra={"context": context, "count": count, "table": table, "threshold": threshold},
    )


def _validate_operand(table: TableDef, name: str, value: Any) -> Optional[str]:
    field_def = table.get_field(name)
    if field_def is None:
        return f"Unknown field '{name}'"
    if field_def.kind in (FieldKind.LIST_STRING, FieldKind.LIST_REF, FieldKind.FILES, FieldKind.JSON):
        return None
    ok, message = field_def.validate_value(value)
    return None if ok else message


def parse_where(table: TableDef, where: Any) -> Optional[Dict[str, Any]]:
    """Validate a client-supplied where clause against the table.

    Raises:
        CrudError: INVALID_WHERE listing the offending fields
    """
    if where is None:
        return None
    if not isinstance(where, Mapping):
        raise validation_error([("where", "Where clause must be an object")], ErrorCode.INVALID_WHERE)

    issues: List[Tuple[str, str]] = []

    def check_group(group: Any, allow_or: bool) -> None:
        if not isinstance(group, Mapping):
            issues.append(("or", "Each 'or' entry must be an object"))
            return
        for key, predicate in group.items():
            if key == "own":
                if not isinstance(predicate, bool):
                    issues.append(("own", "'own' must be a boolean"))
                continue
            if key == "or":
                if not allow_or:
                    issues.append(("or", "Nested 'or' is not supported"))
                elif not isinstance(predicate, list):
                    issues.append(("or", "'or' must be a list"))
                else:
                    for sub in predicate:
                        check_group(sub, allow_or=False)
                continue
            if table.get_field(key) is None and key != "_creation_time":
                issues.append((key, f"Unknown field '{key}'"))
                continue
            if predicate is None or key == "_creation_time":
                continue
            if isinstance(predicate, Mapping):
                if not _is_comparison(predicate):
                    issues.append((key, f"Unknown operator in {sorted(predicate)}"))
                    continue
                for op, operand in predicate.items():
                    if op == "$between":
                        if not isinstance(operand, (list, tuple)) or len(operand) != 2:
                            issues.append((key, "$between takes [low, high]"))
                            continue
                        for bound in operand:
                            message = _validate_operand(table, key, bound)
                            if message:
                                issues.append((key, message))
                    else:
                        message = _validate_operand(table, key, operand)
                        if message:
                            issues.append((key, message))
                continue
            message = _validate_operand(table, key, predicate)
            if message:
                issues.append((key, message))

    check_group(where, allow_or=True)
    if issues:
        raise validation_error(issues, ErrorCode.INVALID_WHERE)
    return dict(where)

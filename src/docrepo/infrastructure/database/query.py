"""Filter push-down for the SQLite store.

:func:`compile_filter` splits a filter into SQLAlchemy Core clauses over
the JSON ``documents.body`` column and a residual filter that the caller
still evaluates with :func:`~docrepo.infrastructure.filters.match_filter`.
A condition is only pushed down where SQLite answers exactly as the Python
matcher does:

- equality, ``$eq`` and ``$in`` against strings and numbers. A scalar field
  is compared directly; an array field matches when it holds the value;
- ``$gt``, ``$gte``, ``$lt`` and ``$lte`` against a string or a number,
  guarded by the stored JSON type so mismatched types never match;
- ``$exists``;
- ``$and`` branch by branch, and ``$or`` when every branch is pushed down.

``None``, booleans, arrays and objects as operands, ``$ne``, ``$nin``,
unknown operators and field paths that are not plain identifiers stay in
the residual filter.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping, Sequence
from typing import Any

from sqlalchemy import and_, func, literal, or_, select, true
from sqlalchemy.sql.elements import ColumnElement

from docrepo.infrastructure.database.schema import documents
from docrepo.infrastructure.filters import is_operator_doc

_PATH_PART = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SCALAR_TYPES = ("integer", "real", "text", "true", "false")
_NUMBER_TYPES = ("integer", "real", "true", "false")
# SQLite integers are signed 64-bit
_INT_RANGE = range(-(2**63), 2**63)

Clause = ColumnElement[bool]


def json_path(field: str) -> str | None:
    """SQLite JSON path for a dotted *field*, or None when it is not expressible."""
    parts = field.split(".")
    if not all(_PATH_PART.match(part) for part in parts):
        return None
    return "$." + ".".join(parts)


def _is_pushable(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return value in _INT_RANGE
    if isinstance(value, float):
        return math.isfinite(value)
    return isinstance(value, str)


def _is_number(value: Any) -> bool:
    return _is_pushable(value) and not isinstance(value, str)


def _equals_any(path: str, values: Sequence[Any]) -> Clause:
    body = documents.c.body
    kind = func.json_type(body, path)
    element = func.json_each(body, path).table_valued("value", "type")
    in_array = (
        select(literal(1))
        .select_from(element)
        .where(element.c.type.in_(_SCALAR_TYPES), element.c.value.in_(values))
        .exists()
    )
    return or_(
        and_(kind.in_(_SCALAR_TYPES), func.json_extract(body, path).in_(values)),
        and_(kind == "array", in_array),
    )


def _compare(path: str, op: str, arg: Any) -> Clause | None:
    body = documents.c.body
    kind = func.json_type(body, path)
    value = func.json_extract(body, path)
    if isinstance(arg, str):
        guard = kind == "text"
    elif _is_number(arg):
        guard = kind.in_(_NUMBER_TYPES)
    else:
        return None
    if op == "$gt":
        return and_(guard, value > arg)
    if op == "$gte":
        return and_(guard, value >= arg)
    if op == "$lt":
        return and_(guard, value < arg)
    return and_(guard, value <= arg)


def _operator_clause(path: str, op: str, arg: Any) -> Clause | None:
    if op == "$eq":
        return _equals_any(path, [arg]) if _is_pushable(arg) else None
    if op == "$in":
        if not isinstance(arg, list | tuple) or not all(_is_pushable(v) for v in arg):
            return None
        return _equals_any(path, list(arg))
    if op == "$exists":
        kind = func.json_type(documents.c.body, path)
        return kind.is_not(None) if arg else kind.is_(None)
    if op in ("$gt", "$gte", "$lt", "$lte"):
        return _compare(path, op, arg)
    return None


def _field_clause(field: str, condition: Any) -> Clause | None:
    path = json_path(field)
    if path is None:
        return None
    if is_operator_doc(condition):
        parts = []
        for op, arg in condition.items():
            part = _operator_clause(path, op, arg)
            if part is None:
                return None
            parts.append(part)
        return and_(*parts)
    if isinstance(condition, Mapping) or not _is_pushable(condition):
        return None
    return _equals_any(path, [condition])


def compile_filter(filter: Mapping[str, Any] | None) -> tuple[list[Clause], dict[str, Any]]:
    """Split *filter* into SQL clauses and the residual filter left for Python.

    Records match *filter* exactly when they satisfy every clause and the
    residual filter.
    """
    clauses: list[Clause] = []
    residual: dict[str, Any] = {}
    for key, condition in (filter or {}).items():
        if key in ("$and", "$or") and not isinstance(condition, list | tuple):
            residual[key] = condition
        elif key == "$and":
            rest = []
            for sub in condition:
                sub_clauses, sub_residual = compile_filter(sub)
                clauses.extend(sub_clauses)
                if sub_residual:
                    rest.append(sub_residual)
            if rest:
                residual[key] = rest
        elif key == "$or":
            branches = [compile_filter(sub) for sub in condition]
            if branches and not any(sub_residual for _, sub_residual in branches):
                clauses.append(or_(*(and_(true(), *sub) for sub, _ in branches)))
            else:
                residual[key] = condition
        elif key.startswith("$"):
            residual[key] = condition
        else:
            clause = _field_clause(key, condition)
            if clause is None:
                residual[key] = condition
            else:
                clauses.append(clause)
    return clauses, residual

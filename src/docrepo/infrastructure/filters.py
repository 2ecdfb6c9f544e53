"""Filter, sort, projection and update evaluation over plain records.

Shared by every backend so queries behave the same in memory and in
SQLite. The filter language is a small document-store subset:

- ``{"field": value}`` — equality; when the record value is a list, membership.
- Dotted paths reach into nested records (``"profile.name"``).
- Field operators: ``$eq $ne $in $nin $gt $gte $lt $lte $exists``.
- Top-level combinators: ``$and $or``.
"""

from __future__ import annotations

import copy
import uuid
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from docrepo.infrastructure.store import ID_KEY, DuplicateKeyError, SortSpec

_MISSING = object()


def new_id() -> str:
    """Generate a store-assigned record id."""
    return uuid.uuid4().hex


def resolve_path(record: Mapping[str, Any], path: str) -> Any:
    """Return the value at dotted *path*, or the ``_MISSING`` sentinel."""
    current: Any = record
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def _equals(value: Any, expected: Any) -> bool:
    if value is _MISSING:
        return expected is None
    if isinstance(value, list) and not isinstance(expected, list):
        return expected in value
    return bool(value == expected)


def _compare(value: Any, arg: Any, op: str) -> bool:
    if value is _MISSING or value is None:
        return False
    try:
        if op == "$gt":
            return bool(value > arg)
        if op == "$gte":
            return bool(value >= arg)
        if op == "$lt":
            return bool(value < arg)
        return bool(value <= arg)
    except TypeError:
        return False


_FILTER_OPERATORS = frozenset(
    {"$eq", "$ne", "$in", "$nin", "$gt", "$gte", "$lt", "$lte", "$exists"}
)


def _apply_operator(op: str, value: Any, arg: Any) -> bool:
    if op == "$eq":
        return _equals(value, arg)
    if op == "$ne":
        return not _equals(value, arg)
    if op == "$in":
        return any(_equals(value, candidate) for candidate in arg)
    if op == "$nin":
        return not any(_equals(value, candidate) for candidate in arg)
    if op == "$exists":
        return (value is not _MISSING) == bool(arg)
    if op in ("$gt", "$gte", "$lt", "$lte"):
        return _compare(value, arg, op)
    msg = f"Unsupported filter operator: {op}"
    raise ValueError(msg)


def is_operator_doc(condition: Any) -> bool:
    return (
        isinstance(condition, Mapping)
        and bool(condition)
        and all(isinstance(key, str) and key.startswith("$") for key in condition)
    )


def match_filter(record: Mapping[str, Any], filter: Mapping[str, Any] | None) -> bool:
    """Whether *record* satisfies every clause of *filter*."""
    if not filter:
        return True
    for key, condition in filter.items():
        if key == "$and":
            if not all(match_filter(record, sub) for sub in condition):
                return False
            continue
        if key == "$or":
            if not any(match_filter(record, sub) for sub in condition):
                return False
            continue
        if key.startswith("$"):
            msg = f"Unsupported top-level operator: {key}"
            raise ValueError(msg)

        value = resolve_path(record, key)
        if is_operator_doc(condition):
            if not all(_apply_operator(op, value, arg) for op, arg in condition.items()):
                return False
        elif not _equals(value, condition):
            return False
    return True


def validate_filter(filter: Mapping[str, Any] | None) -> None:
    """Reject unknown operators before any record is matched."""
    for key, condition in (filter or {}).items():
        if key in ("$and", "$or"):
            for sub in condition:
                validate_filter(sub)
        elif key.startswith("$"):
            msg = f"Unsupported top-level operator: {key}"
            raise ValueError(msg)
        elif is_operator_doc(condition):
            for op in condition:
                if op not in _FILTER_OPERATORS:
                    msg = f"Unsupported filter operator: {op}"
                    raise ValueError(msg)


def ids_in_filter(filter: Mapping[str, Any] | None) -> list[str] | None:
    """Extract the id set a filter is restricted to, or None when unrestricted.

    Backends use this to push ``_id`` lookups down to an index.
    """
    if not filter or ID_KEY not in filter:
        return None
    condition = filter[ID_KEY]
    if is_operator_doc(condition):
        if set(condition) == {"$in"}:
            return [str(value) for value in condition["$in"]]
        if set(condition) == {"$eq"}:
            return [str(condition["$eq"])]
        return None
    return [str(condition)]


def normalize_sort(spec: SortSpec) -> list[tuple[str, int]]:
    """Accept ``"field"``, ``"-field"``, a mapping or a sequence of pairs."""
    if isinstance(spec, str):
        if spec.startswith("-"):
            return [(spec[1:], -1)]
        return [(spec, 1)]
    if isinstance(spec, Mapping):
        return [(str(key), -1 if int(direction) < 0 else 1) for key, direction in spec.items()]
    return [(str(key), -1 if int(direction) < 0 else 1) for key, direction in spec]


def sort_records(records: list[dict[str, Any]], spec: SortSpec) -> list[dict[str, Any]]:
    """Stable multi-key sort. Missing and None values sort first ascending."""
    result = list(records)
    for key, direction in reversed(normalize_sort(spec)):

        def sort_key(record: dict[str, Any], key: str = key) -> tuple[int, Any]:
            value = resolve_path(record, key)
            if value is _MISSING or value is None:
                return (0, 0)
            return (1, value)

        result.sort(key=sort_key, reverse=direction < 0)
    return result


def window(skip: int, limit: int | None) -> slice:
    """Slice selecting *limit* records after the first *skip*."""
    return slice(skip, None if limit is None else skip + limit)


def apply_projection(
    record: Mapping[str, Any], projection: Mapping[str, int] | None
) -> dict[str, Any]:
    """Project top-level fields. ``_id`` is kept unless explicitly excluded."""
    if not projection:
        return copy.deepcopy(dict(record))

    included = [key for key, flag in projection.items() if flag and key != ID_KEY]
    if included:
        projected = {key: copy.deepcopy(record[key]) for key in included if key in record}
        if projection.get(ID_KEY, 1) and ID_KEY in record:
            projected[ID_KEY] = record[ID_KEY]
        return projected

    excluded = {key for key, flag in projection.items() if not flag}
    return {key: copy.deepcopy(value) for key, value in record.items() if key not in excluded}


def _set_path(record: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = record
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


def _unset_path(record: dict[str, Any], path: str) -> None:
    parts = path.split(".")
    current: Any = record
    for part in parts[:-1]:
        current = current.get(part) if isinstance(current, dict) else None
        if current is None:
            return
    if isinstance(current, dict):
        current.pop(parts[-1], None)


def apply_update(record: Mapping[str, Any], update: Mapping[str, Any]) -> dict[str, Any]:
    """Return a new record with *update* applied.

    *update* is either an operator document (``$set`` / ``$unset``) or a
    plain field document, which is treated as ``$set``.

    Raises:
        ValueError: On unsupported operators or an attempt to change ``_id``.
    """
    if any(key.startswith("$") for key in update):
        operators = dict(update)
    else:
        operators = {"$set": dict(update)}

    updated = copy.deepcopy(dict(record))
    for op, fields in operators.items():
        if op == "$set":
            for path, value in fields.items():
                if path == ID_KEY and str(value) != str(record.get(ID_KEY)):
                    msg = "Cannot modify the immutable field '_id'"
                    raise ValueError(msg)
                _set_path(updated, path, copy.deepcopy(value))
        elif op == "$unset":
            for path in fields:
                if path == ID_KEY:
                    msg = "Cannot unset the immutable field '_id'"
                    raise ValueError(msg)
                _unset_path(updated, path)
        else:
            msg = f"Unsupported update operator: {op}"
            raise ValueError(msg)
    return updated


def check_unique(
    existing: Iterable[Mapping[str, Any]],
    candidate: Mapping[str, Any],
    unique: Sequence[str],
) -> None:
    """Raise :class:`DuplicateKeyError` if *candidate* clashes on a unique field.

    Records sharing the candidate's ``_id`` are its previous versions and are
    exempt from the unique-field checks.
    """
    candidate_id = candidate.get(ID_KEY)
    for other in existing:
        if other.get(ID_KEY) == candidate_id:
            continue
        for key in unique:
            value = resolve_path(candidate, key)
            if value is _MISSING or value is None:
                continue
            if resolve_path(other, key) == value:
                msg = f"E11000 duplicate key error: {key} {value!r} already exists"
                raise DuplicateKeyError(msg, key=key, value=value)


def upsert_seed(filter: Mapping[str, Any]) -> dict[str, Any]:
    """Initial record for an upsert: the filter's plain equality clauses."""
    return {
        key: copy.deepcopy(value)
        for key, value in filter.items()
        if not key.startswith("$") and not is_operator_doc(value)
    }

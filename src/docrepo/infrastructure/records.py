"""Backend-neutral live documents and cursors.

A backend collection supplies four hooks and gets :class:`LiveDocument`
and :class:`QueryCursor` for free:

- ``select(filter, skip=, limit=)`` returns matching records (copies) in
  insertion order, the window given by *skip* and *limit*
- ``hydrate(data, path)`` replaces reference ids at *path* in place
- ``replace(data)`` writes a full record by id
- ``delete_many(filter)`` removes matching records
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any, Protocol, Self

from docrepo.infrastructure.filters import apply_projection, sort_records, window
from docrepo.infrastructure.store import ID_KEY, DeleteResult, Filter, SortSpec, StoreError


class RecordBackend(Protocol):
    name: str

    def select(
        self, filter: Filter | None, *, skip: int = 0, limit: int | None = None
    ) -> list[dict[str, Any]]: ...

    def hydrate(self, data: dict[str, Any], path: str) -> None: ...

    def replace(self, data: Mapping[str, Any]) -> None: ...

    def delete_many(self, filter: Filter) -> DeleteResult: ...


class LiveDocument:
    """Live handle on one record. Mutations stay local until :meth:`save`."""

    def __init__(self, collection: RecordBackend, data: dict[str, Any]) -> None:
        self._collection = collection
        self._data = data

    @property
    def id(self) -> str:
        return str(self._data[ID_KEY])

    @property
    def collection(self) -> RecordBackend:
        return self._collection

    def to_plain(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def update(self, data: Mapping[str, Any]) -> None:
        for key, value in data.items():
            if key == ID_KEY and str(value) != self.id:
                msg = "Cannot modify the immutable field '_id'"
                raise StoreError(msg)
            self._data[key] = copy.deepcopy(value)

    def save(self) -> None:
        self._collection.replace(self._data)

    def populate(self, path: str) -> None:
        self._collection.hydrate(self._data, path)

    def remove(self) -> None:
        self._collection.delete_many({ID_KEY: self.id})

    def __repr__(self) -> str:
        return f"LiveDocument({self._collection.name}/{self.id})"


class QueryCursor:
    """Deferred query. Nothing touches the backend until :meth:`all`."""

    def __init__(
        self,
        collection: RecordBackend,
        filter: Filter | None,
        projection: Mapping[str, int] | None,
    ) -> None:
        self._collection = collection
        self._filter = filter
        self._projection = projection
        self._sort: SortSpec | None = None
        self._skip = 0
        self._limit: int | None = None
        self._populate: list[str] = []

    def sort(self, spec: SortSpec) -> Self:
        self._sort = spec
        return self

    def skip(self, count: int) -> Self:
        self._skip = max(0, int(count))
        return self

    def limit(self, count: int) -> Self:
        # 0 means no limit
        self._limit = int(count) or None
        return self

    def populate(self, path: str) -> Self:
        self._populate.append(path)
        return self

    def all(self) -> list[LiveDocument]:
        if self._sort is None:
            records = self._collection.select(self._filter, skip=self._skip, limit=self._limit)
        else:
            records = sort_records(self._collection.select(self._filter), self._sort)
            records = records[window(self._skip, self._limit)]

        documents: list[LiveDocument] = []
        for record in records:
            data = apply_projection(record, self._projection)
            for path in self._populate:
                self._collection.hydrate(data, path)
            documents.append(LiveDocument(self._collection, data))
        return documents


def resolve_reference(target: Any, value: Any) -> Any:
    """Look up one reference value in *target*; embedded records pass through."""
    if isinstance(value, Mapping):
        return value
    found = target.find_by_id(str(value))
    return found.to_plain() if found is not None else None


def hydrate_path(
    data: dict[str, Any], path: str, owner: str, target: Any | None
) -> None:
    """Replace the id or id list at *path* with records from *target*."""
    if target is None:
        msg = f"Cannot populate {owner}.{path}: no reference registered for this path"
        raise StoreError(msg)
    value = data.get(path)
    if isinstance(value, list):
        data[path] = [resolve_reference(target, item) for item in value]
    elif value is not None:
        data[path] = resolve_reference(target, value)

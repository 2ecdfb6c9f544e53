"""In-memory document store.

Records are deep-copied on the way in and on the way out, so callers never
share mutable state with the store. Every collection guards its records
with a re-entrant lock; one store is safe for concurrent callers.

- ``insert_many`` is atomic: a duplicate id or unique value rejects the
  whole batch before anything is written.
- ``bulk_write`` is unordered: a failing operation becomes a
  :class:`WriteError` at its index and the remaining operations still run.
  An update whose filter matches nothing is not an error.
"""

from __future__ import annotations

import copy
import threading
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from docrepo.infrastructure.filters import (
    apply_update,
    check_unique,
    ids_in_filter,
    match_filter,
    new_id,
    upsert_seed,
    validate_filter,
    window,
)
from docrepo.infrastructure.records import LiveDocument, QueryCursor, hydrate_path
from docrepo.infrastructure.store import (
    ID_KEY,
    BulkWriteResult,
    DeleteResult,
    DuplicateKeyError,
    Filter,
    UpdateOne,
    WriteError,
)


class MemoryCollection:
    """A named collection of records held in insertion order."""

    concurrent_reads = True

    def __init__(
        self,
        name: str,
        *,
        store: MemoryDocumentStore | None = None,
        unique: Iterable[str] = (),
    ) -> None:
        self.name = name
        self._store = store
        self._unique = tuple(unique)
        self._records: dict[str, dict[str, Any]] = {}
        self._refs: dict[str, str] = {}
        self._lock = threading.RLock()

    def insert_many(self, records: Sequence[Mapping[str, Any]]) -> list[LiveDocument]:
        with self._lock:
            prepared: list[dict[str, Any]] = []
            for record in records:
                data = copy.deepcopy(dict(record))
                data[ID_KEY] = str(data[ID_KEY]) if data.get(ID_KEY) is not None else new_id()
                record_id = data[ID_KEY]
                if record_id in self._records or any(p[ID_KEY] == record_id for p in prepared):
                    msg = f"E11000 duplicate key error: _id {record_id!r} already exists"
                    raise DuplicateKeyError(msg, key=ID_KEY, value=record_id)
                check_unique([*self._records.values(), *prepared], data, self._unique)
                prepared.append(data)

            for data in prepared:
                self._records[data[ID_KEY]] = data
            return [LiveDocument(self, copy.deepcopy(data)) for data in prepared]

    def find(
        self,
        filter: Filter | None = None,
        projection: Mapping[str, int] | None = None,
    ) -> QueryCursor:
        return QueryCursor(self, filter, projection)

    def bulk_write(self, ops: Sequence[UpdateOne]) -> BulkWriteResult:
        matched = 0
        modified = 0
        errors: list[WriteError] = []
        with self._lock:
            for index, op in enumerate(ops):
                try:
                    found = self.select(op.filter, copy_records=False)
                    if not found:
                        if op.upsert:
                            self._store_record(apply_update(upsert_seed(op.filter), op.update))
                        continue
                    matched += 1
                    target = found[0]
                    updated = apply_update(target, op.update)
                    check_unique(self._records.values(), updated, self._unique)
                    if updated != target:
                        modified += 1
                    self._records[updated[ID_KEY]] = updated
                except (DuplicateKeyError, ValueError) as exc:
                    errors.append(WriteError(index=index, message=str(exc)))
        return BulkWriteResult(matched_count=matched, modified_count=modified, write_errors=errors)

    def delete_many(self, filter: Filter) -> DeleteResult:
        with self._lock:
            doomed = [record[ID_KEY] for record in self.select(filter, copy_records=False)]
            for record_id in doomed:
                del self._records[record_id]
        return DeleteResult(deleted_count=len(doomed))

    def find_by_id(self, record_id: str) -> LiveDocument | None:
        with self._lock:
            record = self._records.get(str(record_id))
            if record is None:
                return None
            return LiveDocument(self, copy.deepcopy(record))

    def exists(self, filter: Filter) -> bool:
        return bool(self.select(filter, copy_records=False))

    def count(self, filter: Filter | None = None) -> int:
        return len(self.select(filter, copy_records=False))

    def register_ref(self, path: str, collection: str) -> None:
        self._refs[path] = collection

    # -- hooks used by LiveDocument and QueryCursor --

    def select(
        self,
        filter: Filter | None,
        *,
        skip: int = 0,
        limit: int | None = None,
        copy_records: bool = True,
    ) -> list[dict[str, Any]]:
        """Matching records in insertion order, windowed by *skip* and *limit*."""
        validate_filter(filter)
        with self._lock:
            ids = ids_in_filter(filter)
            if ids is not None:
                wanted = set(ids)
                residual = {k: v for k, v in (filter or {}).items() if k != ID_KEY}
                candidates = [r for key, r in self._records.items() if key in wanted]
            else:
                residual = dict(filter or {})
                candidates = list(self._records.values())
            matched = [r for r in candidates if match_filter(r, residual)][window(skip, limit)]
            return copy.deepcopy(matched) if copy_records else matched

    def replace(self, data: Mapping[str, Any]) -> None:
        """Write *data* as the full record for its id (insert if absent)."""
        with self._lock:
            self._store_record(copy.deepcopy(dict(data)))

    def hydrate(self, data: dict[str, Any], path: str) -> None:
        target_name = self._refs.get(path)
        target = None
        if target_name is not None and self._store is not None:
            target = self._store.collection(target_name)
        hydrate_path(data, path, self.name, target)

    def _store_record(self, record: dict[str, Any]) -> None:
        record[ID_KEY] = str(record[ID_KEY]) if record.get(ID_KEY) is not None else new_id()
        check_unique(self._records.values(), record, self._unique)
        self._records[record[ID_KEY]] = record


class MemoryDocumentStore:
    """Process-local store holding named :class:`MemoryCollection` objects."""

    def __init__(self) -> None:
        self._collections: dict[str, MemoryCollection] = {}
        self._lock = threading.Lock()

    def collection(self, name: str, *, unique: Iterable[str] = ()) -> MemoryCollection:
        with self._lock:
            existing = self._collections.get(name)
            if existing is None:
                existing = MemoryCollection(name, store=self, unique=unique)
                self._collections[name] = existing
            return existing

    def close(self) -> None:
        with self._lock:
            self._collections.clear()

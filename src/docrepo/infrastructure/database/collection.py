"""SQLite-backed document store.

Each public operation runs in one ``engine.begin()`` transaction. ``_id``
restrictions use the ``(collection, id)`` index and
:func:`~docrepo.infrastructure.database.query.compile_filter` turns the rest
of a filter into ``json_extract`` clauses where SQLite answers exactly as the
Python filter engine does. Whatever is left is evaluated in Python with the
matcher the memory store uses, so both backends answer queries identically.

When nothing is left for Python, ``count``, ``exists`` and the skip and limit
of an unsorted cursor run in SQL too. Sorted cursors are ordered in Python,
since SQLite orders JSON arrays and objects by their text.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import Select

from docrepo.infrastructure.database.engine import init_database
from docrepo.infrastructure.database.query import compile_filter
from docrepo.infrastructure.database.schema import documents
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
    StoreError,
    UpdateOne,
    WriteError,
)

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _dump(record: Mapping[str, Any]) -> str:
    return json.dumps(record, default=str, sort_keys=True)


class SqlCollection:
    """A named collection stored as rows of the shared ``documents`` table."""

    def __init__(
        self,
        engine: Engine,
        name: str,
        *,
        store: SqlDocumentStore | None = None,
        unique: Iterable[str] = (),
    ) -> None:
        self.name = name
        self._engine = engine
        self._store = store
        self._unique = tuple(unique)
        self._refs: dict[str, str] = {}

    def insert_many(self, records: Sequence[Mapping[str, Any]]) -> list[LiveDocument]:
        prepared: list[dict[str, Any]] = []
        for record in records:
            data = dict(record)
            data[ID_KEY] = str(data[ID_KEY]) if data.get(ID_KEY) is not None else new_id()
            prepared.append(data)
        if not prepared:
            return []

        with self._engine.begin() as conn:
            existing = self._load(conn, None) if self._unique else []
            for position, data in enumerate(prepared):
                check_unique([*existing, *prepared[:position]], data, self._unique)
            stamp = _now()
            try:
                conn.execute(
                    insert(documents),
                    [
                        {
                            "collection": self.name,
                            "id": data[ID_KEY],
                            "body": _dump(data),
                            "created": stamp,
                            "modified": stamp,
                        }
                        for data in prepared
                    ],
                )
            except IntegrityError as exc:
                msg = f"E11000 duplicate key error: _id already exists in {self.name}"
                raise DuplicateKeyError(msg, key=ID_KEY, value=None) from exc

        logger.debug("Inserted %d records into %s", len(prepared), self.name)
        return [LiveDocument(self, json.loads(_dump(data))) for data in prepared]

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
        with self._engine.begin() as conn:
            existing = self._load(conn, None) if self._unique else []
            for index, op in enumerate(ops):
                try:
                    found = self._load(conn, op.filter)
                    if not found:
                        if op.upsert:
                            record = apply_update(upsert_seed(op.filter), op.update)
                            self._write(conn, record, existing)
                        continue
                    matched += 1
                    target = found[0]
                    updated = apply_update(target, op.update)
                    if updated != target:
                        self._write(conn, updated, existing)
                        modified += 1
                except (DuplicateKeyError, ValueError) as exc:
                    errors.append(WriteError(index=index, message=str(exc)))
        return BulkWriteResult(matched_count=matched, modified_count=modified, write_errors=errors)

    def delete_many(self, filter: Filter) -> DeleteResult:
        with self._engine.begin() as conn:
            doomed = [record[ID_KEY] for record in self._load(conn, filter)]
            if doomed:
                conn.execute(
                    delete(documents).where(
                        documents.c.collection == self.name, documents.c.id.in_(doomed)
                    )
                )
        return DeleteResult(deleted_count=len(doomed))

    def find_by_id(self, record_id: str) -> LiveDocument | None:
        with self._engine.connect() as conn:
            found = self._load(conn, {ID_KEY: str(record_id)})
        return LiveDocument(self, found[0]) if found else None

    def exists(self, filter: Filter) -> bool:
        with self._engine.connect() as conn:
            stmt, residual = self._statement(documents.c.id, filter)
            if not residual:
                return conn.execute(stmt.limit(1)).first() is not None
            return bool(self._load(conn, filter, limit=1))

    def count(self, filter: Filter | None = None) -> int:
        with self._engine.connect() as conn:
            stmt, residual = self._statement(func.count(), filter)
            if not residual:
                return int(conn.execute(stmt).scalar_one())
            return len(self._load(conn, filter))

    @property
    def concurrent_reads(self) -> bool:
        # ":memory:" engines hand every thread the same sqlite3 connection
        return not isinstance(self._engine.pool, StaticPool)

    def register_ref(self, path: str, collection: str) -> None:
        self._refs[path] = collection

    # -- hooks used by LiveDocument and QueryCursor --

    def select(
        self, filter: Filter | None, *, skip: int = 0, limit: int | None = None
    ) -> list[dict[str, Any]]:
        with self._engine.connect() as conn:
            return self._load(conn, filter, skip=skip, limit=limit)

    def replace(self, data: Mapping[str, Any]) -> None:
        record = dict(data)
        record[ID_KEY] = str(record[ID_KEY]) if record.get(ID_KEY) is not None else new_id()
        with self._engine.begin() as conn:
            existing = self._load(conn, None) if self._unique else []
            self._write(conn, record, existing)

    def hydrate(self, data: dict[str, Any], path: str) -> None:
        target_name = self._refs.get(path)
        target = None
        if target_name is not None and self._store is not None:
            target = self._store.collection(target_name)
        hydrate_path(data, path, self.name, target)

    # -- internals --

    def _statement(self, column: Any, filter: Filter | None) -> tuple[Select[Any], Filter]:
        """Select *column* over the rows SQL can match, plus the residual filter."""
        validate_filter(filter)
        stmt = select(column).select_from(documents).where(documents.c.collection == self.name)
        remaining = dict(filter or {})
        ids = ids_in_filter(filter)
        if ids is not None:
            stmt = stmt.where(documents.c.id.in_(ids))
            del remaining[ID_KEY]
        clauses, residual = compile_filter(remaining)
        if clauses:
            stmt = stmt.where(and_(*clauses))
        return stmt, residual

    def _load(
        self,
        conn: Connection,
        filter: Filter | None,
        *,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        stmt, residual = self._statement(documents.c.body, filter)
        stmt = stmt.order_by(documents.c.seq)
        if not residual:
            if skip:
                stmt = stmt.offset(skip)
            if limit is not None:
                stmt = stmt.limit(limit)
        records = [json.loads(body) for body in conn.execute(stmt).scalars()]
        if not residual:
            return records
        matched = [record for record in records if match_filter(record, residual)]
        return matched[window(skip, limit)]

    def _write(
        self, conn: Connection, record: dict[str, Any], existing: list[dict[str, Any]]
    ) -> None:
        """Insert or replace *record*, keeping *existing* in step for unique checks."""
        record[ID_KEY] = str(record[ID_KEY]) if record.get(ID_KEY) is not None else new_id()
        check_unique(existing, record, self._unique)
        stamp = _now()
        result = conn.execute(
            update(documents)
            .where(documents.c.collection == self.name, documents.c.id == record[ID_KEY])
            .values(body=_dump(record), modified=stamp)
        )
        if result.rowcount == 0:
            conn.execute(
                insert(documents).values(
                    collection=self.name,
                    id=record[ID_KEY],
                    body=_dump(record),
                    created=stamp,
                    modified=stamp,
                )
            )
        if self._unique:
            existing[:] = [r for r in existing if r.get(ID_KEY) != record[ID_KEY]]
            existing.append(record)


class SqlDocumentStore:
    """A document store persisted in one SQLite database."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._collections: dict[str, SqlCollection] = {}
        self._lock = threading.Lock()

    @classmethod
    def open(cls, db_path: Any, *, echo: bool = False) -> SqlDocumentStore:
        """Create tables if needed and return a store over *db_path*."""
        return cls(init_database(db_path, echo=echo))

    @property
    def engine(self) -> Engine:
        return self._engine

    def collection(self, name: str, *, unique: Iterable[str] = ()) -> SqlCollection:
        if not name:
            msg = "Collection name must not be empty"
            raise StoreError(msg)
        with self._lock:
            existing = self._collections.get(name)
            if existing is None:
                existing = SqlCollection(self._engine, name, store=self, unique=unique)
                self._collections[name] = existing
            return existing

    def collection_names(self) -> list[str]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                select(documents.c.collection).distinct().order_by(documents.c.collection)
            )
            return [row[0] for row in rows]

    def close(self) -> None:
        self._engine.dispose()

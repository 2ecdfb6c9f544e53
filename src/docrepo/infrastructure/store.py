"""Document store collaborator contract.

The repository layer talks to storage only through these protocols. Two
backends ship with docrepo (:mod:`~docrepo.infrastructure.memory` and
:mod:`~docrepo.infrastructure.database`); any object honouring
the same shapes can be plugged in.

Records are plain dicts keyed by field name, with the identity under
``"_id"`` as a string.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, Self, runtime_checkable

ID_KEY = "_id"

Filter = Mapping[str, Any]
SortSpec = str | Sequence[tuple[str, int]] | Mapping[str, int]


class StoreError(Exception):
    """A store round-trip failed."""


class DuplicateKeyError(StoreError):
    """A write would create a second record with the same unique value."""

    def __init__(self, message: str, *, key: str, value: Any) -> None:
        super().__init__(message)
        self.key = key
        self.value = value


@dataclass(frozen=True)
class UpdateOne:
    """One update operation inside :meth:`DocumentCollection.bulk_write`."""

    filter: Mapping[str, Any]
    update: Mapping[str, Any]
    upsert: bool = False


@dataclass(frozen=True)
class WriteError:
    index: int
    message: str


@dataclass(frozen=True)
class BulkWriteResult:
    matched_count: int = 0
    modified_count: int = 0
    write_errors: list[WriteError] = field(default_factory=list)


@dataclass(frozen=True)
class DeleteResult:
    deleted_count: int = 0


@runtime_checkable
class StoredDocument(Protocol):
    """Live handle on one persisted record."""

    @property
    def id(self) -> str: ...

    def to_plain(self) -> dict[str, Any]: ...

    def __getitem__(self, key: str) -> Any: ...

    def update(self, data: Mapping[str, Any]) -> None: ...

    def save(self) -> None: ...

    def populate(self, path: str) -> None: ...

    def remove(self) -> None: ...


class Cursor(Protocol):
    """Chainable query. Nothing touches the store until :meth:`all`."""

    def sort(self, spec: SortSpec) -> Self: ...

    def skip(self, count: int) -> Self: ...

    def limit(self, count: int) -> Self: ...

    def populate(self, path: str) -> Self: ...

    def all(self) -> list[StoredDocument]: ...


class DocumentCollection(Protocol):
    """One named collection of records."""

    name: str
    # False when every reader shares one connection, so reads must not overlap
    concurrent_reads: bool

    def insert_many(self, records: Sequence[Mapping[str, Any]]) -> list[StoredDocument]: ...

    def find(
        self,
        filter: Filter | None = None,
        projection: Mapping[str, int] | None = None,
    ) -> Cursor: ...

    def bulk_write(self, ops: Sequence[UpdateOne]) -> BulkWriteResult: ...

    def delete_many(self, filter: Filter) -> DeleteResult: ...

    def find_by_id(self, record_id: str) -> StoredDocument | None: ...

    def exists(self, filter: Filter) -> bool: ...

    def count(self, filter: Filter | None = None) -> int: ...

    def register_ref(self, path: str, collection: str) -> None: ...


class DocumentStore(Protocol):
    """A set of collections sharing one backend."""

    def collection(self, name: str) -> DocumentCollection: ...

    def close(self) -> None: ...

"""DocumentRepository — domain entities over one store collection.

Orchestrates the persistence mapper, the bulk engine and the reference
validator. Every batch issues exactly one store round-trip for its primary
side effect (one ``insert_many``, one ``bulk_write``, one ``delete_many``)
plus one batched re-fetch after updates.

Single and batch call shapes share one executor. A ``list`` or ``tuple``
input is a batch and returns a bulk response; anything else is a single
item and returns a bare result, ``None``, or raises.

Each operation logs inside a context naming the repository, its collection
and the operation, so stdlib records from the store and validator carry them.

INVARIANT: Per-item failures (shape, references, store write errors) stay
inside the bulk response. Pre-flight gates on non-item calls (the
``find_by_parent_id`` / ``find_by_tags`` field gate) raise immediately.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Any, TypeVar, cast, overload

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from docrepo.config.logging import log_context
from docrepo.domain.entity import ID_FIELD, DomainEntity
from docrepo.domain.errors import (
    RepositoryError,
    StoreFailureError,
    StoreWriteError,
    ValidationError,
)
from docrepo.domain.schema import check_shape, format_issues, require_field
from docrepo.infrastructure.store import (
    Cursor,
    DocumentCollection,
    Filter,
    SortSpec,
    StoredDocument,
    UpdateOne,
)
from docrepo.services import bulk
from docrepo.services.handles import DocumentHandle, HandleBinder, default_binder
from docrepo.services.mapper import PersistenceMapper
from docrepo.services.references import ExistenceProbe, ReferenceValidator
from docrepo.services.result import BulkCountedResponse, BulkItemizedResponse

logger = logging.getLogger(__name__)

PARENT_FIELD = "parent_id"
TAGS_FIELD = "tags"

Populate = str | Sequence[str] | None

_F = TypeVar("_F", bound=Callable[..., Any])


def _bound(operation: str) -> Callable[[_F], _F]:
    """Log every record of the call with the repository, collection and *operation*."""

    def decorate(method: _F) -> _F:
        @functools.wraps(method)
        def wrapper(self: DocumentRepository[Any], *args: Any, **kwargs: Any) -> Any:
            with log_context(
                repository=self.domain_type.__name__, collection=self.name, operation=operation
            ):
                return method(self, *args, **kwargs)

        return cast(_F, wrapper)

    return decorate


def _is_batch(value: Any) -> bool:
    return isinstance(value, list | tuple)


def _store_filter(filter: Filter | None) -> dict[str, Any]:
    """Translate domain ``id`` keys to the store's ``_id``, through ``$and``/``$or``."""
    translated: dict[str, Any] = {}
    for key, condition in (filter or {}).items():
        if key in ("$and", "$or"):
            translated[key] = [_store_filter(sub) for sub in condition]
        elif key == "id":
            translated[ID_FIELD] = condition
        else:
            translated[key] = condition
    return translated


def _domain_keys(record: Mapping[str, Any]) -> dict[str, Any]:
    return {("id" if key == ID_FIELD else key): value for key, value in record.items()}


def _item_id(item: Any) -> str | None:
    if isinstance(item, Mapping):
        value = item.get("id", item.get(ID_FIELD))
    else:
        value = getattr(item, "id", None)
    return None if value is None else str(value)


class DocumentRepository[T: DomainEntity]:
    """Generic repository for one domain type stored in one collection.

    Args:
        collection: The store collection holding this type's records.
        domain_type: Entity class records are mapped to.
        reference_models: Probes for declared references, keyed by
            reference name or target collection. ``None`` skips existence
            probes (missing required references are still rejected).
        schema: Optional structural schema for payload checks and finder gates.
        binder: Handle side table. Defaults to the shared ``default_binder``.
        probe_workers: Thread count for concurrent reference probes. Forced to 1
            when the collection cannot serve overlapping reads.
    """

    def __init__(
        self,
        collection: DocumentCollection,
        domain_type: type[T],
        *,
        reference_models: Mapping[str, ExistenceProbe] | None = None,
        schema: type[BaseModel] | None = None,
        binder: HandleBinder | None = None,
        probe_workers: int = 1,
    ) -> None:
        self._collection = collection
        self._domain_type = domain_type
        self._schema = schema
        self._binder = binder or default_binder
        self._validator = ReferenceValidator(domain_type, reference_models)
        self._probe_workers = max(1, probe_workers)
        if self._probe_workers > 1 and not collection.concurrent_reads:
            logger.debug(
                "%s: store shares one connection, probing references serially",
                collection.name,
            )
            self._probe_workers = 1

    @property
    def collection(self) -> DocumentCollection:
        return self._collection

    @property
    def name(self) -> str:
        return self._collection.name

    @property
    def domain_type(self) -> type[T]:
        return self._domain_type

    @property
    def probe_workers(self) -> int:
        return self._probe_workers

    @property
    def schema(self) -> type[BaseModel] | None:
        return self._schema

    @property
    def validator(self) -> ReferenceValidator:
        return self._validator

    @property
    def binder(self) -> HandleBinder:
        return self._binder

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    @overload
    def create(self, items: list[Any] | tuple[Any, ...]) -> BulkItemizedResponse: ...

    @overload
    def create(self, items: Any) -> T: ...

    def create(self, items: Any) -> T | BulkItemizedResponse:
        """Create one entity (returns it or raises) or many (returns a response)."""
        if _is_batch(items):
            return self.create_many(items)
        return self.create_one(items)

    def create_one(self, item: T | Mapping[str, Any]) -> T:
        """Create a single entity.

        Raises:
            RepositoryError: The item's failure (validation, reference or store).
        """
        response = self._create_batch([item])
        return self._collapse_or_raise(response)

    def create_many(self, items: Sequence[T | Mapping[str, Any]]) -> BulkItemizedResponse:
        return self._create_batch(list(items))

    def _build_entity(self, item: Any) -> T:
        if isinstance(item, self._domain_type):
            return item
        data = item.model_dump() if isinstance(item, BaseModel) else item
        try:
            return self._domain_type.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError(
                "Validation error during create operation",
                issues=format_issues(exc),
                detail={"type": self._domain_type.__name__},
            ) from exc

    @_bound("create")
    def _create_batch(self, items: list[Any]) -> BulkItemizedResponse:
        logger.debug("create: %s, %d items", self.name, len(items))

        def worker(
            batch: list[Any], mark_success: bulk.MarkSuccess, mark_failure: bulk.MarkFailure
        ) -> None:
            entities: list[tuple[Any, T]] = []
            for item in batch:
                try:
                    entities.append((item, self._build_entity(item)))
                except ValidationError as exc:
                    mark_failure(item, exc)

            failures = self._validator.validate_many(
                [entity for _, entity in entities], workers=self._probe_workers
            )
            pending: list[tuple[Any, T, dict[str, Any]]] = []
            for (item, entity), failure in zip(entities, failures, strict=True):
                if failure is not None:
                    mark_failure(item, failure)
                    continue
                try:
                    record = PersistenceMapper.to_persistence(entity)
                    if self._schema is not None:
                        check_shape(
                            self._schema,
                            entity.model_dump(),
                            omit=("id",) if entity.id is None else (),
                            operation="create",
                        )
                except ValidationError as exc:
                    mark_failure(item, exc)
                    continue
                pending.append((item, entity, record))

            if not pending:
                return
            try:
                documents = self._collection.insert_many([record for _, _, record in pending])
            except Exception as exc:
                logger.warning("Bulk insertion into %s failed: %s", self.name, exc)
                error = StoreFailureError(f"Bulk insertion error: {exc}")
                for item, _, _ in pending:
                    mark_failure(item, error)
                return

            for (item, entity, _), document in zip(pending, documents, strict=True):
                created = self._adopt_id(entity, document)
                self._binder.bind(created, document)
                mark_success(item, created)

        return bulk.itemized(items, worker)

    def _adopt_id(self, entity: T, document: StoredDocument) -> T:
        if entity.id == document.id:
            return entity
        if entity.model_config.get("frozen"):
            return entity.model_copy(update={"id": document.id})
        entity.id = document.id
        return entity

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    @_bound("find")
    def find(
        self,
        filter: Filter | None = None,
        projection: Mapping[str, int] | None = None,
        *,
        sort: SortSpec | None = None,
        skip: int | None = None,
        limit: int | None = None,
        populate: Populate = None,
    ) -> list[T]:
        """Entities matching *filter*, each with a handle bound."""
        logger.debug("find: %s, filter=%r", self.name, filter)
        cursor = self.create_query(filter, projection)
        if sort is not None:
            cursor = cursor.sort(sort)
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        paths = [populate] if isinstance(populate, str) else list(populate or ())
        for path in paths:
            cursor = cursor.populate(path)
        return self.execute_query(cursor)

    def find_one(
        self,
        filter: Filter | None = None,
        projection: Mapping[str, int] | None = None,
        *,
        sort: SortSpec | None = None,
        skip: int | None = None,
        populate: Populate = None,
    ) -> T | None:
        results = self.find(filter, projection, sort=sort, skip=skip, limit=1, populate=populate)
        return results[0] if results else None

    def find_by_id(self, id: str, projection: Mapping[str, int] | None = None) -> T | None:
        return self.find_one({ID_FIELD: str(id)}, projection)

    def find_by_parent_id(
        self,
        parent_id: str,
        projection: Mapping[str, int] | None = None,
        *,
        sort: SortSpec | None = None,
        skip: int | None = None,
        limit: int | None = None,
        populate: Populate = None,
    ) -> list[T]:
        """Entities whose ``parent_id`` equals *parent_id*.

        Raises:
            SchemaFieldMissingError: If the type has no ``parent_id`` field.
                Raised before the store is queried.
        """
        self._require_field(PARENT_FIELD)
        return self.find(
            {PARENT_FIELD: parent_id},
            projection,
            sort=sort,
            skip=skip,
            limit=limit,
            populate=populate,
        )

    def find_by_tags(
        self,
        tags: Sequence[str],
        projection: Mapping[str, int] | None = None,
        *,
        sort: SortSpec | None = None,
        skip: int | None = None,
        limit: int | None = None,
        populate: Populate = None,
    ) -> list[T]:
        """Entities sharing at least one tag with *tags*.

        Raises:
            SchemaFieldMissingError: If the type has no ``tags`` field.
        """
        self._require_field(TAGS_FIELD)
        return self.find(
            {TAGS_FIELD: {"$in": list(tags)}},
            projection,
            sort=sort,
            skip=skip,
            limit=limit,
            populate=populate,
        )

    def exists(self, filter: Filter) -> bool:
        return self._collection.exists(_store_filter(filter))

    def count(self, filter: Filter | None = None) -> int:
        return self._collection.count(_store_filter(filter))

    def create_query(
        self, filter: Filter | None = None, projection: Mapping[str, int] | None = None
    ) -> Cursor:
        """Raw store cursor for queries the canned finders do not cover."""
        return self._collection.find(_store_filter(filter), projection)

    def execute_query(self, query: Cursor) -> list[T]:
        """Run a cursor from :meth:`create_query` and map its documents."""
        return [self._to_entity(document) for document in query.all()]

    def _require_field(self, name: str) -> None:
        require_field(self._schema or self._domain_type, name)

    def _to_entity(self, document: StoredDocument) -> T:
        try:
            entity = PersistenceMapper.to_domain(self._domain_type, document)
        except PydanticValidationError as exc:
            raise ValidationError(
                f"Stored record {self.name}/{document.id} does not fit "
                f"{self._domain_type.__name__}",
                issues=format_issues(exc),
            ) from exc
        self._binder.bind(entity, document)
        return entity

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    @overload
    def update(self, items: list[Any] | tuple[Any, ...]) -> BulkItemizedResponse: ...

    @overload
    def update(self, items: Any) -> T | None: ...

    def update(self, items: Any) -> T | None | BulkItemizedResponse:
        """Partially update one entity (returns it or None) or many (returns a response)."""
        if _is_batch(items):
            return self.update_many(items)
        return self.update_one(items)

    @_bound("update")
    def update_one(self, item: T | Mapping[str, Any]) -> T | None:
        """Update a single entity.

        Returns None when the target does not exist or the update failed.
        """
        item_id = _item_id(item)
        if item_id is None or self._collection.find_by_id(item_id) is None:
            logger.debug("update: %s target %s not found", self.name, item_id)
            return None
        response = self._update_batch([item])
        if response.counts.fail:
            logger.debug("update: %s/%s failed: %s", self.name, item_id, response.results[0].error)
            return None
        return response.as_single()

    def update_many(self, items: Sequence[T | Mapping[str, Any]]) -> BulkItemizedResponse:
        return self._update_batch(list(items))

    @_bound("update")
    def _update_batch(self, items: list[Any]) -> BulkItemizedResponse:
        logger.debug("update: %s, %d items", self.name, len(items))

        def worker(
            batch: list[Any], mark_success: bulk.MarkSuccess, mark_failure: bulk.MarkFailure
        ) -> None:
            candidates: list[tuple[Any, str]] = []
            for item in batch:
                item_id = _item_id(item)
                if item_id is None:
                    mark_failure(
                        item, ValidationError("Entity must have an id property for update")
                    )
                    continue
                candidates.append((item, item_id))

            failures = self._validator.validate_many(
                [item for item, _ in candidates], partial=True, workers=self._probe_workers
            )
            pending: list[tuple[Any, str]] = []
            ops: list[UpdateOne] = []
            for (item, item_id), failure in zip(candidates, failures, strict=True):
                if failure is not None:
                    mark_failure(item, failure)
                    continue
                record = PersistenceMapper.to_persistence(item)
                record.pop(ID_FIELD, None)
                try:
                    if self._schema is not None:
                        payload = _domain_keys(record)
                        check_shape(self._schema, payload, fields=payload, operation="update")
                except ValidationError as exc:
                    mark_failure(item, exc)
                    continue
                pending.append((item, item_id))
                ops.append(UpdateOne(filter={ID_FIELD: item_id}, update={"$set": record}))

            if not ops:
                return
            try:
                result = self._collection.bulk_write(ops)
                for write_error in result.write_errors:
                    if 0 <= write_error.index < len(pending):
                        item, _ = pending[write_error.index]
                        mark_failure(
                            item,
                            StoreWriteError(
                                write_error.message or "Write error occurred",
                                index=write_error.index,
                            ),
                        )
                failed = {error.index for error in result.write_errors}
                survivors = [entry for i, entry in enumerate(pending) if i not in failed]
                documents: dict[str, StoredDocument] = {}
                if survivors:
                    ids = sorted({item_id for _, item_id in survivors})
                    cursor = self._collection.find({ID_FIELD: {"$in": ids}})
                    documents = {document.id: document for document in cursor.all()}
            except Exception as exc:
                logger.warning("Bulk update of %s failed: %s", self.name, exc)
                error = StoreFailureError(f"Bulk update error: {exc}")
                for item, _ in pending:
                    mark_failure(item, error)
                return

            for item, item_id in survivors:
                document = documents.get(item_id)
                if document is None:
                    mark_failure(
                        item,
                        StoreFailureError(f"Entity with id {item_id} not found after update"),
                    )
                    continue
                mark_success(item, self._to_entity(document))

        return bulk.itemized(items, worker)

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    @overload
    def delete(self, ids: list[Any] | tuple[Any, ...]) -> BulkCountedResponse: ...

    @overload
    def delete(self, ids: Any) -> bool | None: ...

    def delete(self, ids: Any) -> bool | None | BulkCountedResponse:
        """Delete one id (True, or None when absent) or many (returns counts)."""
        if _is_batch(ids):
            return self.delete_many(ids)
        return self.delete_one(ids)

    @_bound("delete")
    def delete_one(self, id: Any) -> bool | None:
        if self._collection.find_by_id(str(id)) is None:
            logger.debug("delete: %s/%s not found", self.name, id)
            return None
        self._delete_batch([id])
        return True

    def delete_many(self, ids: Sequence[Any]) -> BulkCountedResponse:
        return self._delete_batch(list(ids))

    @_bound("delete")
    def _delete_batch(self, ids: list[Any]) -> BulkCountedResponse:
        logger.debug("delete: %s, %d ids", self.name, len(ids))

        def worker(batch: list[Any]) -> int:
            keys = [str(value) for value in batch]
            return self._collection.delete_many({ID_FIELD: {"$in": keys}}).deleted_count

        return bulk.counted(ids, worker)

    # ------------------------------------------------------------------
    # Handle operations
    # ------------------------------------------------------------------

    def handle(self, entity: T) -> DocumentHandle | None:
        return self._binder.get(entity)

    @_bound("save")
    def save(self, entity: T) -> T:
        """Write the entity's current fields through its bound document.

        Raises:
            NoHandleAttachedError: If the entity was not loaded or created here.
        """
        handle = self._binder.require(entity)
        record = PersistenceMapper.to_persistence(entity)
        record.pop(ID_FIELD, None)
        logger.debug("save: %s/%s", self.name, handle.document.id)
        handle.document.update(record)
        handle.document.save()
        return entity

    @_bound("populate")
    def populate(self, entity: T, path: str) -> T:
        """Hydrate one reference path on the entity's bound document, in place."""
        handle = self._binder.require(entity)
        logger.debug("populate: %s/%s %s", self.name, handle.document.id, path)
        handle.document.populate(path)
        return entity

    @_bound("remove")
    def remove(self, entity: T) -> None:
        """Delete the entity's record and invalidate its handle."""
        handle = self._binder.require(entity)
        logger.debug("remove: %s/%s", self.name, handle.document.id)
        handle.document.remove()
        self._binder.unbind(entity)

    # ------------------------------------------------------------------

    @staticmethod
    def _collapse_or_raise(response: BulkItemizedResponse) -> Any:
        result = response.results[0]
        if result.ok:
            return result.result
        if result.exception is not None:
            raise result.exception
        message = result.error.message if result.error is not None else "Operation failed"
        raise RepositoryError(message)

    def __repr__(self) -> str:
        return f"DocumentRepository({self._domain_type.__name__}, collection={self.name!r})"

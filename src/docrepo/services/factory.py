"""DocumentRepositoryFactory — builds repositories that know about each other.

Repositories created through one factory are wired together automatically:
a type declaring ``Reference("worlds")`` gets the ``worlds`` repository
(from the same factory, whenever it is created) as its reference model, and the
reference path is registered with the collection so ``populate`` can
hydrate it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from docrepo.domain.entity import DomainEntity
from docrepo.domain.references import get_references, singular_name
from docrepo.infrastructure.store import DocumentStore
from docrepo.services.handles import HandleBinder
from docrepo.services.references import ExistenceProbe
from docrepo.services.repository import DocumentRepository

if TYPE_CHECKING:
    from docrepo.config.settings import DocRepoSettings

logger = logging.getLogger(__name__)


def collection_name_for(domain_type: type) -> str:
    """Default collection name: the type name lower-cased and pluralised."""
    name = domain_type.__name__.lower()
    return name if name.endswith("s") else f"{name}s"


class DocumentRepositoryFactory:
    """Creates and remembers repositories over one document store."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        binder: HandleBinder | None = None,
        probe_workers: int = 1,
        validate_references: bool = True,
    ) -> None:
        self._store = store
        self._binder = binder
        self._probe_workers = probe_workers
        self._validate_references = validate_references
        self._repositories: dict[str, DocumentRepository[Any]] = {}

    @property
    def store(self) -> DocumentStore:
        return self._store

    @classmethod
    def from_settings(cls, settings: DocRepoSettings) -> DocumentRepositoryFactory:
        """Open the store named by *settings* and build a factory over it."""
        store: DocumentStore
        if settings.store.backend == "sqlite":
            from docrepo.infrastructure.database import SqlDocumentStore

            store = SqlDocumentStore.open(settings.resolved_store_path, echo=settings.store.echo)
        else:
            from docrepo.infrastructure.memory import MemoryDocumentStore

            store = MemoryDocumentStore()
        logger.debug("Opened %s store", settings.store.backend)
        return cls(
            store,
            probe_workers=settings.repository.probe_workers,
            validate_references=settings.repository.validate_references,
        )

    def create[T: DomainEntity](
        self,
        domain_type: type[T],
        *,
        collection: str | None = None,
        schema: type[BaseModel] | None = None,
        references: Mapping[str, ExistenceProbe] | None = None,
    ) -> DocumentRepository[T]:
        """Build (and remember) a repository for *domain_type*.

        Args:
            collection: Collection name. Defaults to :func:`collection_name_for`.
            schema: Optional structural schema.
            references: Extra reference models, merged over the auto-wired ones.
        """
        name = collection or collection_name_for(domain_type)
        store_collection = self._store.collection(name)

        for declaration in get_references(domain_type):
            store_collection.register_ref(
                declaration.property_key, declaration.target_collection
            )

        reference_models: Mapping[str, ExistenceProbe] | None = None
        if self._validate_references:
            reference_models = _FactoryReferences(self, references or {})

        repository = DocumentRepository(
            store_collection,
            domain_type,
            reference_models=reference_models,
            schema=schema,
            binder=self._binder,
            probe_workers=self._probe_workers,
        )
        self._repositories[name] = repository
        logger.debug("Created repository %r for %s", name, domain_type.__name__)
        return repository

    def get(self, collection: str) -> DocumentRepository[Any] | None:
        return self._repositories.get(collection)

    def reference_models(self) -> dict[str, ExistenceProbe]:
        """Every known repository keyed by collection name and singular name."""
        models: dict[str, ExistenceProbe] = {}
        for name, repository in self._repositories.items():
            models[name] = repository
            models.setdefault(singular_name(name), repository)
        return models

    def close(self) -> None:
        self._store.close()
        self._repositories.clear()


class _FactoryReferences(Mapping[str, ExistenceProbe]):
    """Live view of a factory's repositories, so later registrations are seen."""

    def __init__(
        self, factory: DocumentRepositoryFactory, extra: Mapping[str, ExistenceProbe]
    ) -> None:
        self._factory = factory
        self._extra = dict(extra)

    def _merged(self) -> dict[str, ExistenceProbe]:
        return {**self._factory.reference_models(), **self._extra}

    def __getitem__(self, key: str) -> ExistenceProbe:
        return self._merged()[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._merged())

    def __len__(self) -> int:
        return len(self._merged())

"""Tests for DocumentRepositoryFactory wiring."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from docrepo.config.settings import DocRepoSettings
from docrepo.domain.errors import DanglingReferenceError, ReferenceModelUnavailableError
from docrepo.infrastructure.database import SqlDocumentStore
from docrepo.infrastructure.database.engine import MEMORY_PATH
from docrepo.infrastructure.memory import MemoryDocumentStore
from docrepo.services.factory import DocumentRepositoryFactory, collection_name_for
from tests.sample_domain import Area, Child, Landmark, Parent, World


class _AlwaysThere:
    def __init__(self) -> None:
        self.probes: list[dict[str, Any]] = []

    def exists(self, filter: Any) -> bool:
        self.probes.append(dict(filter))
        return True


class TestCollectionName:
    @pytest.mark.parametrize(
        ("domain_type", "expected"),
        [(World, "worlds"), (Area, "areas"), (Parent, "parents"), (Child, "childs")],
    )
    def test_pluralised(self, domain_type: type, expected: str) -> None:
        assert collection_name_for(domain_type) == expected

    def test_trailing_s_kept(self) -> None:
        class Status:
            pass

        assert collection_name_for(Status) == "status"


class TestFactory:
    def test_create_remembers_repository(self, factory: DocumentRepositoryFactory) -> None:
        worlds = factory.create(World)
        assert factory.get("worlds") is worlds
        assert factory.get("nothing") is None
        assert worlds.name == "worlds"

    def test_explicit_collection_name(self, factory: DocumentRepositoryFactory) -> None:
        repo = factory.create(Child, collection="children")
        assert repo.name == "children"
        assert factory.get("children") is repo

    def test_reference_models_keyed_by_both_names(
        self, factory: DocumentRepositoryFactory
    ) -> None:
        worlds = factory.create(World)
        models = factory.reference_models()
        assert models["worlds"] is worlds
        assert models["world"] is worlds

    def test_later_registration_is_seen(self, factory: DocumentRepositoryFactory) -> None:
        areas = factory.create(Area)
        with pytest.raises(ReferenceModelUnavailableError):
            areas.create(Area(name="early", world_id="w1"))

        worlds = factory.create(World)
        worlds.create(World(id="w1", name="Terra"))
        created = areas.create(Area(name="late", world_id="w1"))
        assert created.id

    def test_extra_references_override(self, factory: DocumentRepositoryFactory) -> None:
        factory.create(World)
        probe = _AlwaysThere()
        areas = factory.create(Area, references={"world": probe})
        areas.create(Area(name="anywhere", world_id="unknown"))
        assert probe.probes == [{"_id": "unknown"}]

    def test_validation_disabled(self, store: Any) -> None:
        factory = DocumentRepositoryFactory(store, validate_references=False)
        areas = factory.create(Area)
        created = areas.create(Area(name="free", world_id="nowhere"))
        assert created.world_id == "nowhere"

    def test_refs_registered_for_populate(self, factory: DocumentRepositoryFactory) -> None:
        areas = factory.create(Area)
        landmarks = factory.create(Landmark)
        factory.create(World).create(World(id="w", name="Terra"))
        area = areas.create(Area(id="a1", name="Bay", world_id="w"))
        mark = landmarks.create(Landmark(title="Lighthouse", area_id=area.id))
        landmarks.populate(mark, "area_id")
        handle = landmarks.handle(mark)
        assert handle is not None
        assert handle.document["area_id"]["name"] == "Bay"

    def test_dangling_optional_reference(self, factory: DocumentRepositoryFactory) -> None:
        factory.create(Area)
        landmarks = factory.create(Landmark)
        assert landmarks.create(Landmark(title="Nowhere")).area_id is None
        with pytest.raises(DanglingReferenceError):
            landmarks.create(Landmark(title="Lost", area_id="missing"))

    def test_close_clears_repositories(self) -> None:
        factory = DocumentRepositoryFactory(MemoryDocumentStore())
        factory.create(World)
        factory.close()
        assert factory.get("worlds") is None


class TestFromSettings:
    def test_memory_backend(self, tmp_path: Path) -> None:
        settings = DocRepoSettings(root=tmp_path)
        factory = DocumentRepositoryFactory.from_settings(settings)
        assert isinstance(factory.store, MemoryDocumentStore)

    def test_sqlite_backend(self, tmp_path: Path) -> None:
        settings = DocRepoSettings(
            root=tmp_path,
            store={"backend": "sqlite", "path": "data/docs.db"},
            repository={"probe_workers": 3},
        )
        factory = DocumentRepositoryFactory.from_settings(settings)
        try:
            assert isinstance(factory.store, SqlDocumentStore)
            assert (tmp_path / "data" / "docs.db").is_file()
            worlds = factory.create(World)
            worlds.create(World(name="Terra"))
            assert worlds.count() == 1
            assert worlds.probe_workers == 3
        finally:
            factory.close()


class TestProbeWorkers:
    def test_memory_store_keeps_workers(self) -> None:
        factory = DocumentRepositoryFactory(MemoryDocumentStore(), probe_workers=4)
        assert factory.create(World).probe_workers == 4

    def test_sqlite_file_keeps_workers(self, sql_store: SqlDocumentStore) -> None:
        factory = DocumentRepositoryFactory(sql_store, probe_workers=4)
        assert factory.create(World).probe_workers == 4

    def test_in_memory_sqlite_probes_serially(self) -> None:
        store = SqlDocumentStore.open(MEMORY_PATH)
        try:
            factory = DocumentRepositoryFactory(store, probe_workers=4)
            worlds = factory.create(World)
            areas = factory.create(Area)
            assert not store.collection("worlds").concurrent_reads
            assert areas.probe_workers == 1

            terra = worlds.create(World(name="Terra"))
            created = areas.create_many(
                [Area(name=f"a{i}", world_id=terra.id) for i in range(6)]
            )
            assert created.counts.success == 6
        finally:
            store.close()

"""Tests for DocumentRepository, run against both store backends."""

from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

import pytest

from docrepo.domain.entity import GenericDocument
from docrepo.domain.errors import (
    DanglingReferenceError,
    MissingRequiredReferenceError,
    NoHandleAttachedError,
    SchemaFieldMissingError,
    ValidationError,
)
from docrepo.infrastructure.memory import MemoryDocumentStore
from docrepo.infrastructure.store import DocumentStore
from docrepo.services.factory import DocumentRepositoryFactory
from docrepo.services.handles import HandleBinder
from docrepo.services.repository import DocumentRepository
from docrepo.services.result import BulkCountedResponse, BulkItemizedResponse, BulkStatus
from tests.sample_domain import Area, AreaSchema, Child, Landmark, Note, Parent, World


def _mock_collection(name: str = "areas") -> MagicMock:
    collection = MagicMock()
    collection.name = name
    return collection


class TestCreate:
    def test_single_returns_bare_entity(
        self, worlds: DocumentRepository[World], binder: HandleBinder
    ) -> None:
        world = World(name="Terra")
        created = worlds.create(world)
        assert created is world
        assert created.id
        assert binder.has_handle(created)
        assert worlds.find_by_id(created.id) == created

    def test_caller_supplied_id_kept(self, worlds: DocumentRepository[World]) -> None:
        created = worlds.create(World(id="w-1", name="Terra"))
        assert created.id == "w-1"
        assert worlds.count() == 1

    def test_mapping_input_constructed_into_domain_type(
        self, worlds: DocumentRepository[World]
    ) -> None:
        created = worlds.create({"name": "Terra", "tags": ["blue"]})
        assert isinstance(created, World)
        assert created.tags == ["blue"]

    def test_singular_collapse(self, worlds: DocumentRepository[World]) -> None:
        single = worlds.create(World(name="One"))
        assert isinstance(single, World)

        batch = worlds.create([World(name="Two")])
        assert isinstance(batch, BulkItemizedResponse)
        assert batch.counts.success == 1
        assert batch.counts.fail == 0
        assert isinstance(batch.results[0].result, World)

    def test_bulk_isolation(self, areas: DocumentRepository[Area], world: World) -> None:
        first = Area(name="one", world_id=world.id)
        second = Area(name="two", world_id="no-such-world")
        third = Area(name="three", world_id=world.id)

        response = areas.create([first, second, third])

        assert response.counts.success == 2
        assert response.counts.fail == 1
        assert response.status == BulkStatus.PARTIAL_SUCCESS
        assert [r.input for r in response.items.success] == [first, third]
        assert response.items.success[0].input is first
        assert response.items.success[1].input is third
        (failed,) = response.items.fail
        assert failed.input is second
        assert failed.error is not None
        assert failed.error.code == "DANGLING_REFERENCE"
        assert areas.count() == 2

    def test_required_reference_checked_before_store(self) -> None:
        collection = _mock_collection()
        repo = DocumentRepository(collection, Area, reference_models={}, binder=HandleBinder())

        with pytest.raises(MissingRequiredReferenceError):
            repo.create(Area(name="orphan"))

        collection.insert_many.assert_not_called()

    def test_single_dangling_reference_raises(
        self, areas: DocumentRepository[Area], world: World
    ) -> None:
        with pytest.raises(DanglingReferenceError):
            areas.create(Area(name="lost", world_id="nope"))
        assert areas.count() == 0

    def test_invalid_mapping_fails_only_its_item(self, worlds: DocumentRepository[World]) -> None:
        response = worlds.create_many([{"name": "ok"}, {"tags": "wrong"}])
        assert response.counts.success == 1
        failed = response.items.fail[0]
        assert failed.error is not None
        assert failed.error.code == "VALIDATION_FAILED"

    def test_invalid_mapping_single_raises(self, worlds: DocumentRepository[World]) -> None:
        with pytest.raises(ValidationError, match="Validation error during create operation"):
            worlds.create_one({"tags": []})

    def test_schema_shape_check(self, store: DocumentStore, binder: HandleBinder) -> None:
        repo = DocumentRepository(store.collection("areas"), Area, schema=AreaSchema, binder=binder)
        response = repo.create_many(
            [
                Area(name="has parent", world_id="w", parent_id="p"),
                Area(name="no parent", world_id="w"),
            ]
        )
        assert [r.ok for r in response.results] == [True, False]
        error = response.results[1].error
        assert error is not None
        assert "parent_id" in error.message

    def test_store_failure_fails_pending_items_only(
        self, worlds: DocumentRepository[World]
    ) -> None:
        worlds.create(World(id="taken", name="First"))
        response = worlds.create_many(
            [{"id": "fresh", "name": "A"}, {"tags": 5}, {"id": "taken", "name": "B"}]
        )
        assert response.counts.fail == 3
        store_errors = [response.results[0].error, response.results[2].error]
        for error in store_errors:
            assert error is not None
            assert error.code == "STORE_ERROR"
            assert error.message.startswith("Bulk insertion error:")
        sibling = response.results[1].error
        assert sibling is not None
        assert sibling.code == "VALIDATION_FAILED"
        assert worlds.count() == 1

    def test_empty_batch(self, worlds: DocumentRepository[World]) -> None:
        response = worlds.create([])
        assert response.status == BulkStatus.EMPTY


class TestFind:
    @pytest.fixture
    def seeded(self, worlds: DocumentRepository[World]) -> list[World]:
        return [
            worlds.create(World(name="Cdon", tags=["ice"])),
            worlds.create(World(name="Aria", tags=["sand", "ice"])),
            worlds.create(World(name="Bel", tags=["sea"])),
        ]

    def test_find_all_binds_handles(
        self, worlds: DocumentRepository[World], seeded: list[World], binder: HandleBinder
    ) -> None:
        found = worlds.find()
        assert [w.name for w in found] == ["Cdon", "Aria", "Bel"]
        assert all(binder.has_handle(w) for w in found)

    def test_empty_result(self, worlds: DocumentRepository[World]) -> None:
        assert worlds.find({"name": "nobody"}) == []
        assert worlds.find_one({"name": "nobody"}) is None

    def test_sort_skip_limit(self, worlds: DocumentRepository[World], seeded: list[World]) -> None:
        names = [w.name for w in worlds.find(sort="name")]
        assert names == ["Aria", "Bel", "Cdon"]
        page = worlds.find(sort=[("name", -1)], skip=1, limit=1)
        assert [w.name for w in page] == ["Bel"]

    def test_find_by_domain_id_key(
        self, worlds: DocumentRepository[World], seeded: list[World]
    ) -> None:
        target = seeded[1]
        assert worlds.find({"id": target.id}) == [target]
        assert worlds.find_by_id(target.id) == target
        assert worlds.find_by_id("missing") is None

    def test_find_one_applies_limit(
        self, worlds: DocumentRepository[World], seeded: list[World]
    ) -> None:
        found = worlds.find_one({"tags": "ice"}, sort="name")
        assert found is not None
        assert found.name == "Aria"

    def test_find_by_tags_intersects(
        self, worlds: DocumentRepository[World], seeded: list[World]
    ) -> None:
        names = {w.name for w in worlds.find_by_tags(["ice", "sea"])}
        assert names == {"Cdon", "Aria", "Bel"}
        assert [w.name for w in worlds.find_by_tags(["sand"])] == ["Aria"]
        assert worlds.find_by_tags(["lava"]) == []

    def test_find_by_tags_without_tags_field(self) -> None:
        collection = _mock_collection("landmarks")
        repo = DocumentRepository(collection, Landmark, binder=HandleBinder())
        with pytest.raises(SchemaFieldMissingError):
            repo.find_by_tags(["x"])
        collection.find.assert_not_called()

    def test_find_by_parent_id_gate_uses_schema(self) -> None:
        collection = _mock_collection()
        repo = DocumentRepository(collection, Area, schema=World, binder=HandleBinder())
        with pytest.raises(SchemaFieldMissingError, match="World does not have a parent_id"):
            repo.find_by_parent_id("p1")
        collection.find.assert_not_called()

    def test_projection(self, worlds: DocumentRepository[World], seeded: list[World]) -> None:
        (found,) = worlds.find({"name": "Bel"}, {"tags": 0})
        assert found.tags == []
        assert found.id == seeded[2].id

    def test_exists_and_count(self, worlds: DocumentRepository[World], seeded: list[World]) -> None:
        assert worlds.exists({"_id": seeded[0].id})
        assert worlds.exists({"id": seeded[0].id})
        assert not worlds.exists({"id": "nope"})
        assert worlds.count() == 3
        assert worlds.count({"tags": "ice"}) == 2

    def test_create_and_execute_query(
        self, worlds: DocumentRepository[World], seeded: list[World], binder: HandleBinder
    ) -> None:
        query = worlds.create_query({"tags": {"$in": ["ice"]}}).sort("-name")
        found = worlds.execute_query(query)
        assert [w.name for w in found] == ["Cdon", "Aria"]
        assert all(binder.has_handle(w) for w in found)


class TestUpdate:
    def test_partial_update_keeps_other_fields(
        self, areas: DocumentRepository[Area], world: World
    ) -> None:
        area = areas.create(Area(name="Bay", world_id=world.id, tags=["coast"]))
        updated = areas.update({"id": area.id, "name": "Cove"})
        assert updated is not None
        assert updated.name == "Cove"
        assert updated.world_id == world.id
        assert updated.tags == ["coast"]

    def test_update_result_is_bound(
        self, worlds: DocumentRepository[World], binder: HandleBinder
    ) -> None:
        created = worlds.create(World(name="Terra"))
        updated = worlds.update(World(id=created.id, name="Gaia"))
        assert updated is not None
        assert binder.has_handle(updated)
        assert worlds.find_by_id(created.id).name == "Gaia"  # type: ignore[union-attr]

    def test_single_missing_target_returns_none(self, worlds: DocumentRepository[World]) -> None:
        assert worlds.update({"id": "ghost", "name": "x"}) is None
        assert worlds.update({"name": "no id"}) is None
        assert worlds.count() == 0

    def test_single_failure_returns_none(
        self, areas: DocumentRepository[Area], world: World
    ) -> None:
        area = areas.create(Area(name="Bay", world_id=world.id))
        assert areas.update({"id": area.id, "world_id": "gone"}) is None
        assert areas.find_by_id(area.id).world_id == world.id  # type: ignore[union-attr]

    def test_explicit_none_clears_field(self, factory: DocumentRepositoryFactory) -> None:
        notes = factory.create(Note)
        note = notes.create(Note(title="t", summary="kept"))
        updated = notes.update({"id": note.id, "summary": None})
        assert updated is not None
        assert updated.summary is None
        assert notes.find_by_id(note.id).summary is None  # type: ignore[union-attr]

    def test_explicit_none_on_required_reference_fails(
        self, areas: DocumentRepository[Area], world: World
    ) -> None:
        area = areas.create(Area(name="Bay", world_id=world.id))
        response = areas.update([{"id": area.id, "world_id": None}])
        error = response.results[0].error
        assert error is not None and error.code == "MISSING_REQUIRED_REFERENCE"
        assert areas.find_by_id(area.id).world_id == world.id  # type: ignore[union-attr]

    def test_partial_update_validation(self, store: DocumentStore, binder: HandleBinder) -> None:
        repo = DocumentRepository(store.collection("areas"), Area, schema=AreaSchema, binder=binder)
        area = repo.create(Area(name="Bay", world_id="w", parent_id="p1"))
        updated = repo.update({"id": area.id, "name": "x"})
        assert updated is not None
        assert updated.name == "x"
        assert updated.parent_id == "p1"

    def test_partial_update_still_checks_present_fields(
        self, store: DocumentStore, binder: HandleBinder
    ) -> None:
        repo = DocumentRepository(store.collection("areas"), Area, schema=AreaSchema, binder=binder)
        area = repo.create(Area(name="Bay", world_id="w", parent_id="p1"))
        response = repo.update([{"id": area.id, "tags": "not-a-list"}])
        assert response.counts.fail == 1
        error = response.results[0].error
        assert error is not None
        assert "Validation error during update operation" in error.message

    def test_batch_isolation(self, areas: DocumentRepository[Area], world: World) -> None:
        a = areas.create(Area(name="a", world_id=world.id))
        b = areas.create(Area(name="b", world_id=world.id))
        response = areas.update(
            [
                {"id": a.id, "name": "a2"},
                {"id": b.id, "world_id": "dangling"},
                {"name": "no id"},
            ]
        )
        assert [r.ok for r in response.results] == [True, False, False]
        assert response.results[0].result.name == "a2"
        errors = [r.error for r in response.results[1:]]
        assert errors[0] is not None and errors[0].code == "DANGLING_REFERENCE"
        assert errors[1] is not None
        assert errors[1].message == "Entity must have an id property for update"

    def test_write_errors_map_to_items(self, memory_store: MemoryDocumentStore) -> None:
        repo = DocumentRepository(
            memory_store.collection("worlds", unique=("name",)), World, binder=HandleBinder()
        )
        first = repo.create(World(name="A"))
        second = repo.create(World(name="B"))
        response = repo.update_many(
            [{"id": second.id, "name": "A"}, {"id": first.id, "name": "Z"}]
        )
        assert [r.ok for r in response.results] == [False, True]
        error = response.results[0].error
        assert error is not None
        assert error.code == "STORE_WRITE_ERROR"
        assert error.detail["index"] == 0
        assert response.results[1].result.name == "Z"

    def test_whole_batch_store_failure(self) -> None:
        collection = _mock_collection("worlds")
        collection.bulk_write.side_effect = RuntimeError("disk full")
        repo = DocumentRepository(collection, World, binder=HandleBinder())

        response = repo.update_many([{"id": "1", "name": "a"}, {"id": "2", "name": "b"}])

        collection.bulk_write.assert_called_once()
        assert response.counts.fail == 2
        for result in response.results:
            assert result.error is not None
            assert result.error.message == "Bulk update error: disk full"

    def test_one_round_trip_per_batch(self) -> None:
        collection = _mock_collection("worlds")
        collection.bulk_write.return_value.write_errors = []
        collection.find.return_value.all.return_value = []
        repo = DocumentRepository(collection, World, binder=HandleBinder())

        repo.update_many([{"id": str(i), "name": f"w{i}"} for i in range(5)])

        collection.bulk_write.assert_called_once()
        (ops,) = collection.bulk_write.call_args.args
        assert len(ops) == 5
        collection.find.assert_called_once_with({"_id": {"$in": ["0", "1", "2", "3", "4"]}})


class TestDelete:
    def test_single_delete(self, worlds: DocumentRepository[World]) -> None:
        created = worlds.create(World(name="Terra"))
        assert worlds.delete(created.id) is True
        assert worlds.find_by_id(created.id) is None

    def test_delete_miss_issues_no_writes(self) -> None:
        collection = _mock_collection("worlds")
        collection.find_by_id.return_value = None
        repo = DocumentRepository(collection, World, binder=HandleBinder())

        assert repo.delete("nonexistent") is None

        collection.delete_many.assert_not_called()
        collection.bulk_write.assert_not_called()
        collection.insert_many.assert_not_called()

    def test_batch_delete_counts(self, worlds: DocumentRepository[World]) -> None:
        a = worlds.create(World(name="a"))
        b = worlds.create(World(name="b"))
        response = worlds.delete([a.id, b.id, "missing"])
        assert isinstance(response, BulkCountedResponse)
        assert response.counts.success == 2
        assert response.counts.fail == 1
        assert worlds.count() == 0

    def test_empty_batch(self, worlds: DocumentRepository[World]) -> None:
        assert worlds.delete([]).status == BulkStatus.EMPTY


class TestHandleOperations:
    def test_save_writes_through_handle(self, worlds: DocumentRepository[World]) -> None:
        worlds.create(World(name="Terra"))
        loaded = worlds.find_one({"name": "Terra"})
        assert loaded is not None
        loaded.name = "Gaia"
        loaded.tags = ["renamed"]
        assert worlds.save(loaded) is loaded
        reloaded = worlds.find_by_id(loaded.id)  # type: ignore[arg-type]
        assert reloaded is not None
        assert reloaded.name == "Gaia"
        assert reloaded.tags == ["renamed"]

    def test_save_clears_field(self, factory: DocumentRepositoryFactory) -> None:
        notes = factory.create(Note)
        note = notes.create(Note(title="t", summary="kept"))
        note.summary = None
        notes.save(note)
        assert notes.find_by_id(note.id).summary is None  # type: ignore[union-attr]

    def test_created_none_survives_reload(self, factory: DocumentRepositoryFactory) -> None:
        notes = factory.create(Note)
        note = notes.create(Note(title="t", summary=None))
        assert notes.find_by_id(note.id).summary is None  # type: ignore[union-attr]

    def test_save_without_handle(self, worlds: DocumentRepository[World]) -> None:
        with pytest.raises(NoHandleAttachedError):
            worlds.save(World(id="x", name="detached"))

    def test_remove(self, worlds: DocumentRepository[World], binder: HandleBinder) -> None:
        created = worlds.create(World(name="Terra"))
        handle = binder.require(created)
        worlds.remove(created)
        assert worlds.find_by_id(created.id) is None  # type: ignore[arg-type]
        assert not handle.valid
        with pytest.raises(NoHandleAttachedError):
            worlds.remove(created)

    def test_populate_hydrates_reference(
        self, areas: DocumentRepository[Area], world: World
    ) -> None:
        area = areas.create(Area(name="Bay", world_id=world.id))
        assert areas.populate(area, "world_id") is area
        handle = areas.handle(area)
        assert handle is not None
        hydrated: Any = handle.document["world_id"]
        assert hydrated["name"] == "Terra"
        assert hydrated["_id"] == world.id

    def test_find_with_populate(self, factory: DocumentRepositoryFactory, world: World) -> None:
        factory.create(Area).create(Area(name="Bay", world_id=world.id))
        loose = DocumentRepository(
            factory.store.collection("areas"), GenericDocument, binder=HandleBinder()
        )
        (found,) = loose.find(populate="world_id")
        assert found.model_dump()["world_id"]["name"] == "Terra"


class TestParentChildScenario:
    def test_dangling_after_parent_deleted(
        self, store: DocumentStore, binder: HandleBinder
    ) -> None:
        factory = DocumentRepositoryFactory(store, binder=binder)
        parents = factory.create(Parent)
        children = factory.create(Child)

        parents.create(Parent(id="p1", name="root"))
        children.create(Child(id="c1", name="first", parent_id="p1"))

        found = children.find_by_parent_id("p1")
        assert [c.id for c in found] == ["c1"]

        assert parents.delete("p1") is True
        with pytest.raises(DanglingReferenceError, match='parents._id with value "p1"'):
            children.create(Child(id="c2", name="second", parent_id="p1"))
        assert children.count() == 1


class TestConcurrentProbes:
    def test_probe_workers(self, store: DocumentStore, binder: HandleBinder) -> None:
        factory = DocumentRepositoryFactory(store, binder=binder, probe_workers=4)
        worlds = factory.create(World)
        areas = factory.create(Area)
        world = worlds.create(World(name="Terra"))

        items: list[dict[str, Any]] = [
            {"name": f"a{i}", "world_id": world.id if i % 2 == 0 else "ghost"} for i in range(8)
        ]
        response = areas.create_many(items)

        assert [r.ok for r in response.results] == [i % 2 == 0 for i in range(8)]
        assert [r.input for r in response.results] == items

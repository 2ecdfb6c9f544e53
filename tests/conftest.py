"""Shared pytest fixtures for docrepo tests."""

from __future__ import annotations

import logging
from collections.abc import Generator
from pathlib import Path

import pytest
from click.testing import CliRunner

from docrepo.infrastructure.database import SqlDocumentStore
from docrepo.infrastructure.memory import MemoryDocumentStore
from docrepo.infrastructure.store import DocumentStore
from docrepo.services.factory import DocumentRepositoryFactory
from docrepo.services.handles import HandleBinder
from docrepo.services.repository import DocumentRepository
from tests.sample_domain import Area, World

# ---------------------------------------------------------------------------
# Stores and repositories
# ---------------------------------------------------------------------------


@pytest.fixture
def memory_store() -> MemoryDocumentStore:
    return MemoryDocumentStore()


@pytest.fixture
def sql_store(tmp_path: Path) -> Generator[SqlDocumentStore]:
    """SQLite store on a temp file, tables created."""
    store = SqlDocumentStore.open(tmp_path / "docs.db")
    try:
        yield store
    finally:
        store.close()


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> Generator[DocumentStore]:
    """Each backend in turn, so repository behaviour is checked on both."""
    backend: DocumentStore
    if request.param == "memory":
        backend = MemoryDocumentStore()
    else:
        backend = SqlDocumentStore.open(tmp_path / "docs.db")
    try:
        yield backend
    finally:
        backend.close()


@pytest.fixture
def binder() -> HandleBinder:
    return HandleBinder()


@pytest.fixture
def factory(store: DocumentStore, binder: HandleBinder) -> DocumentRepositoryFactory:
    return DocumentRepositoryFactory(store, binder=binder)


@pytest.fixture
def worlds(factory: DocumentRepositoryFactory) -> DocumentRepository[World]:
    return factory.create(World)


@pytest.fixture
def areas(
    factory: DocumentRepositoryFactory, worlds: DocumentRepository[World]
) -> DocumentRepository[Area]:
    return factory.create(Area)


@pytest.fixture
def world(worlds: DocumentRepository[World]) -> World:
    return worlds.create(World(name="Terra", tags=["home"]))


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_runner() -> CliRunner:
    """Provide a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def isolated_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run from an empty temp directory with no docrepo env overrides."""
    for var in ("DOCREPO_CONFIG", "DOCREPO_STORE__PATH", "DOCREPO_STORE__BACKEND"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture(autouse=True)
def _restore_root_logging() -> Generator[None]:
    """The root CLI group configures logging on each invocation; undo it."""
    root = logging.getLogger()
    original_handlers = root.handlers[:]
    original_level = root.level
    yield
    root.handlers = original_handlers
    root.setLevel(original_level)

"""SQLite document store via SQLAlchemy Core."""

from docrepo.infrastructure.database.collection import SqlCollection, SqlDocumentStore
from docrepo.infrastructure.database.engine import create_db_engine, init_database
from docrepo.infrastructure.database.schema import documents, metadata

__all__ = [
    "SqlCollection",
    "SqlDocumentStore",
    "create_db_engine",
    "documents",
    "init_database",
    "metadata",
]

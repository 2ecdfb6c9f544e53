"""Database engine setup for SQLite with WAL mode.

SQLAlchemy Core (not ORM) is used: records are opaque JSON bodies and
every store operation is a single short transaction.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from docrepo.infrastructure.database.schema import metadata

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"


def create_db_engine(db_path: Path | str, *, echo: bool = False) -> Engine:
    """Create a SQLite engine with WAL mode enabled.

    ``":memory:"`` gives a private database shared by every thread of
    this process.
    """
    if str(db_path) == MEMORY_PATH:
        engine = create_engine(
            "sqlite://",
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(f"sqlite:///{db_path}", echo=echo)

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_conn: Any, _: Any) -> None:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    return engine


def init_database(db_path: Path | str, *, echo: bool = False) -> Engine:
    """Create the database file, its parent directory and all tables.

    Idempotent: safe to call on an existing database.
    """
    if str(db_path) != MEMORY_PATH:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    engine = create_db_engine(db_path, echo=echo)
    metadata.create_all(engine)
    logger.debug("Initialized document database at %s", db_path)
    return engine

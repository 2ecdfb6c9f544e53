"""SQLAlchemy Core table definitions for the docrepo database.

Every collection shares one ``documents`` table. A record body is stored
as JSON text; ``seq`` preserves insertion order across collections.
"""

from __future__ import annotations

from sqlalchemy import Column, Index, Integer, MetaData, Table, Text, UniqueConstraint

metadata = MetaData()

documents = Table(
    "documents",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("collection", Text, nullable=False),
    Column("id", Text, nullable=False),
    Column("body", Text, nullable=False),  # JSON object, includes "_id"
    Column("created", Text, nullable=False),
    Column("modified", Text, nullable=False),
    UniqueConstraint("collection", "id", name="uq_documents_collection_id"),
)

Index("ix_documents_collection", documents.c.collection)

"""Base domain entity.

Entities are pydantic models identified by a string ``id``. The id is
assigned by the caller or generated by the store on create. Nested entities
are ordinary fields; rebuilding them from nested plain records is the
model constructor's job.

The persistence id key is ``_id``. Domain code only ever sees ``id``.
"""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from docrepo.domain.references import collect_field_references

ID_FIELD = "_id"


class DomainEntity(BaseModel):
    """Aggregate root with a unique string id within its collection."""

    # nested records carry their id under "_id"
    id: str | None = Field(default=None, validation_alias=AliasChoices("id", ID_FIELD))

    @classmethod
    def __pydantic_init_subclass__(cls, **kwargs: Any) -> None:
        super().__pydantic_init_subclass__(**kwargs)
        collect_field_references(cls)


class GenericDocument(DomainEntity):
    """Schemaless entity — keeps every field it is given."""

    model_config = ConfigDict(extra="allow")

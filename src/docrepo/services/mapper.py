"""Persistence mapper: domain entities to flat store records and back.

``to_persistence`` walks an entity graph through a small visitor so the
recursion never hard-codes concrete types:

- Unset fields are skipped (the store never sees "undefined"). A ``None``
  left at its default counts as unset; an explicitly assigned ``None`` is
  written as null so it survives a round-trip and can clear a stored value.
- ``id`` becomes the ``_id`` key, stringified.
- Nested entities and lists of entities are mapped recursively.
- Raw ids (``uuid.UUID``) are stringified, alone or inside lists.
- Everything else is copied unchanged.

``to_domain`` accepts either a live store document or a plain mapping; both
go through one capability check (a callable ``to_plain``).
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from typing import Any, Protocol

from pydantic import BaseModel

from docrepo.domain.entity import ID_FIELD


class EntityVisitor(Protocol):
    """Recursion hooks used by :meth:`PersistenceMapper.to_persistence`."""

    def is_domain_entity(self, value: Any) -> bool: ...

    def map_one(self, value: Any) -> Any: ...

    def map_many(self, values: list[Any] | tuple[Any, ...]) -> list[Any]: ...


class RecordVisitor:
    """Default visitor: an entity is a pydantic model exposing an ``id`` field."""

    def is_domain_entity(self, value: Any) -> bool:
        return isinstance(value, BaseModel) and "id" in type(value).model_fields

    def map_one(self, value: Any) -> Any:
        if self.is_domain_entity(value):
            return _map_fields(_entity_items(value), self)
        if isinstance(value, BaseModel):
            return self.map_one(_entity_items(value))
        if isinstance(value, uuid.UUID):
            return str(value)
        if isinstance(value, Mapping):
            return {str(k): self.map_one(v) for k, v in value.items()}
        if isinstance(value, list | tuple):
            return self.map_many(value)
        return value

    def map_many(self, values: list[Any] | tuple[Any, ...]) -> list[Any]:
        return [self.map_one(value) for value in values]


def _entity_items(entity: BaseModel) -> dict[str, Any]:
    """Field values of *entity* without dumping nested models.

    Fields still holding a default ``None`` are left out.
    """
    explicit = entity.model_fields_set
    items: dict[str, Any] = {}
    for name in type(entity).model_fields:
        value = getattr(entity, name)
        if value is not None or name in explicit:
            items[name] = value
    if entity.model_extra:
        items.update(entity.model_extra)
    return items


def _map_fields(fields: Mapping[str, Any], visitor: EntityVisitor) -> dict[str, Any]:
    record: dict[str, Any] = {}
    for key, value in fields.items():
        if key in ("id", ID_FIELD):
            if value is not None:
                record[ID_FIELD] = str(value)
            continue
        record[key] = visitor.map_one(value)
    return record


def is_plain_capable(value: Any) -> bool:
    """Whether *value* can produce a plain record via ``to_plain()``."""
    return callable(getattr(value, "to_plain", None))


class PersistenceMapper:
    """Bidirectional conversion between domain entities and store records."""

    visitor: EntityVisitor = RecordVisitor()

    @staticmethod
    def to_persistence(
        source: BaseModel | Mapping[str, Any], visitor: EntityVisitor | None = None
    ) -> dict[str, Any]:
        """Map an entity (or a partial payload mapping) to a store record."""
        active = visitor or PersistenceMapper.visitor
        if isinstance(source, BaseModel):
            return _map_fields(_entity_items(source), active)
        if isinstance(source, Mapping):
            return _map_fields(source, active)
        msg = f"Cannot map {type(source).__name__} to a persistence record"
        raise TypeError(msg)

    @staticmethod
    def to_domain[T: BaseModel](target_type: type[T], record: Any) -> T:
        """Build *target_type* from a live document or a plain record."""
        data = record.to_plain() if is_plain_capable(record) else dict(record)
        if ID_FIELD in data:
            raw_id = data.pop(ID_FIELD)
            data["id"] = None if raw_id is None else str(raw_id)
        elif data.get("id") is not None:
            data["id"] = str(data["id"])
        return target_type.model_validate(data)

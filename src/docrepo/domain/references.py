"""Reference registry — declared cross-collection relationships per type.

A declaration says "property X of this type holds the identifying value of
a record in collection Y". Declarations are registered once at
type-definition time and are immutable afterwards. The reference validator
reads them on every write.

Two ways to declare, one contract:

- Explicit call::

    declare_reference(Area, "world_id", "worlds")

- Field metadata on a :class:`~docrepo.domain.entity.DomainEntity`::

    class Area(DomainEntity):
        world_id: Annotated[str | None, Reference("worlds")] = None

A type may carry many declarations, one property each. Duplicates are not
merged; the validator checks all of them.
"""

from __future__ import annotations

import types
import uuid
from typing import Annotated, Any, Literal, Union, get_args, get_origin

from pydantic import BaseModel

from docrepo.domain.errors import InvalidDeclarationTargetError

DEFAULT_FOREIGN_FIELD = "_id"


class ReferenceDeclaration(BaseModel):
    """One declared relationship from *property_key* to *target_collection*."""

    model_config = {"frozen": True}

    property_key: str
    target_collection: str
    required: bool = True
    foreign_field: str = DEFAULT_FOREIGN_FIELD
    name: str


class Reference:
    """``Annotated`` marker collected by ``DomainEntity`` subclasses."""

    __slots__ = ("foreign_field", "name", "required", "target_collection")

    def __init__(
        self,
        target_collection: str,
        *,
        required: bool = True,
        foreign_field: str = DEFAULT_FOREIGN_FIELD,
        name: str | None = None,
    ) -> None:
        self.target_collection = target_collection
        self.required = required
        self.foreign_field = foreign_field
        self.name = name

    def __repr__(self) -> str:
        return (
            f"Reference({self.target_collection!r}, required={self.required}, "
            f"foreign_field={self.foreign_field!r})"
        )


_REGISTRY: dict[type, list[ReferenceDeclaration]] = {}

_SCALAR_TYPES: tuple[type, ...] = (str, int, uuid.UUID)


def singular_name(collection: str) -> str:
    """Default reference name: collection minus a trailing ``s``, first letter lowered."""
    singular = collection[:-1] if collection.endswith("s") else collection
    return singular[:1].lower() + singular[1:]


def _is_scalar_capable(annotation: Any) -> bool:
    if annotation is Any:
        return True
    origin = get_origin(annotation)
    if origin is Annotated:
        return _is_scalar_capable(get_args(annotation)[0])
    if origin is Union or origin is types.UnionType:
        args = [arg for arg in get_args(annotation) if arg is not type(None)]
        return bool(args) and all(_is_scalar_capable(arg) for arg in args)
    if origin is Literal:
        return True
    if origin is not None:
        return False
    if not isinstance(annotation, type) or issubclass(annotation, bool):
        return False
    return issubclass(annotation, _SCALAR_TYPES)


def _check_target(owner: type, property_key: Any) -> None:
    if not isinstance(property_key, str) or not property_key:
        msg = f"References can only be declared on named properties, got {property_key!r}"
        raise InvalidDeclarationTargetError(msg, detail={"owner": owner.__name__})

    fields = getattr(owner, "model_fields", None)
    if fields is None:
        return
    field = fields.get(property_key)
    if field is None:
        msg = f"{owner.__name__} has no field {property_key!r} to declare a reference on"
        raise InvalidDeclarationTargetError(msg, detail={"owner": owner.__name__})
    if not _is_scalar_capable(field.annotation):
        msg = (
            f"Reference on {owner.__name__}.{property_key} requires a scalar id field, "
            f"got {field.annotation!r}"
        )
        raise InvalidDeclarationTargetError(
            msg, detail={"owner": owner.__name__, "property": property_key}
        )


def declare_reference(
    owner: type,
    property_key: str,
    target_collection: str,
    *,
    required: bool = True,
    foreign_field: str = DEFAULT_FOREIGN_FIELD,
    name: str | None = None,
) -> ReferenceDeclaration:
    """Append a reference declaration to *owner*'s list and return it.

    Raises:
        InvalidDeclarationTargetError: If *property_key* cannot hold a scalar id.
    """
    _check_target(owner, property_key)
    declaration = ReferenceDeclaration(
        property_key=property_key,
        target_collection=target_collection,
        required=required,
        foreign_field=foreign_field or DEFAULT_FOREIGN_FIELD,
        name=name or singular_name(target_collection),
    )
    _REGISTRY.setdefault(owner, []).append(declaration)
    return declaration


def get_references(owner: type) -> list[ReferenceDeclaration]:
    """Return the declarations registered for *owner* (empty if none)."""
    return list(_REGISTRY.get(owner, ()))


def clear_references(owner: type) -> None:
    """Drop every declaration for *owner*. Intended for tests."""
    _REGISTRY.pop(owner, None)


def collect_field_references(owner: type[BaseModel]) -> list[ReferenceDeclaration]:
    """Register every ``Annotated[..., Reference(...)]`` field on *owner*, in field order."""
    declared: list[ReferenceDeclaration] = []
    for field_name, field in owner.model_fields.items():
        for meta in field.metadata:
            if isinstance(meta, Reference):
                declared.append(
                    declare_reference(
                        owner,
                        field_name,
                        meta.target_collection,
                        required=meta.required,
                        foreign_field=meta.foreign_field,
                        name=meta.name,
                    )
                )
    return declared

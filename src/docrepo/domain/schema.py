"""Structural schema checks.

A schema is a pydantic model class describing the shape of an entity's
payload. It is used only to check create/update payloads and to gate
finders on field presence; it never drives the persistence mapping.

Partial updates validate against a subset model restricted to exactly the
keys present in the payload, so absent required fields are not reported.
"""

from __future__ import annotations

import functools
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import BaseModel, create_model
from pydantic import ValidationError as PydanticValidationError

from docrepo.domain.errors import SchemaFieldMissingError, ValidationError


def schema_has_field(schema: type[BaseModel], name: str) -> bool:
    """Whether *schema* declares a field called *name*."""
    return name in schema.model_fields


def require_field(schema: type[BaseModel], name: str) -> None:
    """Raise :class:`SchemaFieldMissingError` unless *schema* declares *name*."""
    if not schema_has_field(schema, name):
        msg = f"Entity schema {schema.__name__} does not have a {name} field"
        raise SchemaFieldMissingError(msg, detail={"schema": schema.__name__, "field": name})


@functools.cache
def subset_model(schema: type[BaseModel], fields: frozenset[str]) -> type[BaseModel]:
    """Build (once) a model with only *fields* of *schema*."""
    definitions: dict[str, Any] = {
        name: (info.annotation, info)
        for name, info in schema.model_fields.items()
        if name in fields
    }
    return create_model(f"{schema.__name__}Subset", **definitions)


def format_issues(exc: PydanticValidationError) -> list[str]:
    """Flatten pydantic errors into ``"loc: message"`` lines."""
    issues: list[str] = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"]) or "<root>"
        issues.append(f"{loc}: {err['msg']}")
    return issues


def check_shape(
    schema: type[BaseModel],
    data: Mapping[str, Any],
    *,
    fields: Iterable[str] | None = None,
    omit: Iterable[str] = (),
    operation: str = "validate",
) -> None:
    """Validate *data* against *schema* restricted to *fields* minus *omit*.

    Raises:
        ValidationError: With one issue line per failing field.
    """
    names = set(schema.model_fields)
    if fields is not None:
        names &= set(fields)
    names -= set(omit)

    model = subset_model(schema, frozenset(names))
    try:
        model.model_validate(dict(data))
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Validation error during {operation} operation",
            issues=format_issues(exc),
            detail={"schema": schema.__name__},
        ) from exc

"""Reference validator — declared relationships checked before any write.

For each declaration on the owner type the validator reads the entity's
property and:

- rejects a missing value when the reference is required,
- skips a missing optional value,
- otherwise probes the registered reference model for
  ``{foreign_field: value}``.

The first failing declaration wins; remaining declarations for that item
are not checked. Validation failures are per-item: the repository runs the
validator inside the bulk worker so one dangling reference fails only its
own item.
"""

from __future__ import annotations

import contextvars
import logging
import uuid
from collections.abc import Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Protocol

from pydantic import BaseModel

from docrepo.domain.errors import (
    DanglingReferenceError,
    MissingRequiredReferenceError,
    ReferenceModelUnavailableError,
    ReferenceValidationError,
)
from docrepo.domain.references import ReferenceDeclaration, get_references

logger = logging.getLogger(__name__)


class ExistenceProbe(Protocol):
    """Anything that can answer "does a record match this filter?"."""

    def exists(self, filter: Mapping[str, Any]) -> bool: ...


def read_property(entity: Any, key: str) -> tuple[bool, Any]:
    """Return ``(present, value)`` for *key* on an entity or a payload mapping.

    For pydantic entities a property counts as present when it was set
    explicitly or holds a value.
    """
    if isinstance(entity, Mapping):
        return key in entity, entity.get(key)
    value = getattr(entity, key, None)
    if isinstance(entity, BaseModel):
        return key in entity.model_fields_set or value is not None, value
    return hasattr(entity, key), value


class ReferenceValidator:
    """Checks an owner type's declared references against sibling models.

    Args:
        owner_type: The entity type whose declarations are checked.
        reference_models: Probes keyed by declaration ``name`` or target
            collection. ``None`` disables existence probes; missing required
            references are still rejected.
    """

    def __init__(
        self,
        owner_type: type,
        reference_models: Mapping[str, ExistenceProbe] | None = None,
    ) -> None:
        self._owner_type = owner_type
        self._models = reference_models

    @property
    def declarations(self) -> list[ReferenceDeclaration]:
        return get_references(self._owner_type)

    def model_for(self, declaration: ReferenceDeclaration) -> ExistenceProbe | None:
        if self._models is None:
            return None
        model = self._models.get(declaration.name)
        if model is None:
            model = self._models.get(declaration.target_collection)
        return model

    def validate(self, entity: Any, *, partial: bool = False) -> None:
        """Raise the first reference failure for *entity*, if any.

        Raises:
            MissingRequiredReferenceError: A required reference has no value.
            ReferenceModelUnavailableError: No model is registered for the target.
            DanglingReferenceError: The referenced record does not exist.
        """
        for declaration in self.declarations:
            present, value = read_property(entity, declaration.property_key)
            if partial and not present:
                continue
            target = f"{declaration.target_collection}.{declaration.foreign_field}"
            detail = {
                "property": declaration.property_key,
                "collection": declaration.target_collection,
                "foreign_field": declaration.foreign_field,
            }

            if value is None:
                if declaration.required:
                    msg = (
                        f"Required reference {target} is missing "
                        f'for property "{declaration.property_key}"'
                    )
                    raise MissingRequiredReferenceError(msg, detail=detail)
                continue

            if self._models is None:
                continue
            if isinstance(value, uuid.UUID):
                value = str(value)
            model = self.model_for(declaration)
            if model is None:
                msg = (
                    f'Cannot validate reference to {target} with value "{value}" '
                    "because the model is not available"
                )
                raise ReferenceModelUnavailableError(msg, detail={**detail, "value": value})
            if not model.exists({declaration.foreign_field: value}):
                msg = f'Referenced entity not found: {target} with value "{value}"'
                raise DanglingReferenceError(msg, detail={**detail, "value": value})

    def check(self, entity: Any, *, partial: bool = False) -> ReferenceValidationError | None:
        """Like :meth:`validate` but returns the failure instead of raising it."""
        try:
            self.validate(entity, partial=partial)
        except ReferenceValidationError as exc:
            return exc
        return None

    def validate_many(
        self,
        items: Sequence[Any],
        *,
        partial: bool = False,
        workers: int = 1,
    ) -> list[ReferenceValidationError | None]:
        """Validate every item; return each item's failure (or None) in input order.

        With ``workers > 1`` the existence probes of different items run
        concurrently. No ordering between probes is guaranteed. Each probe
        runs in a copy of the caller's context, so log context bound by the
        caller reaches the pool threads.
        """
        if not self.declarations or not items:
            return [None] * len(items)
        if workers <= 1 or len(items) < 2:
            return [self.check(item, partial=partial) for item in items]

        logger.debug("Validating %d items with %d workers", len(items), workers)
        with ThreadPoolExecutor(max_workers=min(workers, len(items))) as pool:
            contexts = [contextvars.copy_context() for _ in items]
            return list(
                pool.map(
                    lambda context, item: context.run(self.check, item, partial=partial),
                    contexts,
                    items,
                )
            )

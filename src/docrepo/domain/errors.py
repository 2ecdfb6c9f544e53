"""Error taxonomy for the repository layer.

Every error carries a stable ``code`` so bulk flows can capture it into a
:class:`~docrepo.services.result.BulkItemError` without losing identity.

INVARIANT: NotFound is modeled as ``None`` by the repository, never raised.
"""

from __future__ import annotations

from typing import Any


class RepositoryError(Exception):
    """Base class for all docrepo errors."""

    code = "REPOSITORY_ERROR"

    def __init__(self, message: str, *, detail: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail: dict[str, Any] = detail or {}


class ValidationError(RepositoryError):
    """Payload shape does not satisfy the structural schema."""

    code = "VALIDATION_FAILED"

    def __init__(
        self,
        message: str,
        *,
        issues: list[str] | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        self.issues: list[str] = issues or []
        full = message
        if self.issues:
            full = message + "\n" + "\n".join(f"  - {issue}" for issue in self.issues)
        super().__init__(full, detail=detail)


class SchemaFieldMissingError(ValidationError):
    """A finder requires a field the entity schema does not declare."""

    code = "SCHEMA_FIELD_MISSING"


class InvalidDeclarationTargetError(RepositoryError):
    """A reference was declared on a property that cannot hold a scalar id."""

    code = "INVALID_DECLARATION_TARGET"


class ReferenceValidationError(RepositoryError):
    """Base for the three reference-integrity failures."""

    code = "REFERENCE_INVALID"


class MissingRequiredReferenceError(ReferenceValidationError):
    code = "MISSING_REQUIRED_REFERENCE"


class ReferenceModelUnavailableError(ReferenceValidationError):
    code = "REFERENCE_MODEL_UNAVAILABLE"


class DanglingReferenceError(ReferenceValidationError):
    code = "DANGLING_REFERENCE"


class StoreWriteError(RepositoryError):
    """One operation inside a batched write was rejected by the store."""

    code = "STORE_WRITE_ERROR"

    def __init__(self, message: str, *, index: int, detail: dict[str, Any] | None = None) -> None:
        super().__init__(message, detail={"index": index, **(detail or {})})
        self.index = index


class StoreFailureError(RepositoryError):
    """A whole store round-trip failed; every item it touched fails with it."""

    code = "STORE_ERROR"


class UnreportedItemError(RepositoryError):
    """A bulk worker returned without reporting an outcome for every input."""

    code = "UNREPORTED_ITEM"


class NoHandleAttachedError(RepositoryError):
    """save/populate/remove was called on an entity with no bound handle."""

    code = "NO_HANDLE_ATTACHED"


class BulkOperationError(RepositoryError):
    """A bulk worker failed as a whole. The partial response is attached."""

    code = "BULK_OPERATION_FAILED"

    def __init__(self, message: str, *, response: Any = None) -> None:
        super().__init__(message)
        self.response = response

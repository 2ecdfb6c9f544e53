"""Document handle binder — live store handles kept beside, not on, entities.

Entities stay plain pydantic models. A handle is looked up in a side table
keyed by the entity's identity; a ``weakref`` finalizer drops the entry
when the entity is garbage-collected, so a recycled ``id()`` never sees a
stale handle.

INVARIANT: At most one handle per entity instance. Re-binding replaces it.
"""

from __future__ import annotations

import threading
import weakref
from typing import Any

from docrepo.domain.errors import NoHandleAttachedError
from docrepo.infrastructure.store import StoredDocument


class DocumentHandle:
    """Binding from one entity instance to its live store document."""

    __slots__ = ("_document", "_valid")

    def __init__(self, document: StoredDocument) -> None:
        self._document = document
        self._valid = True

    @property
    def document(self) -> StoredDocument:
        return self._document

    @property
    def valid(self) -> bool:
        return self._valid

    def invalidate(self) -> None:
        self._valid = False

    def __repr__(self) -> str:
        state = "valid" if self._valid else "invalid"
        return f"DocumentHandle({self._document!r}, {state})"


class HandleBinder:
    """Side table of entity -> :class:`DocumentHandle`."""

    def __init__(self) -> None:
        self._handles: dict[int, tuple[DocumentHandle, weakref.finalize]] = {}
        # finalizers may fire during a GC pass inside a locked section
        self._lock = threading.RLock()

    def bind(self, entity: Any, document: StoredDocument) -> DocumentHandle:
        handle = DocumentHandle(document)
        key = id(entity)
        finalizer = weakref.finalize(entity, self._forget, key)
        with self._lock:
            previous = self._handles.pop(key, None)
            self._handles[key] = (handle, finalizer)
        if previous is not None:
            previous[1].detach()
            previous[0].invalidate()
        return handle

    def get(self, entity: Any) -> DocumentHandle | None:
        with self._lock:
            entry = self._handles.get(id(entity))
        return entry[0] if entry is not None else None

    def has_handle(self, entity: Any) -> bool:
        handle = self.get(entity)
        return handle is not None and handle.valid

    def require(self, entity: Any) -> DocumentHandle:
        """Return the valid handle bound to *entity*.

        Raises:
            NoHandleAttachedError: If nothing (or only an invalidated handle) is bound.
        """
        handle = self.get(entity)
        if handle is None or not handle.valid:
            msg = (
                f"{type(entity).__name__} has no document handle attached; "
                "load or create it through a repository first"
            )
            raise NoHandleAttachedError(msg, detail={"entity": type(entity).__name__})
        return handle

    def unbind(self, entity: Any) -> None:
        with self._lock:
            entry = self._handles.pop(id(entity), None)
        if entry is not None:
            entry[1].detach()
            entry[0].invalidate()

    def _forget(self, key: int) -> None:
        with self._lock:
            self._handles.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)


default_binder = HandleBinder()

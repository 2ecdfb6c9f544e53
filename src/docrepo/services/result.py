"""Bulk result types — the contract between the bulk engine and its callers.

INVARIANT: An itemized response holds exactly one BulkItemResult per
original input, in input order. A counted response holds aggregate counts
only and retains no per-item identity.

Grouped operations add a `groups` table of per-group counts next to the
totals. The JSON payload merges it into `counts` under each group name.
"""

from __future__ import annotations

from collections import Counter
from enum import StrEnum
from typing import Any, NamedTuple

from pydantic import BaseModel, Field
from pydantic_core import to_jsonable_python

from docrepo.domain.errors import RepositoryError


class BulkStatus(StrEnum):
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAIL = "fail"
    EMPTY = "empty"


class BulkItemError(BaseModel):
    """Structured error payload within a BulkItemResult."""

    model_config = {"frozen": True}

    code: str
    message: str
    detail: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException) -> BulkItemError:
        if isinstance(exc, RepositoryError):
            return cls(code=exc.code, message=str(exc), detail=dict(exc.detail))
        return cls(code="ERROR", message=str(exc) or type(exc).__name__)


class BulkItemResult(BaseModel):
    """Outcome for one input of an itemized bulk operation.

    Attributes:
        ok: Whether this item succeeded.
        input: The original input, by identity.
        result: The produced value on success.
        error: Structured error on failure.
        group: Name of the group that handled the item, for grouped operations.
        exception: The original exception, kept for re-raising. Never dumped.
    """

    model_config = {"frozen": True, "arbitrary_types_allowed": True}

    ok: bool
    input: Any
    result: Any = None
    error: BulkItemError | None = None
    group: str | None = None
    exception: BaseException | None = Field(default=None, exclude=True, repr=False)

    @classmethod
    def success(cls, item: Any, result: Any, group: str | None = None) -> BulkItemResult:
        return cls(ok=True, input=item, result=result, group=group)

    @classmethod
    def failure(
        cls, item: Any, error: BaseException | str, group: str | None = None
    ) -> BulkItemResult:
        if isinstance(error, BaseException):
            return cls(
                ok=False,
                input=item,
                error=BulkItemError.from_exception(error),
                group=group,
                exception=error,
            )
        return cls(
            ok=False, input=item, error=BulkItemError(code="ERROR", message=error), group=group
        )


class BulkCounts(BaseModel):
    model_config = {"frozen": True}

    success: int = 0
    fail: int = 0

    @property
    def total(self) -> int:
        return self.success + self.fail


class BulkItems(NamedTuple):
    success: list[BulkItemResult]
    fail: list[BulkItemResult]


def _status(counts: BulkCounts) -> BulkStatus:
    if counts.total == 0:
        return BulkStatus.EMPTY
    if counts.fail == 0:
        return BulkStatus.SUCCESS
    if counts.success == 0:
        return BulkStatus.FAIL
    return BulkStatus.PARTIAL_SUCCESS


def _group_counts(results: list[BulkItemResult]) -> dict[str, BulkCounts]:
    tally = Counter((r.group, r.ok) for r in results if r.group is not None)
    names = dict.fromkeys(r.group for r in results if r.group is not None)
    return {
        name: BulkCounts(success=tally[name, True], fail=tally[name, False]) for name in names
    }


def _counts_payload(counts: BulkCounts, groups: dict[str, BulkCounts]) -> dict[str, Any]:
    payload: dict[str, Any] = counts.model_dump()
    for name, group_counts in groups.items():
        payload[name] = group_counts.model_dump()
    return payload


def _item_payload(item: BulkItemResult) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "ok": item.ok,
        "input": to_jsonable_python(item.input, fallback=str),
    }
    if item.group is not None:
        payload["group"] = item.group
    if item.ok:
        payload["result"] = to_jsonable_python(item.result, fallback=str)
    elif item.error is not None:
        payload["error"] = item.error.model_dump()
    return payload


class BulkItemizedResponse(BaseModel):
    """Ordered per-input outcomes plus aggregate counts."""

    model_config = {"frozen": True}

    results: list[BulkItemResult] = Field(default_factory=list)
    counts: BulkCounts = Field(default_factory=BulkCounts)
    groups: dict[str, BulkCounts] = Field(default_factory=dict)

    @classmethod
    def from_results(cls, results: list[BulkItemResult]) -> BulkItemizedResponse:
        succeeded = sum(1 for r in results if r.ok)
        return cls(
            results=results,
            counts=BulkCounts(success=succeeded, fail=len(results) - succeeded),
            groups=_group_counts(results),
        )

    @property
    def items(self) -> BulkItems:
        return BulkItems(
            success=[r for r in self.results if r.ok],
            fail=[r for r in self.results if not r.ok],
        )

    @property
    def status(self) -> BulkStatus:
        return _status(self.counts)

    def as_single(self) -> Any:
        """Collapse a one-input response to its bare result, or None if it failed.

        Only meaningful when exactly one input was supplied; callers guard that.
        """
        if not self.results:
            return None
        first = self.results[0]
        return first.result if first.ok else None

    def to_payload(self) -> dict[str, Any]:
        return {
            "status": str(self.status),
            "counts": _counts_payload(self.counts, self.groups),
            "items": [_item_payload(r) for r in self.results],
        }


class BulkCountedResponse(BaseModel):
    """Aggregate success/fail counts only."""

    model_config = {"frozen": True}

    counts: BulkCounts = Field(default_factory=BulkCounts)
    groups: dict[str, BulkCounts] = Field(default_factory=dict)

    @property
    def status(self) -> BulkStatus:
        return _status(self.counts)

    def to_payload(self) -> dict[str, Any]:
        return {"status": str(self.status), "counts": _counts_payload(self.counts, self.groups)}


class BulkStatusResponse(BaseModel):
    """Outcome of a status operation: one status for the whole batch."""

    model_config = {"frozen": True}

    status: BulkStatus = BulkStatus.EMPTY

    def to_payload(self) -> dict[str, Any]:
        return {"status": str(self.status)}

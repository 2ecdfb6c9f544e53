"""Bulk operation engine — one worker call, per-item outcomes.

Three entry points:

- :func:`itemized` hands the worker the whole batch plus ``mark_success`` /
  ``mark_failure`` callbacks. The worker performs its single batched side
  effect and reports every input. The engine assembles one
  :class:`BulkItemResult` per input, in input order.
- :func:`counted` hands the worker the batch and takes back a success count.
- :func:`status` hands the worker the batch and takes back one
  :class:`BulkStatus` for all of it.

Each entry point also accepts a mapping of named :class:`Group` objects in
place of a single worker. Every group's ``group_by`` predicate picks its
items and its worker runs once over them. Failures stay inside their group
and per-group counts are reported beside the totals.

All are no-ops on an empty batch: no worker is invoked. An optional
``preprocess`` callable rewrites the batch before anything else runs.

INVARIANT: Per-item errors never escape the engine. An exception escaping
an ungrouped worker is a whole-batch failure and surfaces as
:class:`BulkOperationError` with the partial response attached.
"""

from __future__ import annotations

import functools
import logging
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from docrepo.domain.errors import BulkOperationError, UnreportedItemError
from docrepo.services.result import (
    BulkCountedResponse,
    BulkCounts,
    BulkItemizedResponse,
    BulkItemResult,
    BulkStatus,
    BulkStatusResponse,
)

logger = logging.getLogger(__name__)

NOT_PROCESSED_MESSAGE = "Not processed due to bulk operation error"
NO_GROUP_MESSAGE = "Item matched no group"

MarkSuccess = Callable[[Any, Any], None]
MarkFailure = Callable[[Any, BaseException | str], None]
ItemizedWorker = Callable[[list[Any], MarkSuccess, MarkFailure], None]
CountedWorker = Callable[[list[Any]], int]
StatusWorker = Callable[[list[Any]], BulkStatus | str]
Preprocess = Callable[[list[Any]], Iterable[Any]]


@dataclass(frozen=True)
class Group:
    """One branch of a grouped operation.

    Attributes:
        group_by: Predicate selecting the items this group handles.
        worker: Worker of the same kind as the ungrouped entry point takes.
    """

    group_by: Callable[[Any], bool]
    worker: Callable[..., Any]


Groups = Mapping[str, Group]

_RESERVED_GROUP_NAMES = frozenset({"success", "fail"})


class _Ledger:
    """Tracks outcomes by input position.

    Items are matched by identity, so unhashable inputs work and the same
    object supplied twice occupies two slots, reported in order.
    """

    def __init__(self, items: list[Any]) -> None:
        self._items = items
        self._outcomes: list[BulkItemResult | None] = [None] * len(items)
        self._pending: dict[int, deque[int]] = {}
        for index, item in enumerate(items):
            self._pending.setdefault(id(item), deque()).append(index)

    def _claim(self, item: Any) -> int | None:
        queue = self._pending.get(id(item))
        if queue is None:
            msg = f"Reported item is not part of this batch: {item!r}"
            raise ValueError(msg)
        if not queue:
            logger.debug("Ignoring repeated report for an already reported item")
            return None
        return queue.popleft()

    def is_pending(self, item: Any) -> bool:
        return bool(self._pending.get(id(item)))

    def success(self, item: Any, result: Any = None, *, group: str | None = None) -> None:
        index = self._claim(item)
        if index is not None:
            self._outcomes[index] = BulkItemResult.success(item, result, group)

    def failure(
        self, item: Any, error: BaseException | str, *, group: str | None = None
    ) -> None:
        index = self._claim(item)
        if index is not None:
            self._outcomes[index] = BulkItemResult.failure(item, error, group)

    def fail_pending(
        self, items: Iterable[Any], error: BaseException | str, *, group: str | None = None
    ) -> None:
        for item in items:
            if self.is_pending(item):
                self.failure(item, error, group=group)

    def unreported(self) -> list[int]:
        return [i for i, outcome in enumerate(self._outcomes) if outcome is None]

    def fail_unreported(self, exc: BaseException) -> None:
        """Whole-batch failure: first pending item gets *exc*, the rest a generic message."""
        for position, index in enumerate(self.unreported()):
            item = self._items[index]
            if position == 0:
                self._outcomes[index] = BulkItemResult.failure(item, exc)
            else:
                self._outcomes[index] = BulkItemResult.failure(item, NOT_PROCESSED_MESSAGE)
        self._pending.clear()

    def response(self) -> BulkItemizedResponse:
        return BulkItemizedResponse.from_results(
            [outcome for outcome in self._outcomes if outcome is not None]
        )


def _prepare(items: Iterable[Any], preprocess: Preprocess | None) -> list[Any]:
    batch = list(items)
    if preprocess is None:
        return batch
    try:
        return list(preprocess(batch))
    except Exception as exc:
        logger.warning("Bulk preprocessing failed for %d items", len(batch))
        raise BulkOperationError(f"Bulk preprocessing failed: {exc}") from exc


def _check_groups(groups: Groups) -> None:
    clash = _RESERVED_GROUP_NAMES.intersection(groups)
    if clash:
        msg = f"Group names collide with count keys: {sorted(clash)}"
        raise ValueError(msg)


def _partition(
    batch: list[Any], group_by: Callable[[Any], bool]
) -> tuple[list[Any], list[tuple[Any, Exception]]]:
    """Split *batch* into the items *group_by* selects and the items it raised on."""
    members: list[Any] = []
    rejected: list[tuple[Any, Exception]] = []
    for item in batch:
        try:
            if group_by(item):
                members.append(item)
        except Exception as exc:
            rejected.append((item, exc))
    return members, rejected


def _clamp(count: Any, size: int) -> int:
    return max(0, min(int(count or 0), size))


# ---------------------------------------------------------------------------
# Itemized
# ---------------------------------------------------------------------------


def itemized(
    items: Iterable[Any],
    worker: ItemizedWorker | Groups,
    *,
    preprocess: Preprocess | None = None,
) -> BulkItemizedResponse:
    """Run *worker* once over *items* and collect one outcome per input.

    Raises:
        UnreportedItemError: If a worker returns without reporting every input.
        BulkOperationError: If an ungrouped worker, or *preprocess*, raises.
    """
    batch = _prepare(items, preprocess)
    if not batch:
        return BulkItemizedResponse()
    if isinstance(worker, Mapping):
        return _itemized_groups(batch, worker)

    ledger = _Ledger(batch)
    try:
        worker(batch, ledger.success, ledger.failure)
    except Exception as exc:
        ledger.fail_unreported(exc)
        response = ledger.response()
        logger.warning(
            "Bulk worker failed after %d of %d items", response.counts.success, len(batch)
        )
        raise BulkOperationError(f"Bulk operation failed: {exc}", response=response) from exc

    _require_reported(ledger, len(batch))
    response = ledger.response()
    logger.debug(
        "Itemized bulk complete: %d success, %d fail",
        response.counts.success,
        response.counts.fail,
    )
    return response


def _itemized_groups(batch: list[Any], groups: Groups) -> BulkItemizedResponse:
    """Route items to group workers; a raising worker fails only its own items.

    An item selected by several groups keeps the first outcome reported for
    it. Items no group selects are failed with :data:`NO_GROUP_MESSAGE`.
    """
    _check_groups(groups)
    ledger = _Ledger(batch)
    routed: set[int] = set()
    for name, group in groups.items():
        members, rejected = _partition(batch, group.group_by)
        for item, exc in rejected:
            routed.add(id(item))
            ledger.fail_pending([item], exc, group=name)
        if not members:
            continue
        routed.update(id(item) for item in members)
        try:
            group.worker(
                members,
                functools.partial(ledger.success, group=name),
                functools.partial(ledger.failure, group=name),
            )
        except Exception as exc:
            logger.warning("Bulk group %r failed for %d items: %s", name, len(members), exc)
            ledger.fail_pending(members, exc, group=name)

    ledger.fail_pending([item for item in batch if id(item) not in routed], NO_GROUP_MESSAGE)
    _require_reported(ledger, len(batch))
    response = ledger.response()
    logger.debug(
        "Grouped itemized bulk complete: %d success, %d fail over %d groups",
        response.counts.success,
        response.counts.fail,
        len(response.groups),
    )
    return response


def _require_reported(ledger: _Ledger, size: int) -> None:
    missing = ledger.unreported()
    if missing:
        msg = f"Bulk worker did not report {len(missing)} of {size} items"
        raise UnreportedItemError(msg, detail={"indices": missing})


# ---------------------------------------------------------------------------
# Counted
# ---------------------------------------------------------------------------


def counted(
    items: Iterable[Any],
    worker: CountedWorker | Groups,
    *,
    preprocess: Preprocess | None = None,
) -> BulkCountedResponse:
    """Run *worker* once over *items* and derive ``{success, fail}`` from its count.

    Raises:
        BulkOperationError: If an ungrouped worker, or *preprocess*, raises.
            The attached response counts every item as failed.
    """
    batch = _prepare(items, preprocess)
    if not batch:
        return BulkCountedResponse()
    if isinstance(worker, Mapping):
        return _counted_groups(batch, worker)

    try:
        count = worker(batch)
    except Exception as exc:
        response = BulkCountedResponse(counts=BulkCounts(success=0, fail=len(batch)))
        logger.warning("Counted bulk worker failed for %d items", len(batch))
        raise BulkOperationError(f"Bulk operation failed: {exc}", response=response) from exc

    success = _clamp(count, len(batch))
    logger.debug("Counted bulk complete: %d of %d", success, len(batch))
    return BulkCountedResponse(counts=BulkCounts(success=success, fail=len(batch) - success))


def _counted_groups(batch: list[Any], groups: Groups) -> BulkCountedResponse:
    """Per-group counts; a raising worker counts its whole group as failed.

    Items the predicate raised on count as failures of that group. Totals
    count every input once: ``fail`` is whatever did not succeed.
    """
    _check_groups(groups)
    group_counts: dict[str, BulkCounts] = {}
    for name, group in groups.items():
        members, rejected = _partition(batch, group.group_by)
        if not members and not rejected:
            continue
        success = 0
        if members:
            try:
                success = _clamp(group.worker(members), len(members))
            except Exception as exc:
                logger.warning("Bulk group %r failed for %d items: %s", name, len(members), exc)
        group_counts[name] = BulkCounts(
            success=success, fail=len(members) + len(rejected) - success
        )

    total = min(sum(counts.success for counts in group_counts.values()), len(batch))
    logger.debug("Grouped counted bulk complete: %d of %d", total, len(batch))
    return BulkCountedResponse(
        counts=BulkCounts(success=total, fail=len(batch) - total), groups=group_counts
    )


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


def status(
    items: Iterable[Any],
    worker: StatusWorker | Groups,
    *,
    preprocess: Preprocess | None = None,
) -> BulkStatusResponse:
    """Run *worker* once over *items* and keep the single status it returns.

    Raises:
        BulkOperationError: If an ungrouped worker, or *preprocess*, raises, or
            the worker returns something that is not a status. The attached
            response has status ``fail``.
    """
    batch = _prepare(items, preprocess)
    if not batch:
        return BulkStatusResponse()
    if isinstance(worker, Mapping):
        return BulkStatusResponse(status=_status_groups(batch, worker))

    try:
        outcome = BulkStatus(worker(batch))
    except Exception as exc:
        logger.warning("Status bulk worker failed for %d items", len(batch))
        raise BulkOperationError(
            f"Bulk operation failed: {exc}",
            response=BulkStatusResponse(status=BulkStatus.FAIL),
        ) from exc
    logger.debug("Status bulk complete: %s", outcome)
    return BulkStatusResponse(status=outcome)


def _status_groups(batch: list[Any], groups: Groups) -> BulkStatus:
    """Combine group statuses: all success, some success, or fail.

    A group whose predicate or worker raises contributes ``fail``. Groups that
    select nothing contribute nothing.
    """
    _check_groups(groups)
    statuses: list[BulkStatus] = []
    for name, group in groups.items():
        members, rejected = _partition(batch, group.group_by)
        if rejected:
            logger.warning("Bulk group %r predicate failed: %s", name, rejected[0][1])
            statuses.append(BulkStatus.FAIL)
            continue
        if not members:
            continue
        try:
            statuses.append(BulkStatus(group.worker(members)))
        except Exception as exc:
            logger.warning("Bulk group %r failed for %d items: %s", name, len(members), exc)
            statuses.append(BulkStatus.FAIL)

    if all(s == BulkStatus.SUCCESS for s in statuses):
        return BulkStatus.SUCCESS
    if any(s in (BulkStatus.SUCCESS, BulkStatus.PARTIAL_SUCCESS) for s in statuses):
        return BulkStatus.PARTIAL_SUCCESS
    return BulkStatus.FAIL

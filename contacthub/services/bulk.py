"""Bounded fan-out of per-item bulk operations with a three-way result partition."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar, Union

from contacthub.core.errors import BatchInProgressError
from contacthub.services.batch_tracker import BatchTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Created:
    index: int
    item: Any
    value: Any = None


@dataclass
class Duplicate:
    index: int
    item: Any
    existing_id: int | None = None
    reason: str = "DUPLICATE"
    diff: dict[str, Any] | None = None


@dataclass
class Failed:
    index: int
    item: Any
    reason: str
    details: dict[str, Any] | None = None


Outcome = Union[Created, Duplicate, Failed]

_TRACKER_KIND = {Created: "successful", Duplicate: "duplicates", Failed: "failed"}


@dataclass
class BatchResult:
    """Per-item outcomes of one bulk run, each list ordered by input index."""

    successful: list[Created] = field(default_factory=list)
    failed: list[Failed] = field(default_factory=list)
    duplicates: list[Duplicate] = field(default_factory=list)
    batch_id: int | None = None

    @property
    def total(self) -> int:
        return len(self.successful) + len(self.failed) + len(self.duplicates)

    @classmethod
    def from_outcomes(cls, outcomes: Sequence[Outcome], batch_id: int | None = None) -> "BatchResult":
        result = cls(batch_id=batch_id)
        for outcome in sorted(outcomes, key=lambda item: item.index):
            if isinstance(outcome, Created):
                result.successful.append(outcome)
            elif isinstance(outcome, Duplicate):
                result.duplicates.append(outcome)
            else:
                result.failed.append(outcome)
        return result

    def counts(self) -> dict[str, int]:
        return {
            "total": self.total,
            "successful": len(self.successful),
            "failed": len(self.failed),
            "duplicates": len(self.duplicates),
        }


class OwnerLocks:
    """Allows at most one in-flight bulk operation per owner."""

    def __init__(self) -> None:
        self._active: set[str] = set()

    @asynccontextmanager
    async def hold(self, owner_id: str) -> AsyncIterator[None]:
        if owner_id in self._active:
            raise BatchInProgressError(
                "Another bulk operation is already running for this owner",
                details={"owner_id": owner_id},
            )
        self._active.add(owner_id)
        try:
            yield
        finally:
            self._active.discard(owner_id)


class BulkBatchCoordinator(Generic[T]):
    """Run ``operation(index, item)`` for every item with bounded concurrency.

    Operations return ``Created``, ``Duplicate`` or ``Failed``. An operation
    that raises is recorded as ``Failed`` so every input item lands in
    exactly one partition.
    """

    def __init__(self, worker_limit: int = 10) -> None:
        self.worker_limit = max(1, worker_limit)

    async def run(
        self,
        items: Sequence[T],
        operation: Callable[[int, T], Awaitable[Outcome]],
        *,
        tracker: BatchTracker | None = None,
    ) -> BatchResult:
        semaphore = asyncio.Semaphore(self.worker_limit)

        async def _run_one(index: int, item: T) -> Outcome:
            async with semaphore:
                try:
                    outcome = await operation(index, item)
                except Exception as exc:  # noqa: BLE001 - every item must land in a partition
                    logger.exception("Bulk item raised", extra={"index": index})
                    outcome = Failed(index=index, item=item, reason=f"UNEXPECTED_ERROR: {exc}")
                if tracker is not None:
                    try:
                        await tracker.record(
                            _TRACKER_KIND[type(outcome)],
                            index=index,
                            reason=getattr(outcome, "reason", None),
                        )
                    except Exception:  # noqa: BLE001 - counting must not drop the outcome
                        logger.exception("Bulk progress not recorded", extra={"index": index})
            return outcome

        try:
            outcomes = await asyncio.gather(*(_run_one(index, item) for index, item in enumerate(items)))
            result = BatchResult.from_outcomes(outcomes, batch_id=tracker.batch_id if tracker else None)
            if tracker is not None:
                await tracker.complete()
        except Exception as exc:
            if tracker is not None and not tracker.finished:
                await tracker.fail(f"UNEXPECTED_ERROR: {exc}")
            raise
        return result

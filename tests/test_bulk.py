from __future__ import annotations

from typing import Any

import pytest
from sqlalchemy.exc import OperationalError

from contacthub.models import BatchStatus, ImportBatch, ImportSource
from contacthub.services.batch_tracker import BatchTracker
from contacthub.services.bulk import BulkBatchCoordinator, Created, Duplicate, Failed


class LockedDatabaseTracker(BatchTracker):
    """Tracker whose writes fail for the statuses listed in ``broken``."""

    broken: tuple[BatchStatus | None, ...] = ()

    async def _write(self, **values: Any) -> None:
        if values.get("status") in self.broken:
            raise OperationalError("UPDATE contact_import_batches", {}, Exception("database is locked"))
        await super()._write(**values)


async def load_batch(batch_id: int) -> ImportBatch:
    from contacthub.core.db import AsyncSessionLocal

    async with AsyncSessionLocal() as session:
        return await session.get(ImportBatch, batch_id)


async def new_tracker(broken: tuple[BatchStatus | None, ...]) -> LockedDatabaseTracker:
    from contacthub.core.db import AsyncSessionLocal

    tracker = await LockedDatabaseTracker.create(
        AsyncSessionLocal,
        ImportBatch(owner_id="owner-1", source=ImportSource.MANUAL),
        flush_every=2,
    )
    tracker.broken = broken
    return tracker


async def classify(index: int, item: str) -> Created | Duplicate | Failed:
    if item == "dup":
        return Duplicate(index=index, item=item, existing_id=1)
    if item == "bad":
        return Failed(index=index, item=item, reason="VALIDATION_ERROR")
    if item == "boom":
        raise RuntimeError("exploded")
    return Created(index=index, item=item)


@pytest.mark.anyio("asyncio")
async def test_every_item_lands_in_exactly_one_partition() -> None:
    items = ["ok", "dup", "bad", "boom", "ok"]

    result = await BulkBatchCoordinator(worker_limit=2).run(items, classify)

    assert result.counts() == {"total": 5, "successful": 2, "failed": 2, "duplicates": 1}
    assert [outcome.index for outcome in result.successful] == [0, 4]
    assert [outcome.reason for outcome in result.failed] == ["VALIDATION_ERROR", "UNEXPECTED_ERROR: exploded"]


@pytest.mark.anyio("asyncio")
async def test_progress_write_failures_do_not_abort_the_batch(database) -> None:
    tracker = await new_tracker(broken=(None,))
    await tracker.start(5)

    result = await BulkBatchCoordinator(worker_limit=3).run(
        ["ok", "dup", "bad", "ok", "ok"], classify, tracker=tracker
    )

    assert result.counts() == {"total": 5, "successful": 3, "failed": 1, "duplicates": 1}
    batch = await load_batch(tracker.batch_id)
    assert batch.status is BatchStatus.COMPLETED
    assert (batch.processed, batch.successful, batch.failed, batch.duplicates) == (5, 3, 1, 1)
    assert batch.error_log == [{"index": 2, "reason": "VALIDATION_ERROR"}]


@pytest.mark.anyio("asyncio")
async def test_batch_is_marked_failed_when_completion_cannot_be_written(database) -> None:
    tracker = await new_tracker(broken=(BatchStatus.COMPLETED,))
    await tracker.start(2)

    with pytest.raises(OperationalError):
        await BulkBatchCoordinator().run(["ok", "ok"], classify, tracker=tracker)

    batch = await load_batch(tracker.batch_id)
    assert batch.status is BatchStatus.FAILED
    assert batch.processed == 2
    assert batch.error_log[-1]["reason"].startswith("UNEXPECTED_ERROR")
    assert tracker.finished

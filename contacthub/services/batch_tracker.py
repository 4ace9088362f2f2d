"""Progress tracking for import and invitation batches."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Union

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contacthub.models import BatchStatus, ImportBatch, InvitationBatch, utcnow

logger = logging.getLogger(__name__)

BatchModel = Union[ImportBatch, InvitationBatch]

FINAL_STATUSES = frozenset({BatchStatus.COMPLETED, BatchStatus.FAILED})


class BatchTracker:
    """Owns the counters of one batch row while its coordinator runs.

    Counters live in memory and are written back every ``flush_every``
    processed items and once more when the batch finishes. A finished batch
    is immutable: further updates raise ``RuntimeError``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        model: type[BatchModel],
        batch_id: int,
        *,
        flush_every: int = 25,
    ) -> None:
        self._session_factory = session_factory
        self.model = model
        self.batch_id = batch_id
        self.flush_every = max(1, flush_every)
        self.status = BatchStatus.PENDING
        self.total = 0
        self.processed = 0
        self.successful = 0
        self.failed = 0
        self.duplicates = 0
        self.error_log: list[dict[str, Any]] = []
        self._lock = asyncio.Lock()

    @classmethod
    async def create(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        batch: BatchModel,
        **kwargs: Any,
    ) -> "BatchTracker":
        """Persist ``batch`` as pending and return a tracker bound to it."""

        batch.status = BatchStatus.PENDING
        async with session_factory() as session:
            session.add(batch)
            await session.commit()
            batch_id = batch.id
        return cls(session_factory, type(batch), batch_id, **kwargs)

    async def start(self, total: int) -> None:
        self._ensure_open()
        self.total = total
        self.status = BatchStatus.PROCESSING
        await self._write(total=total, status=BatchStatus.PROCESSING)
        logger.info(
            "Batch started",
            extra={"batch_table": self.model.__tablename__, "batch_id": self.batch_id, "total": total},
        )

    async def record(self, kind: str, *, index: int | None = None, reason: str | None = None) -> None:
        """Count one processed item; ``kind`` is ``successful``, ``failed`` or ``duplicates``."""

        async with self._lock:
            self._ensure_open()
            if kind == "successful":
                self.successful += 1
            elif kind == "failed":
                self.failed += 1
                self.error_log.append({"index": index, "reason": reason})
            elif kind == "duplicates":
                self.duplicates += 1
            else:
                raise ValueError(f"Unknown outcome kind: {kind}")
            self.processed += 1
            if self.processed % self.flush_every == 0:
                await self._flush_progress()

    async def complete(self) -> None:
        async with self._lock:
            self._ensure_open()
            await self._write(status=BatchStatus.COMPLETED, completed_at=utcnow(), **self._counters())
            self.status = BatchStatus.COMPLETED
        logger.info(
            "Batch completed",
            extra={
                "batch_table": self.model.__tablename__,
                "batch_id": self.batch_id,
                "successful": self.successful,
                "failed": self.failed,
                "duplicates": self.duplicates,
            },
        )

    async def fail(self, reason: str) -> None:
        """Mark a batch that could not run as failed."""

        async with self._lock:
            self._ensure_open()
            self.error_log.append({"index": None, "reason": reason})
            await self._write(status=BatchStatus.FAILED, completed_at=utcnow(), **self._counters())
            self.status = BatchStatus.FAILED
        logger.warning(
            "Batch failed",
            extra={"batch_table": self.model.__tablename__, "batch_id": self.batch_id, "reason": reason},
        )

    async def _flush_progress(self) -> None:
        """Write intermediate counters; a failed write is retried by the next flush."""

        try:
            await self._write(**self._counters())
        except SQLAlchemyError:
            logger.warning(
                "Batch progress write failed",
                extra={"batch_table": self.model.__tablename__, "batch_id": self.batch_id},
                exc_info=True,
            )

    def _counters(self) -> dict[str, Any]:
        ordered_log = sorted(
            self.error_log, key=lambda entry: (entry["index"] is None, entry["index"] or 0)
        )
        return {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "duplicates": self.duplicates,
            "error_log": ordered_log,
        }

    @property
    def finished(self) -> bool:
        return self.status in FINAL_STATUSES

    def _ensure_open(self) -> None:
        if self.finished:
            raise RuntimeError(f"Batch {self.batch_id} is already {self.status.value}")

    async def _write(self, **values: Any) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(self.model).where(self.model.id == self.batch_id).values(**values)
            )
            await session.commit()

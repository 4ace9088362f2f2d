"""Schemas for batch results, import batches and sync sessions."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from contacthub.models import BatchStatus, ImportSource, SyncType
from contacthub.services.bulk import BatchResult


class CreatedItem(BaseModel):
    index: int
    value: Any = None


class DuplicateItem(BaseModel):
    index: int
    existing_id: int | None = None
    reason: str
    diff: dict[str, Any] | None = None


class FailedItem(BaseModel):
    index: int
    reason: str
    item: Any = None
    details: dict[str, Any] | None = None


class BatchResultRead(BaseModel):
    batch_id: int | None = None
    total: int
    successful: list[CreatedItem]
    failed: list[FailedItem]
    duplicates: list[DuplicateItem]
    counts: dict[str, int]

    @classmethod
    def from_result(cls, result: BatchResult) -> "BatchResultRead":
        return cls(
            batch_id=result.batch_id,
            total=result.total,
            successful=[CreatedItem(index=item.index, value=item.value) for item in result.successful],
            failed=[
                FailedItem(index=item.index, reason=item.reason, item=item.item, details=item.details)
                for item in result.failed
            ],
            duplicates=[
                DuplicateItem(index=item.index, existing_id=item.existing_id, reason=item.reason, diff=item.diff)
                for item in result.duplicates
            ],
            counts=result.counts(),
        )


class BatchCountersRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: str
    name: str | None = None
    status: BatchStatus
    total: int
    processed: int
    successful: int
    failed: int
    duplicates: int
    error_log: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime
    completed_at: datetime | None = None


class ImportBatchRead(BatchCountersRead):
    source: ImportSource


class InvitationBatchRead(BatchCountersRead):
    delivery_method: str
    invitation_type: str
    template_message: str | None = None
    expires_in_days: int


class SyncSessionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: str
    device_id: str | None = None
    sync_type: SyncType
    status: BatchStatus
    total_device_contacts: int
    new_contacts: int
    updated_contacts: int
    deleted_contacts: int
    duplicates: int
    conflicts: int
    errors: int
    deletion_candidates: list[int] = Field(default_factory=list)
    error_message: str | None = None
    started_at: datetime
    completed_at: datetime | None = None


class SyncResultRead(BaseModel):
    session: SyncSessionRead
    result: BatchResultRead

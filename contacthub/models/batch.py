"""Bulk batch tracking models for imports and invitations."""
from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Enum as SQLEnum, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from contacthub.models.base import Base, utcnow


class BatchStatus(str, Enum):
    """Lifecycle of a bulk batch."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ImportSource(str, Enum):
    CSV = "csv"
    VCF = "vcf"
    MANUAL = "manual"
    SYNC = "sync"


class _BatchCounters:
    """Columns shared by every batch table; updated by the batch tracker."""

    total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    successful: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duplicates: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[BatchStatus] = mapped_column(
        SQLEnum(BatchStatus, name="batch_status"), default=BatchStatus.PENDING, nullable=False
    )
    error_log: Mapped[list[dict]] = mapped_column(JSON, default=list, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False))


class ImportBatch(_BatchCounters, Base):
    """One contact import run (file upload, bulk create or sync)."""

    __tablename__ = "contact_import_batches"

    id: Mapped[int] = mapped_column(primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255))
    source: Mapped[ImportSource] = mapped_column(
        SQLEnum(ImportSource, name="import_source"), nullable=False
    )


class InvitationBatch(_BatchCounters, Base):
    """One bulk invitation run."""

    __tablename__ = "invitation_batches"

    id: Mapped[int] = mapped_column(primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255))
    delivery_method: Mapped[str] = mapped_column(String(10), nullable=False)
    invitation_type: Mapped[str] = mapped_column(String(20), nullable=False)
    template_message: Mapped[str | None] = mapped_column(Text())
    expires_in_days: Mapped[int] = mapped_column(Integer, default=7, nullable=False)

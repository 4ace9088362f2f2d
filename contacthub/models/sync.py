"""Device sync session model."""
from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Enum as SQLEnum, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from contacthub.models.base import Base, utcnow
from contacthub.models.batch import BatchStatus


class SyncType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    MANUAL = "manual"
    IMPORT = "import"


class SyncSession(Base):
    """Counters and outcome of one device address-book sync."""

    __tablename__ = "contact_sync_sessions"

    id: Mapped[int] = mapped_column(primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    device_id: Mapped[str | None] = mapped_column(String(255))
    sync_type: Mapped[SyncType] = mapped_column(SQLEnum(SyncType, name="sync_type"), nullable=False)
    total_device_contacts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    new_contacts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_contacts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    deleted_contacts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duplicates: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    conflicts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    errors: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    deletion_candidates: Mapped[list[int]] = mapped_column(JSON, default=list, nullable=False)
    status: Mapped[BatchStatus] = mapped_column(
        SQLEnum(BatchStatus, name="batch_status"), default=BatchStatus.PROCESSING, nullable=False
    )
    error_message: Mapped[str | None] = mapped_column(Text())
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False))

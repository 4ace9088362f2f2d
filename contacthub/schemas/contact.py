"""Pydantic schemas for contact resources."""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from contacthub.models import ContactSource, SyncType
from contacthub.schemas.base import RequestModel

Tag = Annotated[str, Field(min_length=1, max_length=30)]
Name = Annotated[str, Field(max_length=100)]


class ContactBase(RequestModel):
    first_name: Name | None = None
    last_name: Name | None = None
    phone: str | None = Field(default=None, max_length=32)
    email: str | None = Field(default=None, max_length=255)
    company: str | None = Field(default=None, max_length=255)
    job_title: str | None = Field(default=None, max_length=255)
    notes: str | None = None
    tags: list[Tag] | None = Field(default=None, max_length=20)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        cleaned = {tag.strip() for tag in value}
        if "" in cleaned:
            msg = "Tags must not be empty"
            raise ValueError(msg)
        return sorted(cleaned)


class ContactCreate(ContactBase):
    is_favorite: bool = False


class ContactUpdate(ContactBase):
    is_favorite: bool | None = None


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    email: str | None = None
    company: str | None = None
    job_title: str | None = None
    source: ContactSource
    is_favorite: bool
    tags: list[str] = Field(default_factory=list)
    notes: str | None = None
    created_at: datetime
    updated_at: datetime
    synced_at: datetime | None = None

    @field_validator("tags", mode="before")
    @classmethod
    def sort_tags(cls, value: Any) -> list[str]:
        return sorted(set(value or []))


class BulkContactsRequest(RequestModel):
    # Raw records; field names are matched against the import header aliases.
    contacts: list[dict[str, Any]]
    batch_name: str | None = Field(default=None, max_length=200)


class SyncRequest(RequestModel):
    device_id: str | None = Field(default=None, max_length=128)
    sync_type: SyncType = SyncType.INCREMENTAL
    last_sync_time: datetime | None = None
    confirm_deletions: bool = False
    contacts: list[dict[str, Any]]

"""Contact model definition."""
from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from contacthub.models.base import Base, utcnow

# Fields that take part in dedup comparison and per-field sync merges.
CONTACT_FIELDS = ("first_name", "last_name", "phone", "email", "company", "job_title")


class ContactSource(str, Enum):
    """Where a contact record originated."""

    MANUAL = "manual"
    IMPORTED = "imported"
    SYNCED = "synced"
    INVITATION = "invitation"


class Contact(Base):
    """A contact owned by exactly one user."""

    __tablename__ = "contacts"
    __table_args__ = (
        UniqueConstraint("owner_id", "phone", name="uq_contacts_owner_phone"),
        UniqueConstraint("owner_id", "email", name="uq_contacts_owner_email"),
        CheckConstraint(
            "phone IS NOT NULL OR email IS NOT NULL", name="ck_contacts_phone_or_email"
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    first_name: Mapped[str | None] = mapped_column(String(100))
    last_name: Mapped[str | None] = mapped_column(String(100))
    phone: Mapped[str | None] = mapped_column(String(20))
    email: Mapped[str | None] = mapped_column(String(255))
    company: Mapped[str | None] = mapped_column(String(255))
    job_title: Mapped[str | None] = mapped_column(String(255))
    source: Mapped[ContactSource] = mapped_column(
        SQLEnum(ContactSource, name="contact_source"),
        default=ContactSource.MANUAL,
        nullable=False,
    )
    is_favorite: Mapped[bool] = mapped_column(Boolean(), default=False, nullable=False)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text())
    # ISO timestamps of the last change to each field in CONTACT_FIELDS.
    field_versions: Mapped[dict[str, str]] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, onupdate=utcnow, nullable=False
    )
    synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False))

    @property
    def display_name(self) -> str:
        parts = [part for part in (self.first_name, self.last_name) if part]
        return " ".join(parts)

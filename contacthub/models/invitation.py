"""Invitation and invitation log models."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from contacthub.models.base import Base, utcnow


class InvitationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    CLICKED = "clicked"
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    FAILED = "failed"


class InvitationType(str, Enum):
    FRIEND = "friend"
    CONTRACTOR = "contractor"


class DeliveryMethod(str, Enum):
    SMS = "sms"
    EMAIL = "email"
    BOTH = "both"

    @property
    def channels(self) -> tuple[str, ...]:
        if self is DeliveryMethod.BOTH:
            return ("sms", "email")
        return (self.value,)


class InvitationAction(str, Enum):
    """Audit actions recorded in the invitation log."""

    CREATED = "created"
    SENT = "sent"
    DELIVERED = "delivered"
    CLICKED = "clicked"
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    RESENT = "resent"
    FAILED = "failed"


class Invitation(Base):
    """An invitation sent by an owner to a recipient by SMS and/or email."""

    __tablename__ = "invitations"
    __table_args__ = (
        CheckConstraint(
            "recipient_phone IS NOT NULL OR recipient_email IS NOT NULL",
            name="ck_invitations_recipient",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    contact_id: Mapped[int | None] = mapped_column(ForeignKey("contacts.id", ondelete="SET NULL"))
    batch_id: Mapped[int | None] = mapped_column(
        ForeignKey("invitation_batches.id", ondelete="SET NULL"), index=True
    )
    recipient_email: Mapped[str | None] = mapped_column(String(255))
    recipient_phone: Mapped[str | None] = mapped_column(String(20))
    recipient_name: Mapped[str | None] = mapped_column(String(200))
    message: Mapped[str | None] = mapped_column(Text())
    invitation_type: Mapped[InvitationType] = mapped_column(
        SQLEnum(InvitationType, name="invitation_type"), default=InvitationType.FRIEND, nullable=False
    )
    delivery_method: Mapped[DeliveryMethod] = mapped_column(
        SQLEnum(DeliveryMethod, name="delivery_method"), default=DeliveryMethod.SMS, nullable=False
    )
    invite_token: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    referral_code: Mapped[str | None] = mapped_column(String(16), index=True)
    service_category: Mapped[str | None] = mapped_column(String(100))
    status: Mapped[InvitationStatus] = mapped_column(
        SQLEnum(InvitationStatus, name="invitation_status"),
        default=InvitationStatus.PENDING,
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False))
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False))
    clicked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False))
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False))
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False))
    resent_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_resent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False))
    # Per-channel results keyed by "sms" / "email"; see schemas.invitation.ChannelResult.
    delivery_results: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    error_messages: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    acceptance_data: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    sms_message_id: Mapped[str | None] = mapped_column(String(64), index=True)
    email_message_id: Mapped[str | None] = mapped_column(String(128), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, onupdate=utcnow, nullable=False
    )
    # Bumped on every write; token use is a compare-and-set against it.
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def channels(self) -> tuple[str, ...]:
        return DeliveryMethod(self.delivery_method).channels


class InvitationLog(Base):
    """Append-only audit trail for invitation state changes."""

    __tablename__ = "invitation_logs"

    id: Mapped[int] = mapped_column(primary_key=True)
    invitation_id: Mapped[int] = mapped_column(
        ForeignKey("invitations.id", ondelete="CASCADE"), index=True, nullable=False
    )
    action: Mapped[InvitationAction] = mapped_column(
        SQLEnum(InvitationAction, name="invitation_action"), nullable=False
    )
    # "metadata" is reserved on declarative classes.
    details: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, nullable=False)

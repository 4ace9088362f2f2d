"""Pydantic schemas for invitations, referrals and provider webhooks."""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field

from contacthub.models import DeliveryMethod, InvitationAction, InvitationStatus, InvitationType
from contacthub.schemas.base import RequestModel

ExpiryDays = Annotated[int, Field(ge=1, le=365)]


class InvitationRecipient(RequestModel):
    recipient_name: str | None = Field(default=None, max_length=200)
    recipient_phone: str | None = Field(default=None, max_length=32)
    recipient_email: str | None = Field(default=None, max_length=255)
    message: str | None = Field(default=None, max_length=1000)
    service_category: str | None = Field(default=None, max_length=100)


class InvitationCreate(InvitationRecipient):
    invitation_type: InvitationType = InvitationType.FRIEND
    delivery_method: DeliveryMethod = DeliveryMethod.SMS
    expires_in_days: ExpiryDays | None = None


class InvitationBulkCreate(RequestModel):
    items: list[InvitationRecipient] = Field(default_factory=list)
    contact_ids: list[int] = Field(default_factory=list)
    batch_name: str | None = Field(default=None, max_length=200)
    message: str | None = Field(default=None, max_length=1000)
    invitation_type: InvitationType = InvitationType.FRIEND
    delivery_method: DeliveryMethod = DeliveryMethod.SMS
    service_category: str | None = Field(default=None, max_length=100)
    expires_in_days: ExpiryDays | None = None

    def shared_options(self) -> dict[str, Any]:
        return self.model_dump(
            include={"message", "invitation_type", "delivery_method", "service_category", "expires_in_days"},
            exclude_none=True,
        )


class InvitationResend(RequestModel):
    delivery_method: DeliveryMethod | None = None
    message: str | None = Field(default=None, max_length=1000)


class InvitationAccept(RequestModel):
    user_id: str | None = Field(default=None, max_length=64)
    name: str | None = Field(default=None, max_length=200)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ChannelResultRead(BaseModel):
    channel: str
    success: bool
    provider: str | None = None
    message_id: str | None = None
    error: str | None = None
    error_code: str | None = None
    attempts: int = 0
    segments: int | None = None
    sent_at: datetime | None = None


class InvitationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: str
    contact_id: int | None = None
    batch_id: int | None = None
    recipient_name: str | None = None
    recipient_phone: str | None = None
    recipient_email: str | None = None
    message: str | None = None
    invitation_type: InvitationType
    delivery_method: DeliveryMethod
    invite_token: str
    referral_code: str | None = None
    service_category: str | None = None
    status: InvitationStatus
    expires_at: datetime
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    clicked_at: datetime | None = None
    accepted_at: datetime | None = None
    cancelled_at: datetime | None = None
    failed_at: datetime | None = None
    resent_count: int = 0
    last_resent_at: datetime | None = None
    delivery_results: dict[str, ChannelResultRead] = Field(default_factory=dict)
    error_messages: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class InvitationPublicRead(BaseModel):
    """What the invitee sees after clicking or accepting."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    status: InvitationStatus
    invitation_type: InvitationType
    recipient_name: str | None = None
    referral_code: str | None = None
    expires_at: datetime


class InvitationLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    action: InvitationAction
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class ReferralVisitRequest(RequestModel):
    phone: str | None = Field(default=None, max_length=32)
    email: str | None = Field(default=None, max_length=255)


class EmailEvent(BaseModel):
    sg_message_id: str | None = None
    event: str
    reason: str | None = None

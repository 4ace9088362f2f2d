"""Pydantic schemas for the contact and invitation service."""

from .batch import (
    BatchResultRead,
    ImportBatchRead,
    InvitationBatchRead,
    SyncResultRead,
    SyncSessionRead,
)
from .contact import BulkContactsRequest, ContactCreate, ContactRead, ContactUpdate, SyncRequest
from .invitation import (
    ChannelResultRead,
    EmailEvent,
    InvitationAccept,
    InvitationBulkCreate,
    InvitationCreate,
    InvitationLogRead,
    InvitationPublicRead,
    InvitationRead,
    InvitationResend,
    ReferralVisitRequest,
)

__all__ = [
    "BatchResultRead",
    "BulkContactsRequest",
    "ChannelResultRead",
    "ContactCreate",
    "ContactRead",
    "ContactUpdate",
    "EmailEvent",
    "ImportBatchRead",
    "InvitationAccept",
    "InvitationBatchRead",
    "InvitationBulkCreate",
    "InvitationCreate",
    "InvitationLogRead",
    "InvitationPublicRead",
    "InvitationRead",
    "InvitationResend",
    "ReferralVisitRequest",
    "SyncRequest",
    "SyncResultRead",
    "SyncSessionRead",
]

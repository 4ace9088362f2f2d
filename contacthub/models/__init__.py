"""Database models package for the contact and invitation service."""

from .base import Base, utcnow
from .batch import BatchStatus, ImportBatch, ImportSource, InvitationBatch
from .contact import CONTACT_FIELDS, Contact, ContactSource
from .invitation import (
    DeliveryMethod,
    Invitation,
    InvitationAction,
    InvitationLog,
    InvitationStatus,
    InvitationType,
)
from .referral import ReferralCode
from .sync import SyncSession, SyncType

__all__ = [
    "Base",
    "BatchStatus",
    "CONTACT_FIELDS",
    "Contact",
    "ContactSource",
    "DeliveryMethod",
    "ImportBatch",
    "ImportSource",
    "Invitation",
    "InvitationAction",
    "InvitationBatch",
    "InvitationLog",
    "InvitationStatus",
    "InvitationType",
    "ReferralCode",
    "SyncSession",
    "SyncType",
    "utcnow",
]

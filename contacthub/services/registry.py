"""Wiring of the long-lived service objects shared by all requests."""
from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contacthub.core.config import Settings
from contacthub.models import utcnow
from contacthub.services.analytics import AnalyticsAggregator
from contacthub.services.bulk import BulkBatchCoordinator, OwnerLocks
from contacthub.services.contacts import ContactService
from contacthub.services.delivery import DeliveryChannelRouter
from contacthub.services.invitation_state import InvitationStateMachine
from contacthub.services.invitations import InvitationService
from contacthub.services.providers import EmailProvider, SMSProvider, build_email_provider, build_sms_provider
from contacthub.services.rate_limiter import Clock, SlidingWindowLimiter, Sleep, TokenBucket
from contacthub.services.referrals import ReferralCodeService
from contacthub.services.sync import SyncReconciler


@dataclass
class ServiceRegistry:
    contacts: ContactService
    sync: SyncReconciler
    invitations: InvitationService
    referrals: ReferralCodeService
    analytics: AnalyticsAggregator
    request_limiter: SlidingWindowLimiter
    sms_bucket: TokenBucket


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    sms_provider: SMSProvider | None = None,
    email_provider: EmailProvider | None = None,
    clock: Callable[[], datetime] = utcnow,
    monotonic: Clock = time.monotonic,
    sleep: Sleep = asyncio.sleep,
) -> ServiceRegistry:
    """Build one process-wide set of services.

    The SMS bucket and the owner locks must be shared by every request, so
    the app builds this once and keeps it on ``app.state``.
    """

    coordinator = BulkBatchCoordinator(settings.bulk_worker_limit)
    locks = OwnerLocks()
    state_machine = InvitationStateMachine(clock)
    sms_bucket = TokenBucket(
        settings.sms_messages_per_second,
        settings.sms_bucket_capacity,
        clock=monotonic,
        sleep=sleep,
    )
    router = DeliveryChannelRouter(
        sms_provider or build_sms_provider(settings),
        email_provider or build_email_provider(settings),
        sms_bucket,
        max_attempts=settings.delivery_max_attempts,
        backoff_seconds=settings.delivery_backoff_seconds,
    )
    contacts = ContactService(settings, session_factory, coordinator, locks, clock=clock)
    referrals = ReferralCodeService(state_machine)
    invitations = InvitationService(
        settings,
        session_factory,
        router,
        state_machine,
        referrals,
        contacts,
        coordinator,
        locks,
        clock=clock,
    )
    return ServiceRegistry(
        contacts=contacts,
        sync=SyncReconciler(settings, session_factory, coordinator, locks, clock=clock),
        invitations=invitations,
        referrals=referrals,
        analytics=AnalyticsAggregator(),
        request_limiter=SlidingWindowLimiter(clock=monotonic),
        sms_bucket=sms_bucket,
    )

"""Invitation workflow: creation, delivery, resend, acceptance and webhooks."""
from __future__ import annotations

import logging
import secrets
from collections.abc import Callable, Mapping, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contacthub.core.config import Settings
from contacthub.core.errors import (
    CapacityError,
    ConflictError,
    DuplicateError,
    NotFoundError,
    TokenError,
    ValidationError,
)
from contacthub.models import (
    Contact,
    ContactSource,
    DeliveryMethod,
    Invitation,
    InvitationAction,
    InvitationBatch,
    InvitationLog,
    InvitationStatus,
    InvitationType,
    utcnow,
)
from contacthub.services.batch_tracker import BatchTracker
from contacthub.services.bulk import BatchResult, BulkBatchCoordinator, Created, Duplicate, Failed, OwnerLocks
from contacthub.services.contacts import (
    ContactService,
    fetch_matching_contacts,
    field_versions_for,
    find_existing_id,
)
from contacthub.services.dedup import ContactIndex
from contacthub.services.delivery import DeliveryChannelRouter, DeliveryReport, EmailMessage
from contacthub.services.invitation_state import ACTIVE_STATUSES, InvitationStateMachine, can_transition
from contacthub.services.normalizer import NormalizedContact, clean_text, normalize_email, normalize_phone
from contacthub.services.rate_limiter import SendOrder
from contacthub.services.referrals import ReferralCodeService

logger = logging.getLogger(__name__)

DEFAULT_INVITER_NAME = "Your friend"
TOKEN_ATTEMPTS = 3


@dataclass(frozen=True)
class InvitationDraft:
    """A validated invitation request for one recipient."""

    recipient_name: str | None
    recipient_phone: str | None
    recipient_email: str | None
    message: str | None
    invitation_type: InvitationType
    delivery_method: DeliveryMethod
    service_category: str | None
    expires_in_days: int
    contact_id: int | None = None


def build_draft(
    raw: Mapping[str, Any],
    *,
    defaults: Mapping[str, Any] | None = None,
    expiry_days: int = 7,
) -> InvitationDraft:
    """Validate one recipient; raises ``ValidationError`` on unusable input."""

    merged = {**(defaults or {}), **{key: value for key, value in raw.items() if value is not None}}
    method = DeliveryMethod(merged.get("delivery_method") or DeliveryMethod.SMS)
    raw_phone = merged.get("recipient_phone")
    raw_email = merged.get("recipient_email")
    phone = normalize_phone(raw_phone)
    email = normalize_email(raw_email)

    issues: list[str] = []
    if raw_phone and phone is None:
        issues.append("INVALID_PHONE")
    if raw_email and email is None:
        issues.append("INVALID_EMAIL")
    if "sms" in method.channels and phone is None:
        issues.append("PHONE_REQUIRED")
    if "email" in method.channels and email is None:
        issues.append("EMAIL_REQUIRED")
    if issues:
        raise ValidationError(
            f"Recipient cannot be reached by {method.value}",
            details={"issues": sorted(set(issues))},
        )

    expires_in_days = int(merged.get("expires_in_days") or expiry_days)
    if expires_in_days < 1:
        raise ValidationError("expires_in_days must be at least 1")

    return InvitationDraft(
        recipient_name=clean_text(merged.get("recipient_name")),
        recipient_phone=phone,
        recipient_email=email,
        message=clean_text(merged.get("message")),
        invitation_type=InvitationType(merged.get("invitation_type") or InvitationType.FRIEND),
        delivery_method=method,
        service_category=clean_text(merged.get("service_category")),
        expires_in_days=expires_in_days,
        contact_id=merged.get("contact_id"),
    )


def render_sms(invitation: Invitation, inviter_name: str, invite_link: str) -> str:
    greeting = f"Hi {invitation.recipient_name}! " if invitation.recipient_name else "Hi! "
    footer = f"\n\nJoin: {invite_link}\nUse code: {invitation.referral_code}"
    if invitation.message:
        return f"{greeting}{invitation.message}{footer}"
    if invitation.invitation_type is InvitationType.CONTRACTOR:
        service = (
            f" especially for {invitation.service_category} services" if invitation.service_category else ""
        )
        return (
            f"{greeting}{inviter_name} recommends you join FixRx as a contractor{service}. "
            "It's a great platform to connect with customers who need trusted professionals."
            f"{footer}"
        )
    return (
        f"{greeting}{inviter_name} has been using FixRx to find trusted contractors through their "
        "network. You should join and build your own trusted contractor network."
        f"{footer}"
    )


def render_email(invitation: Invitation, inviter_name: str, invite_link: str, download_link: str) -> EmailMessage:
    if invitation.invitation_type is InvitationType.CONTRACTOR:
        subject = f"{inviter_name} recommends you join FixRx as a contractor"
    else:
        subject = f"{inviter_name} invited you to join FixRx"
    text = (
        f"{render_sms(invitation, inviter_name, invite_link)}\n\n"
        f"Get the app: {download_link}"
    )
    html = "".join(f"<p>{line}</p>" for line in text.split("\n") if line)
    return EmailMessage(subject=subject, text=text, html=html)


def recipient_keys(phone: str | None, email: str | None) -> list[str]:
    keys = []
    if phone:
        keys.append(f"phone:{phone}")
    if email:
        keys.append(f"email:{email}")
    return keys


class InvitationService:
    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        router: DeliveryChannelRouter,
        state_machine: InvitationStateMachine,
        referrals: ReferralCodeService,
        contacts: ContactService,
        coordinator: BulkBatchCoordinator,
        locks: OwnerLocks,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self._session_factory = session_factory
        self.router = router
        self.state_machine = state_machine
        self.referrals = referrals
        self.contacts = contacts
        self.coordinator = coordinator
        self.locks = locks
        self._clock = clock

    def invite_link(self, token: str) -> str:
        return f"{self.settings.invite_base_url.rstrip('/')}/{token}"

    # -- creation and delivery ------------------------------------------

    async def create(
        self,
        session: AsyncSession,
        owner_id: str,
        payload: Mapping[str, Any],
        *,
        inviter_name: str | None = None,
    ) -> Invitation:
        draft = build_draft(payload, expiry_days=self.settings.invitation_expiry_days)
        existing = await self._active_invitation_for(session, owner_id, draft.recipient_phone, draft.recipient_email)
        if existing is not None:
            raise DuplicateError(
                "An active invitation already exists for this recipient", existing_id=existing.id
            )

        referral_code = await self.referrals.get_or_create(session, owner_id, inviter_name)
        contact = await self.contacts.link_or_create(
            session,
            owner_id,
            name=draft.recipient_name,
            phone=draft.recipient_phone,
            email=draft.recipient_email,
        )
        invitation = self._new_invitation(owner_id, replace(draft, contact_id=contact.id), referral_code)
        session.add(invitation)
        await session.flush()
        session.add(self.state_machine.log(invitation, InvitationAction.CREATED, at=invitation.created_at))
        await session.commit()
        # Delivery results are written by a separate session.
        session.expunge(invitation)

        await self._deliver_and_record(invitation, inviter_name)
        return invitation

    def _new_invitation(
        self,
        owner_id: str,
        draft: InvitationDraft,
        referral_code: str,
        batch_id: int | None = None,
    ) -> Invitation:
        now = self._clock()
        return Invitation(
            owner_id=owner_id,
            contact_id=draft.contact_id,
            batch_id=batch_id,
            recipient_name=draft.recipient_name,
            recipient_phone=draft.recipient_phone,
            recipient_email=draft.recipient_email,
            message=draft.message,
            invitation_type=draft.invitation_type,
            delivery_method=draft.delivery_method,
            service_category=draft.service_category,
            invite_token=secrets.token_urlsafe(32),
            referral_code=referral_code,
            status=InvitationStatus.PENDING,
            expires_at=now + timedelta(days=draft.expires_in_days),
            sent_at=None,
            delivered_at=None,
            clicked_at=None,
            accepted_at=None,
            cancelled_at=None,
            failed_at=None,
            last_resent_at=None,
            acceptance_data=None,
            sms_message_id=None,
            email_message_id=None,
            resent_count=0,
            delivery_results={},
            error_messages=[],
            created_at=now,
            updated_at=now,
        )

    async def _send(
        self,
        invitation: Invitation,
        inviter_name: str | None,
        sms_turn: AbstractAsyncContextManager[None] | None = None,
    ) -> DeliveryReport:
        name = inviter_name or DEFAULT_INVITER_NAME
        link = self.invite_link(invitation.invite_token)
        return await self.router.deliver(
            invitation.channels,
            phone=invitation.recipient_phone,
            email=invitation.recipient_email,
            sms_body=render_sms(invitation, name, link),
            email_message=render_email(invitation, name, link, self.settings.app_download_link),
            sms_turn=sms_turn,
        )

    async def _deliver_and_record(
        self,
        invitation: Invitation,
        inviter_name: str | None,
        sms_turn: AbstractAsyncContextManager[None] | None = None,
    ) -> DeliveryReport:
        """Send a pending invitation and move it to sent or failed."""

        report = await self._send(invitation, inviter_name, sms_turn)
        self._apply_report(invitation, report)
        if report.any_success:
            logs = [
                self.state_machine.transition(
                    invitation, InvitationStatus.SENT, details={"channels": sorted(report.results)}
                )
            ]
        else:
            logs = [
                self.state_machine.transition(
                    invitation, InvitationStatus.FAILED, details={"errors": report.errors}
                )
            ]
        await self._persist(invitation, logs)
        return report

    def _apply_report(self, invitation: Invitation, report: DeliveryReport) -> None:
        results = dict(invitation.delivery_results or {})
        for channel, outcome in report.results.items():
            results[channel] = outcome.to_dict()
        invitation.delivery_results = results
        invitation.error_messages = [*(invitation.error_messages or []), *report.errors]
        invitation.sms_message_id = report.message_id("sms") or invitation.sms_message_id
        invitation.email_message_id = report.message_id("email") or invitation.email_message_id

    async def _persist(self, invitation: Invitation, logs: Sequence[InvitationLog]) -> None:
        """Write the invitation's mutable columns and append ``logs`` without reading first."""

        async with self._session_factory() as session:
            await session.execute(
                update(Invitation)
                .where(Invitation.id == invitation.id)
                .values(
                    status=invitation.status,
                    sent_at=invitation.sent_at,
                    delivered_at=invitation.delivered_at,
                    clicked_at=invitation.clicked_at,
                    failed_at=invitation.failed_at,
                    expires_at=invitation.expires_at,
                    resent_count=invitation.resent_count,
                    last_resent_at=invitation.last_resent_at,
                    delivery_results=invitation.delivery_results,
                    error_messages=invitation.error_messages,
                    sms_message_id=invitation.sms_message_id,
                    email_message_id=invitation.email_message_id,
                    message=invitation.message,
                    delivery_method=invitation.delivery_method,
                    updated_at=invitation.updated_at,
                    version_id=Invitation.version_id + 1,
                )
            )
            session.add_all(logs)
            await session.commit()

    # -- bulk -----------------------------------------------------------

    async def bulk_create(
        self,
        owner_id: str,
        *,
        items: Sequence[Mapping[str, Any]] = (),
        contact_ids: Sequence[int] = (),
        options: Mapping[str, Any] | None = None,
        batch_name: str | None = None,
        inviter_name: str | None = None,
    ) -> BatchResult:
        options = dict(options or {})
        total = len(items) + len(contact_ids)
        async with self.locks.hold(owner_id):
            batch = InvitationBatch(
                owner_id=owner_id,
                name=batch_name,
                delivery_method=DeliveryMethod(options.get("delivery_method") or DeliveryMethod.SMS).value,
                invitation_type=InvitationType(options.get("invitation_type") or InvitationType.FRIEND).value,
                template_message=options.get("message"),
                expires_in_days=int(options.get("expires_in_days") or self.settings.invitation_expiry_days),
            )
            tracker = await BatchTracker.create(self._session_factory, batch)
            cap = self.settings.invitation_bulk_cap
            if total > cap:
                await tracker.fail(f"BATCH_TOO_LARGE: {total} items exceeds the limit of {cap}")
                raise CapacityError(
                    f"Batch of {total} invitations exceeds the limit of {cap}",
                    details={"limit": cap, "received": total, "batch_id": tracker.batch_id},
                )

            async with self._session_factory() as session:
                referral_code = await self.referrals.get_or_create(session, owner_id, inviter_name)
                rows = [dict(item) for item in items] + await self._rows_for_contacts(
                    session, owner_id, contact_ids
                )
                plans = await self._plan_bulk(session, owner_id, rows, options)

            await tracker.start(total)
            # First SMS tokens are handed out in submission order.
            send_order = SendOrder(
                index
                for index, plan in enumerate(plans)
                if isinstance(plan, InvitationDraft) and "sms" in plan.delivery_method.channels
            )

            async def _operation(index: int, row: Mapping[str, Any]) -> Created | Duplicate | Failed:
                plan = plans[index]
                if not isinstance(plan, InvitationDraft):
                    return plan
                try:
                    return await self._send_planned(
                        owner_id, index, row, plan, referral_code, tracker.batch_id, inviter_name, send_order
                    )
                finally:
                    send_order.release(index)

            return await self.coordinator.run(rows, _operation, tracker=tracker)

    async def _rows_for_contacts(
        self, session: AsyncSession, owner_id: str, contact_ids: Sequence[int]
    ) -> list[dict[str, Any]]:
        if not contact_ids:
            return []
        result = await session.execute(
            select(Contact).where(Contact.owner_id == owner_id, Contact.id.in_(set(contact_ids)))
        )
        found = {contact.id: contact for contact in result.scalars()}
        rows: list[dict[str, Any]] = []
        for contact_id in contact_ids:
            contact = found.get(contact_id)
            if contact is None:
                rows.append({"contact_id": contact_id, "missing": True})
                continue
            rows.append(
                {
                    "contact_id": contact.id,
                    "recipient_name": contact.display_name or None,
                    "recipient_phone": contact.phone,
                    "recipient_email": contact.email,
                }
            )
        return rows

    async def _plan_bulk(
        self,
        session: AsyncSession,
        owner_id: str,
        rows: Sequence[Mapping[str, Any]],
        options: Mapping[str, Any],
    ) -> list[InvitationDraft | Duplicate | Failed]:
        """Validate rows in input order and decide duplicates before anything is sent."""

        drafts: list[InvitationDraft | Failed] = []
        for position, row in enumerate(rows):
            if row.get("missing"):
                drafts.append(Failed(index=position, item=row, reason="CONTACT_NOT_FOUND"))
                continue
            try:
                drafts.append(
                    build_draft(
                        {key: value for key, value in row.items() if key != "missing"},
                        defaults=options,
                        expiry_days=self.settings.invitation_expiry_days,
                    )
                )
            except ValidationError as exc:
                drafts.append(Failed(index=position, item=row, reason=exc.code, details=exc.details))

        valid = [draft for draft in drafts if isinstance(draft, InvitationDraft)]
        active = await self._active_by_recipient(session, owner_id, valid)
        known_contacts = ContactIndex.from_models(
            await fetch_matching_contacts(
                session,
                owner_id,
                [NormalizedContact(phone=d.recipient_phone, email=d.recipient_email) for d in valid],
            )
        )

        plans: list[InvitationDraft | Duplicate | Failed] = []
        for position, draft in enumerate(drafts):
            if isinstance(draft, Failed):
                plans.append(draft)
                continue
            keys = recipient_keys(draft.recipient_phone, draft.recipient_email)
            if any(key in active for key in keys):
                existing_id = next((active[key] for key in keys if active.get(key) is not None), None)
                plans.append(
                    Duplicate(
                        index=position,
                        item=rows[position],
                        existing_id=existing_id,
                        reason="ACTIVE_INVITATION_EXISTS" if existing_id else "DUPLICATE_IN_PAYLOAD",
                    )
                )
                continue
            for key in keys:
                active[key] = None
            if draft.contact_id is None:
                match = known_contacts.match(
                    NormalizedContact(phone=draft.recipient_phone, email=draft.recipient_email)
                )
                if match is not None:
                    draft = replace(draft, contact_id=match.contact_id)
            plans.append(draft)
        return plans

    async def _send_planned(
        self,
        owner_id: str,
        index: int,
        row: Mapping[str, Any],
        draft: InvitationDraft,
        referral_code: str,
        batch_id: int,
        inviter_name: str | None,
        send_order: SendOrder,
    ) -> Created | Failed:
        invitation = self._new_invitation(owner_id, draft, referral_code, batch_id=batch_id)
        async with self._session_factory() as session:
            if draft.contact_id is None:
                first_name, _, last_name = (draft.recipient_name or "").partition(" ")
                incoming = NormalizedContact(
                    first_name=first_name or None,
                    last_name=last_name.strip() or None,
                    phone=draft.recipient_phone,
                    email=draft.recipient_email,
                )
                contact = Contact(
                    owner_id=owner_id,
                    **incoming.as_dict(),
                    source=ContactSource.INVITATION,
                    tags=[],
                    field_versions=field_versions_for(incoming.provided(), invitation.created_at),
                    created_at=invitation.created_at,
                    updated_at=invitation.created_at,
                )
                session.add(contact)
                try:
                    await session.flush()
                    invitation.contact_id = contact.id
                except IntegrityError:
                    # Created by a concurrent request; link to it instead.
                    await session.rollback()
                    invitation.contact_id = await find_existing_id(session, owner_id, incoming)
            session.add(invitation)
            await session.flush()
            session.add(self.state_machine.log(invitation, InvitationAction.CREATED, {"batch_id": batch_id}))
            await session.commit()

        report = await self._deliver_and_record(invitation, inviter_name, send_order.turn(index))
        if not report.any_success:
            return Failed(
                index=index,
                item=row,
                reason="DELIVERY_FAILED",
                details={"invitation_id": invitation.id, "errors": report.errors},
            )
        return Created(
            index=index,
            item=row,
            value={
                "invitation_id": invitation.id,
                "status": invitation.status.value,
                "channels": {name: result.success for name, result in report.results.items()},
            },
        )

    async def _active_by_recipient(
        self, session: AsyncSession, owner_id: str, drafts: Sequence[InvitationDraft]
    ) -> dict[str, int | None]:
        phones = {draft.recipient_phone for draft in drafts if draft.recipient_phone}
        emails = {draft.recipient_email for draft in drafts if draft.recipient_email}
        clauses = []
        if phones:
            clauses.append(Invitation.recipient_phone.in_(phones))
        if emails:
            clauses.append(Invitation.recipient_email.in_(emails))
        if not clauses:
            return {}
        result = await session.execute(
            select(Invitation).where(
                Invitation.owner_id == owner_id,
                Invitation.status.in_(ACTIVE_STATUSES),
                or_(*clauses),
            )
        )
        active: dict[str, int | None] = {}
        for invitation in result.scalars():
            for key in recipient_keys(invitation.recipient_phone, invitation.recipient_email):
                active.setdefault(key, invitation.id)
        return active

    async def _active_invitation_for(
        self, session: AsyncSession, owner_id: str, phone: str | None, email: str | None
    ) -> Invitation | None:
        clauses = []
        if phone:
            clauses.append(Invitation.recipient_phone == phone)
        if email:
            clauses.append(Invitation.recipient_email == email)
        result = await session.execute(
            select(Invitation)
            .where(Invitation.owner_id == owner_id, Invitation.status.in_(ACTIVE_STATUSES), or_(*clauses))
            .order_by(Invitation.id)
            .limit(1)
        )
        return result.scalars().first()

    # -- lifecycle ------------------------------------------------------

    async def get(self, session: AsyncSession, owner_id: str, invitation_id: int) -> Invitation:
        invitation = await session.get(Invitation, invitation_id)
        if invitation is None or invitation.owner_id != owner_id:
            raise NotFoundError("Invitation not found", details={"invitation_id": invitation_id})
        return invitation

    async def list_invitations(
        self,
        session: AsyncSession,
        owner_id: str,
        *,
        status: InvitationStatus | None = None,
        invitation_type: InvitationType | None = None,
        page: int = 1,
        size: int = 20,
    ) -> tuple[list[Invitation], int]:
        filters = [Invitation.owner_id == owner_id]
        if status is not None:
            filters.append(Invitation.status == status)
        if invitation_type is not None:
            filters.append(Invitation.invitation_type == invitation_type)
        total = await session.scalar(select(func.count(Invitation.id)).where(*filters))
        result = await session.execute(
            select(Invitation)
            .where(*filters)
            .order_by(Invitation.created_at.desc(), Invitation.id.desc())
            .offset((page - 1) * size)
            .limit(size)
        )
        return list(result.scalars()), int(total or 0)

    async def history(self, session: AsyncSession, owner_id: str, invitation_id: int) -> list[InvitationLog]:
        await self.get(session, owner_id, invitation_id)
        result = await session.execute(
            select(InvitationLog)
            .where(InvitationLog.invitation_id == invitation_id)
            .order_by(InvitationLog.created_at, InvitationLog.id)
        )
        return list(result.scalars())

    async def cancel(self, session: AsyncSession, owner_id: str, invitation_id: int) -> Invitation:
        invitation = await self.get(session, owner_id, invitation_id)
        session.add(self.state_machine.cancel(invitation, reason="cancelled_by_inviter"))
        await session.commit()
        return invitation

    async def resend(
        self,
        session: AsyncSession,
        owner_id: str,
        invitation_id: int,
        *,
        delivery_method: DeliveryMethod | None = None,
        message: str | None = None,
        inviter_name: str | None = None,
    ) -> Invitation:
        """Redeliver on the same record and token."""

        invitation = await self.get(session, owner_id, invitation_id)
        if delivery_method is not None:
            build_draft(
                {
                    "recipient_phone": invitation.recipient_phone,
                    "recipient_email": invitation.recipient_email,
                    "delivery_method": delivery_method,
                }
            )
            invitation.delivery_method = delivery_method
        if message is not None:
            invitation.message = clean_text(message)

        logs = self.state_machine.reopen_for_resend(
            invitation,
            window_days=self.settings.resend_window_days,
            expires_in_days=self.settings.invitation_expiry_days,
        )
        session.add_all(logs)
        await session.commit()
        session.expunge(invitation)

        report = await self._send(invitation, inviter_name)
        self._apply_report(invitation, report)
        await self._persist(invitation, self.state_machine.mark_resent(invitation, delivered=report.any_success))
        logger.info(
            "Invitation resent",
            extra={"invitation_id": invitation.id, "delivered": report.any_success},
        )
        return invitation

    async def _by_token(self, session: AsyncSession, token: str) -> Invitation:
        invitation = await session.scalar(select(Invitation).where(Invitation.invite_token == token))
        if invitation is None:
            raise TokenError("Invitation token not found", code="INVALID_TOKEN")
        return invitation

    async def _expire_if_due(self, session: AsyncSession, invitation: Invitation) -> None:
        log = self.state_machine.expire_if_due(invitation)
        if log is not None:
            session.add(log)
            await session.commit()

    async def accept(self, session: AsyncSession, token: str, data: Mapping[str, Any] | None = None) -> Invitation:
        invitation = await self._use_token(
            session, token, lambda current: self.state_machine.accept(current, dict(data or {}))
        )
        logger.info("Invitation accepted", extra={"invitation_id": invitation.id})
        return invitation

    async def click(self, session: AsyncSession, token: str, details: Mapping[str, Any] | None = None) -> Invitation:
        return await self._use_token(
            session, token, lambda current: self.state_machine.click(current, dict(details or {}))
        )

    async def _use_token(
        self,
        session: AsyncSession,
        token: str,
        apply: Callable[[Invitation], list[InvitationLog]],
    ) -> Invitation:
        """Apply a token action as a compare-and-set on the invitation's version.

        A concurrent writer makes the commit fail with ``StaleDataError``; the
        row is then reloaded and the token checked again, so the loser of two
        simultaneous accepts sees ``TOKEN_ALREADY_USED`` and writes nothing.
        """

        for _ in range(TOKEN_ATTEMPTS):
            invitation = await self._by_token(session, token)
            invitation_id = invitation.id
            try:
                await self._expire_if_due(session, invitation)
                session.add_all(apply(invitation))
                await session.commit()
            except StaleDataError:
                await session.rollback()
                logger.info("Invitation changed concurrently", extra={"invitation_id": invitation_id})
                continue
            return invitation
        raise ConflictError(
            "Invitation is being updated concurrently, try again",
            details={"invitation_id": invitation_id},
        )

    async def expire_due(self, session: AsyncSession) -> int:
        """Expire every pending or sent invitation past its expiry."""

        now = self._clock()
        result = await session.execute(
            select(Invitation).where(
                Invitation.status.in_([InvitationStatus.PENDING, InvitationStatus.SENT]),
                Invitation.expires_at <= now,
            )
        )
        expired = 0
        for invitation in result.scalars():
            session.add(self.state_machine.expire(invitation))
            expired += 1
        await session.commit()
        if expired:
            logger.info("Expired invitations", extra={"count": expired})
        return expired

    # -- batches --------------------------------------------------------

    async def list_batches(self, session: AsyncSession, owner_id: str) -> list[InvitationBatch]:
        result = await session.execute(
            select(InvitationBatch)
            .where(InvitationBatch.owner_id == owner_id)
            .order_by(InvitationBatch.created_at.desc(), InvitationBatch.id.desc())
        )
        return list(result.scalars())

    async def get_batch(self, session: AsyncSession, owner_id: str, batch_id: int) -> InvitationBatch:
        batch = await session.get(InvitationBatch, batch_id)
        if batch is None or batch.owner_id != owner_id:
            raise NotFoundError("Invitation batch not found", details={"batch_id": batch_id})
        return batch

    # -- provider webhooks ----------------------------------------------

    async def record_sms_status(
        self, session: AsyncSession, message_sid: str, message_status: str, error_code: str | None = None
    ) -> Invitation | None:
        invitation = await session.scalar(select(Invitation).where(Invitation.sms_message_id == message_sid))
        if invitation is None:
            logger.info("SMS status for unknown message", extra={"message_sid": message_sid})
            return None
        await self._record_provider_event(session, invitation, "sms", message_status.lower(), error_code)
        return invitation

    async def record_email_events(self, session: AsyncSession, events: Sequence[Mapping[str, Any]]) -> int:
        matched = 0
        for event in events:
            raw_id = str(event.get("sg_message_id") or "")
            message_id = raw_id.split(".", 1)[0]
            if not message_id:
                continue
            invitation = await session.scalar(
                select(Invitation).where(Invitation.email_message_id == message_id)
            )
            if invitation is None:
                continue
            matched += 1
            await self._record_provider_event(
                session, invitation, "email", str(event.get("event") or "").lower(), event.get("reason")
            )
        return matched

    async def _record_provider_event(
        self,
        session: AsyncSession,
        invitation: Invitation,
        channel: str,
        event: str,
        error: str | None,
    ) -> None:
        details = {"channel": channel, "event": event}
        if event == "delivered":
            if can_transition(invitation.status, InvitationStatus.DELIVERED):
                session.add(self.state_machine.transition(invitation, InvitationStatus.DELIVERED, details=details))
            else:
                session.add(self.state_machine.log(invitation, InvitationAction.DELIVERED, details))
        elif event == "click" and can_transition(invitation.status, InvitationStatus.CLICKED):
            session.add(self.state_machine.transition(invitation, InvitationStatus.CLICKED, details=details))
        elif event in {"failed", "undelivered", "bounce", "dropped"}:
            results = dict(invitation.delivery_results or {})
            channel_result = dict(results.get(channel) or {"channel": channel})
            channel_result.update(success=False, error=event, error_code=error)
            results[channel] = channel_result
            invitation.delivery_results = results
            invitation.error_messages = [*(invitation.error_messages or []), f"{channel}: {event}"]
            session.add(self.state_machine.log(invitation, InvitationAction.FAILED, {**details, "error": error}))
        else:
            return
        await session.commit()

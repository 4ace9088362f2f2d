"""Referral codes: one stable code per owner, resolved on referral link visits."""
from __future__ import annotations

import logging
import random
import re
from dataclasses import dataclass

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from contacthub.core.errors import ContactHubError, NotFoundError
from contacthub.models import Invitation, InvitationAction, InvitationStatus, ReferralCode
from contacthub.services.invitation_state import InvitationStateMachine, can_transition
from contacthub.services.normalizer import normalize_email, normalize_phone

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "FIXR"
MAX_GENERATION_ATTEMPTS = 10
_NON_LETTERS = re.compile(r"[^A-Za-z]")


def code_prefix(owner_name: str | None) -> str:
    letters = _NON_LETTERS.sub("", owner_name or "")[:4].upper()
    return letters or DEFAULT_PREFIX


@dataclass
class ReferralVisit:
    code: str
    owner_id: str
    invitation_id: int | None
    status: str | None


class ReferralCodeService:
    def __init__(self, state_machine: InvitationStateMachine, rng: random.Random | None = None) -> None:
        self.state_machine = state_machine
        self._rng = rng or random.SystemRandom()

    def _candidate(self, prefix: str) -> str:
        return f"{prefix}{self._rng.randint(1000, 9999)}"

    async def get_or_create(self, session: AsyncSession, owner_id: str, owner_name: str | None = None) -> str:
        """Return the owner's code, generating and storing one on first use."""

        existing = await self._lookup_owner(session, owner_id)
        if existing is not None:
            return existing.code

        prefix = code_prefix(owner_name)
        for attempt in range(1, MAX_GENERATION_ATTEMPTS + 1):
            candidate = self._candidate(prefix)
            taken = await session.scalar(select(ReferralCode.id).where(ReferralCode.code == candidate))
            if taken is not None:
                logger.info("Referral code collision", extra={"code": candidate, "attempt": attempt})
                continue
            session.add(ReferralCode(owner_id=owner_id, code=candidate))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                # Another request may have created this owner's code meanwhile.
                existing = await self._lookup_owner(session, owner_id)
                if existing is not None:
                    return existing.code
                continue
            logger.info("Referral code created", extra={"owner_id": owner_id, "code": candidate})
            return candidate

        raise ContactHubError(
            "Failed to generate a unique referral code", code="REFERRAL_CODE_UNAVAILABLE"
        )

    async def resolve(self, session: AsyncSession, code: str) -> ReferralCode:
        referral = await session.scalar(select(ReferralCode).where(ReferralCode.code == code.upper()))
        if referral is None:
            raise NotFoundError("Referral code not found", details={"code": code})
        return referral

    async def record_visit(
        self,
        session: AsyncSession,
        code: str,
        *,
        phone: str | None = None,
        email: str | None = None,
    ) -> ReferralVisit:
        """Attribute a referral link visit to the code's owner.

        When exactly one outstanding invitation of the owner matches the
        visitor, it is marked clicked; otherwise the visit is attributed to the
        owner only.
        """

        referral = await self.resolve(session, code)
        stmt = select(Invitation).where(
            Invitation.owner_id == referral.owner_id,
            Invitation.referral_code == referral.code,
            Invitation.status.in_([InvitationStatus.SENT, InvitationStatus.DELIVERED, InvitationStatus.CLICKED]),
        )
        clauses = []
        phone_value = normalize_phone(phone)
        email_value = normalize_email(email)
        if phone_value:
            clauses.append(Invitation.recipient_phone == phone_value)
        if email_value:
            clauses.append(Invitation.recipient_email == email_value)
        if not clauses:
            return ReferralVisit(referral.code, referral.owner_id, None, None)

        candidates = list((await session.scalars(stmt.where(or_(*clauses)))).all())
        if len(candidates) != 1:
            logger.info(
                "Referral visit not matched to a single invitation",
                extra={"code": referral.code, "candidates": len(candidates)},
            )
            return ReferralVisit(referral.code, referral.owner_id, None, None)

        invitation = candidates[0]
        details = {"referral_code": referral.code, "via": "referral_link"}
        if self.state_machine.is_past_expiry(invitation):
            return ReferralVisit(referral.code, referral.owner_id, invitation.id, invitation.status.value)
        if can_transition(invitation.status, InvitationStatus.CLICKED):
            session.add(self.state_machine.transition(invitation, InvitationStatus.CLICKED, details=details))
        else:
            session.add(self.state_machine.log(invitation, InvitationAction.CLICKED, {**details, "repeat": True}))
        await session.commit()
        return ReferralVisit(referral.code, referral.owner_id, invitation.id, invitation.status.value)

    async def _lookup_owner(self, session: AsyncSession, owner_id: str) -> ReferralCode | None:
        return await session.scalar(select(ReferralCode).where(ReferralCode.owner_id == owner_id))

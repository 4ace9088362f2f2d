"""Invitation lifecycle: allowed transitions, timestamps and audit log entries."""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from contacthub.core.errors import InvalidTransitionError, TokenError
from contacthub.models import (
    Invitation,
    InvitationAction,
    InvitationLog,
    InvitationStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

S = InvitationStatus

TRANSITIONS: dict[InvitationStatus, frozenset[InvitationStatus]] = {
    S.PENDING: frozenset({S.SENT, S.EXPIRED, S.CANCELLED, S.FAILED}),
    S.SENT: frozenset({S.DELIVERED, S.CLICKED, S.EXPIRED, S.CANCELLED}),
    S.DELIVERED: frozenset({S.CLICKED, S.ACCEPTED, S.CANCELLED}),
    S.CLICKED: frozenset({S.ACCEPTED, S.CANCELLED}),
    S.ACCEPTED: frozenset(),
    S.EXPIRED: frozenset(),
    S.CANCELLED: frozenset(),
    S.FAILED: frozenset(),
}

TIMESTAMP_FIELDS: dict[InvitationStatus, str] = {
    S.SENT: "sent_at",
    S.DELIVERED: "delivered_at",
    S.CLICKED: "clicked_at",
    S.ACCEPTED: "accepted_at",
    S.CANCELLED: "cancelled_at",
    S.FAILED: "failed_at",
}

# Invitations in these states still count as outstanding for a recipient.
ACTIVE_STATUSES = frozenset({S.PENDING, S.SENT, S.DELIVERED, S.CLICKED})
RESENDABLE_STATUSES = frozenset({S.PENDING, S.SENT, S.DELIVERED, S.CLICKED, S.FAILED, S.EXPIRED})


def can_transition(current: InvitationStatus, target: InvitationStatus) -> bool:
    return target in TRANSITIONS[S(current)]


class InvitationStateMachine:
    """Applies state changes to ``Invitation`` rows.

    Methods mutate the invitation in place and return the ``InvitationLog``
    rows describing what happened; callers add them to their session. Nothing
    is written when a transition is rejected.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def transition(
        self,
        invitation: Invitation,
        target: InvitationStatus,
        *,
        details: dict[str, Any] | None = None,
        at: datetime | None = None,
    ) -> InvitationLog:
        current = S(invitation.status)
        if not can_transition(current, target):
            raise InvalidTransitionError(
                f"Cannot move invitation from {current.value} to {target.value}",
                details={"invitation_id": invitation.id, "from": current.value, "to": target.value},
            )
        moment = at or self.now()
        invitation.status = target
        stamp = TIMESTAMP_FIELDS.get(target)
        if stamp is not None:
            setattr(invitation, stamp, moment)
        invitation.updated_at = moment
        logger.info(
            "Invitation transition",
            extra={"invitation_id": invitation.id, "from": current.value, "to": target.value},
        )
        return self.log(invitation, InvitationAction(target.value), details, at=moment)

    def log(
        self,
        invitation: Invitation,
        action: InvitationAction,
        details: dict[str, Any] | None = None,
        *,
        at: datetime | None = None,
    ) -> InvitationLog:
        return InvitationLog(
            invitation_id=invitation.id,
            action=action,
            details=dict(details or {}),
            created_at=at or self.now(),
        )

    def is_past_expiry(self, invitation: Invitation, at: datetime | None = None) -> bool:
        return (at or self.now()) >= invitation.expires_at

    def expire_if_due(self, invitation: Invitation) -> InvitationLog | None:
        """Mark a pending or sent invitation expired once ``expires_at`` has passed."""

        if S(invitation.status) in (S.PENDING, S.SENT) and self.is_past_expiry(invitation):
            return self.expire(invitation)
        return None

    def check_token_usable(self, invitation: Invitation) -> None:
        """Raise ``TokenError`` when the invitation can no longer be used."""

        status = S(invitation.status)
        if status is S.ACCEPTED:
            raise TokenError("Invitation has already been accepted", code="TOKEN_ALREADY_USED")
        if status is S.CANCELLED:
            raise TokenError("Invitation was cancelled", code="INVITATION_CANCELLED")
        if status is S.EXPIRED or self.is_past_expiry(invitation):
            raise TokenError("Invitation has expired", code="TOKEN_EXPIRED")
        if status is S.FAILED:
            raise TokenError("Invitation was never delivered", code="INVALID_TOKEN")

    def click(self, invitation: Invitation, details: dict[str, Any] | None = None) -> list[InvitationLog]:
        """Record a link visit. Repeat visits are logged without a state change."""

        self.check_token_usable(invitation)
        status = S(invitation.status)
        if status is S.CLICKED:
            return [self.log(invitation, InvitationAction.CLICKED, {**(details or {}), "repeat": True})]
        return [self.transition(invitation, S.CLICKED, details=details)]

    def accept(self, invitation: Invitation, data: dict[str, Any] | None = None) -> list[InvitationLog]:
        """Consume the single-use token; ``sent`` records the implicit click first."""

        self.check_token_usable(invitation)
        logs: list[InvitationLog] = []
        if S(invitation.status) is S.SENT:
            logs.append(self.transition(invitation, S.CLICKED, details={"implicit": True}))
        logs.append(self.transition(invitation, S.ACCEPTED, details=data))
        invitation.acceptance_data = dict(data or {})
        return logs

    def cancel(self, invitation: Invitation, reason: str | None = None) -> InvitationLog:
        return self.transition(invitation, S.CANCELLED, details={"reason": reason} if reason else None)

    def expire(self, invitation: Invitation) -> InvitationLog:
        return self.transition(invitation, S.EXPIRED, details={"expires_at": invitation.expires_at.isoformat()})

    def reopen_for_resend(
        self,
        invitation: Invitation,
        *,
        window_days: int,
        expires_in_days: int,
    ) -> list[InvitationLog]:
        """Prepare an invitation for redelivery on the same record and token.

        ``failed`` and ``expired`` invitations inside the resend window are
        moved back to ``sent`` with a renewed expiry once delivery succeeds;
        this only validates and bumps the resend counters.
        """

        status = S(invitation.status)
        if status not in RESENDABLE_STATUSES:
            raise InvalidTransitionError(
                f"Cannot resend an invitation that is {status.value}",
                details={"invitation_id": invitation.id, "status": status.value},
            )
        moment = self.now()
        if status in (S.FAILED, S.EXPIRED) and moment > invitation.created_at + timedelta(days=window_days):
            raise InvalidTransitionError(
                f"Resend window of {window_days} days has passed",
                code="RESEND_WINDOW_EXPIRED",
                details={"invitation_id": invitation.id},
            )
        invitation.resent_count = (invitation.resent_count or 0) + 1
        invitation.last_resent_at = moment
        invitation.updated_at = moment
        if status in (S.FAILED, S.EXPIRED) or self.is_past_expiry(invitation, moment):
            invitation.expires_at = moment + timedelta(days=expires_in_days)
        return [
            self.log(
                invitation,
                InvitationAction.RESENT,
                {"previous_status": status.value, "resent_count": invitation.resent_count},
                at=moment,
            )
        ]

    def mark_resent(self, invitation: Invitation, *, delivered: bool) -> list[InvitationLog]:
        """Apply the outcome of a resend attempt."""

        status = S(invitation.status)
        if not delivered:
            return [self.log(invitation, InvitationAction.FAILED, {"resend": True})]
        if status in (S.FAILED, S.EXPIRED, S.PENDING):
            # Resend revives the record outside the normal transition table.
            moment = self.now()
            invitation.status = S.SENT
            invitation.sent_at = moment
            invitation.updated_at = moment
            logger.info(
                "Invitation revived by resend",
                extra={"invitation_id": invitation.id, "from": status.value, "to": S.SENT.value},
            )
            return [self.log(invitation, InvitationAction.SENT, {"resend": True, "from": status.value}, at=moment)]
        return []

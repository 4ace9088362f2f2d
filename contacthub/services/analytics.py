"""Read-only invitation analytics."""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from contacthub.models import Invitation, InvitationAction, InvitationLog, InvitationStatus, InvitationType
from contacthub.models.base import as_naive_utc

FUNNEL_STAGES = ("total", "sent", "delivered", "clicked", "accepted", "expired", "cancelled", "failed")


@dataclass
class InvitationAnalytics:
    groups: list[dict[str, Any]] = field(default_factory=list)
    funnel: dict[str, int] = field(default_factory=dict)
    acceptance_rate: float = 0.0
    average_hours_to_accept: float | None = None
    total_clicks: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "groups": self.groups,
            "funnel": self.funnel,
            "acceptance_rate": self.acceptance_rate,
            "average_hours_to_accept": self.average_hours_to_accept,
            "total_clicks": self.total_clicks,
        }


def acceptance_rate(accepted: int, sent: int) -> float:
    """Share of sent invitations that were accepted; 0 when nothing was sent."""

    if sent <= 0:
        return 0.0
    return round(accepted / sent, 4)


class AnalyticsAggregator:
    async def summarize(
        self,
        session: AsyncSession,
        owner_id: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        invitation_type: InvitationType | None = None,
    ) -> InvitationAnalytics:
        filters = [Invitation.owner_id == owner_id]
        if start is not None:
            filters.append(Invitation.created_at >= as_naive_utc(start))
        if end is not None:
            filters.append(Invitation.created_at <= as_naive_utc(end))
        if invitation_type is not None:
            filters.append(Invitation.invitation_type == invitation_type)

        rows = (
            await session.execute(
                select(
                    Invitation.invitation_type,
                    Invitation.delivery_method,
                    Invitation.status,
                    Invitation.sent_at,
                    Invitation.delivered_at,
                    Invitation.clicked_at,
                    Invitation.accepted_at,
                ).where(*filters)
            )
        ).all()

        groups: Counter[tuple[str, str, str]] = Counter()
        funnel = dict.fromkeys(FUNNEL_STAGES, 0)
        accept_hours: list[float] = []
        for inv_type, method, status, sent_at, delivered_at, clicked_at, accepted_at in rows:
            groups[(inv_type.value, method.value, status.value)] += 1
            funnel["total"] += 1
            funnel["sent"] += sent_at is not None
            funnel["delivered"] += delivered_at is not None
            funnel["clicked"] += clicked_at is not None
            funnel["accepted"] += status is InvitationStatus.ACCEPTED
            funnel["expired"] += status is InvitationStatus.EXPIRED
            funnel["cancelled"] += status is InvitationStatus.CANCELLED
            funnel["failed"] += status is InvitationStatus.FAILED
            if status is InvitationStatus.ACCEPTED and sent_at is not None and accepted_at is not None:
                accept_hours.append((accepted_at - sent_at).total_seconds() / 3600)

        clicks = await session.scalar(
            select(func.count(InvitationLog.id))
            .join(Invitation, Invitation.id == InvitationLog.invitation_id)
            .where(InvitationLog.action == InvitationAction.CLICKED, *filters)
        )

        return InvitationAnalytics(
            groups=[
                {"invitation_type": key[0], "delivery_method": key[1], "status": key[2], "count": count}
                for key, count in sorted(groups.items())
            ],
            funnel=funnel,
            acceptance_rate=acceptance_rate(funnel["accepted"], funnel["sent"]),
            average_hours_to_accept=round(sum(accept_hours) / len(accept_hours), 2) if accept_hours else None,
            total_clicks=int(clicks or 0),
        )

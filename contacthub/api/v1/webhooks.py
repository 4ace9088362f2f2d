"""Delivery status callbacks from the SMS and email providers."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Form
from sqlalchemy.ext.asyncio import AsyncSession

from contacthub.api.v1.common import data_response
from contacthub.api.v1.deps import get_services
from contacthub.core.db import get_session
from contacthub.schemas import EmailEvent
from contacthub.services.registry import ServiceRegistry

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/sms/status")
async def sms_status_callback(
    message_sid: str = Form(..., alias="MessageSid"),
    message_status: str = Form(..., alias="MessageStatus"),
    error_code: str | None = Form(None, alias="ErrorCode"),
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, dict[str, Any]]:
    invitation = await services.invitations.record_sms_status(session, message_sid, message_status, error_code)
    return data_response(
        {
            "matched": invitation is not None,
            "invitation_id": invitation.id if invitation else None,
            "status": invitation.status.value if invitation else None,
        }
    )


@router.post("/email/events")
async def email_event_callback(
    events: list[EmailEvent],
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, dict[str, int]]:
    matched = await services.invitations.record_email_events(
        session, [event.model_dump() for event in events]
    )
    return data_response({"received": len(events), "matched": matched})

"""Invitation API routes."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from contacthub.api.v1.common import data_response, page_response
from contacthub.api.v1.deps import BULK_OPS, RESEND_OPS, get_owner_id, get_owner_name, get_services, rate_limit
from contacthub.core.db import get_session
from contacthub.models import InvitationStatus, InvitationType
from contacthub.schemas import (
    BatchResultRead,
    InvitationAccept,
    InvitationBatchRead,
    InvitationBulkCreate,
    InvitationCreate,
    InvitationLogRead,
    InvitationPublicRead,
    InvitationRead,
    InvitationResend,
)
from contacthub.services.registry import ServiceRegistry

router = APIRouter(prefix="/invitations", tags=["invitations"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_invitation(
    payload: InvitationCreate,
    owner_id: str = Depends(get_owner_id),
    owner_name: str | None = Depends(get_owner_name),
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, InvitationRead]:
    """Create an invitation and deliver it on the requested channels."""

    invitation = await services.invitations.create(
        session, owner_id, payload.model_dump(exclude_none=True), inviter_name=owner_name
    )
    return data_response(InvitationRead.model_validate(invitation))


@router.post("/bulk", dependencies=[Depends(rate_limit(BULK_OPS))])
async def bulk_create_invitations(
    payload: InvitationBulkCreate,
    owner_id: str = Depends(get_owner_id),
    owner_name: str | None = Depends(get_owner_name),
    services: ServiceRegistry = Depends(get_services),
) -> dict[str, BatchResultRead]:
    """Invite many recipients; per-item outcomes are reported, not raised."""

    result = await services.invitations.bulk_create(
        owner_id,
        items=[item.model_dump(exclude_none=True) for item in payload.items],
        contact_ids=payload.contact_ids,
        options=payload.shared_options(),
        batch_name=payload.batch_name,
        inviter_name=owner_name,
    )
    return data_response(BatchResultRead.from_result(result))


@router.get("")
async def list_invitations(
    status_filter: InvitationStatus | None = Query(None, alias="status"),
    invitation_type: InvitationType | None = Query(None, alias="type"),
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    owner_id: str = Depends(get_owner_id),
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    invitations, total = await services.invitations.list_invitations(
        session, owner_id, status=status_filter, invitation_type=invitation_type, page=page, size=size
    )
    return page_response([InvitationRead.model_validate(item) for item in invitations], total, page, size)


@router.get("/batches")
async def list_invitation_batches(
    owner_id: str = Depends(get_owner_id),
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, list[InvitationBatchRead]]:
    batches = await services.invitations.list_batches(session, owner_id)
    return data_response([InvitationBatchRead.model_validate(batch) for batch in batches])


@router.get("/batches/{batch_id}")
async def retrieve_invitation_batch(
    batch_id: int,
    owner_id: str = Depends(get_owner_id),
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, InvitationBatchRead]:
    batch = await services.invitations.get_batch(session, owner_id, batch_id)
    return data_response(InvitationBatchRead.model_validate(batch))


@router.get("/analytics")
async def invitation_analytics(
    start: datetime | None = None,
    end: datetime | None = None,
    invitation_type: InvitationType | None = Query(None, alias="type"),
    owner_id: str = Depends(get_owner_id),
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, dict[str, Any]]:
    """Funnel counts and acceptance rate for the caller's invitations."""

    summary = await services.analytics.summarize(
        session, owner_id, start=start, end=end, invitation_type=invitation_type
    )
    return data_response(summary.to_dict())


@router.post("/expire")
async def expire_invitations(
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, dict[str, int]]:
    """Expire every outstanding invitation past its expiry; meant for a scheduler."""

    expired = await services.invitations.expire_due(session)
    return data_response({"expired": expired})


@router.post("/accept/{token}")
async def accept_invitation(
    token: str,
    payload: InvitationAccept | None = Body(default=None),
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, InvitationPublicRead]:
    data = payload.model_dump(exclude_none=True) if payload else {}
    invitation = await services.invitations.accept(session, token, data)
    return data_response(InvitationPublicRead.model_validate(invitation))


@router.post("/click/{token}")
async def track_click(
    token: str,
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, InvitationPublicRead]:
    invitation = await services.invitations.click(session, token, {"via": "invite_link"})
    return data_response(InvitationPublicRead.model_validate(invitation))


@router.get("/{invitation_id}")
async def retrieve_invitation(
    invitation_id: int,
    owner_id: str = Depends(get_owner_id),
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, InvitationRead]:
    invitation = await services.invitations.get(session, owner_id, invitation_id)
    return data_response(InvitationRead.model_validate(invitation))


@router.get("/{invitation_id}/history")
async def invitation_history(
    invitation_id: int,
    owner_id: str = Depends(get_owner_id),
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, list[InvitationLogRead]]:
    logs = await services.invitations.history(session, owner_id, invitation_id)
    return data_response([InvitationLogRead.model_validate(log) for log in logs])


@router.post("/{invitation_id}/resend", dependencies=[Depends(rate_limit(RESEND_OPS))])
async def resend_invitation(
    invitation_id: int,
    payload: InvitationResend | None = Body(default=None),
    owner_id: str = Depends(get_owner_id),
    owner_name: str | None = Depends(get_owner_name),
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, InvitationRead]:
    """Redeliver an invitation on the same record and token."""

    payload = payload or InvitationResend()
    invitation = await services.invitations.resend(
        session,
        owner_id,
        invitation_id,
        delivery_method=payload.delivery_method,
        message=payload.message,
        inviter_name=owner_name,
    )
    return data_response(InvitationRead.model_validate(invitation))


@router.delete("/{invitation_id}")
async def cancel_invitation(
    invitation_id: int,
    owner_id: str = Depends(get_owner_id),
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, InvitationRead]:
    invitation = await services.invitations.cancel(session, owner_id, invitation_id)
    return data_response(InvitationRead.model_validate(invitation))

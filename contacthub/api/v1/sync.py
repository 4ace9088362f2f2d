"""Device address-book sync endpoints."""
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from contacthub.api.v1.common import data_response
from contacthub.api.v1.deps import BULK_OPS, get_owner_id, get_services, rate_limit
from contacthub.core.db import get_session
from contacthub.schemas import BatchResultRead, SyncRequest, SyncResultRead, SyncSessionRead
from contacthub.services.registry import ServiceRegistry

router = APIRouter(prefix="/contacts", tags=["sync"])


@router.post("/sync", dependencies=[Depends(rate_limit(BULK_OPS))])
async def sync_contacts(
    payload: SyncRequest,
    owner_id: str = Depends(get_owner_id),
    services: ServiceRegistry = Depends(get_services),
) -> dict[str, SyncResultRead]:
    """Reconcile a device's contacts with the stored ones."""

    outcome = await services.sync.sync(
        owner_id,
        device_id=payload.device_id,
        sync_type=payload.sync_type,
        contacts=payload.contacts,
        last_sync_time=payload.last_sync_time,
        confirm_deletions=payload.confirm_deletions,
    )
    return data_response(
        SyncResultRead(
            session=SyncSessionRead.model_validate(outcome.session),
            result=BatchResultRead.from_result(outcome.result),
        )
    )


@router.get("/sync-sessions")
async def list_sync_sessions(
    owner_id: str = Depends(get_owner_id),
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, list[SyncSessionRead]]:
    records = await services.sync.list_sessions(session, owner_id)
    return data_response([SyncSessionRead.model_validate(record) for record in records])


@router.get("/sync-sessions/{session_id}")
async def retrieve_sync_session(
    session_id: int,
    owner_id: str = Depends(get_owner_id),
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, SyncSessionRead]:
    record = await services.sync.get_session(session, owner_id, session_id)
    return data_response(SyncSessionRead.model_validate(record))

"""Contacts API routes."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from contacthub.api.v1.common import data_response, page_response
from contacthub.api.v1.deps import BULK_OPS, CONTACT_OPS, get_owner_id, get_services, rate_limit
from contacthub.core.db import get_session
from contacthub.models import ContactSource
from contacthub.schemas import BatchResultRead, BulkContactsRequest, ContactCreate, ContactRead, ContactUpdate
from contacthub.services.registry import ServiceRegistry

router = APIRouter(prefix="/contacts", tags=["contacts"])


@router.post("", status_code=status.HTTP_201_CREATED, dependencies=[Depends(rate_limit(CONTACT_OPS))])
async def create_contact(
    payload: ContactCreate,
    owner_id: str = Depends(get_owner_id),
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, ContactRead]:
    """Create a contact; duplicates and conflicting records are rejected."""

    contact = await services.contacts.create(session, owner_id, payload.model_dump(exclude_none=True))
    return data_response(ContactRead.model_validate(contact))


@router.get("", dependencies=[Depends(rate_limit(CONTACT_OPS))])
async def list_contacts(
    search: str | None = None,
    tag: str | None = None,
    source: ContactSource | None = None,
    favorites: bool | None = None,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    sort: str = "name",
    owner_id: str = Depends(get_owner_id),
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """List contacts with optional filtering and pagination."""

    contacts, total = await services.contacts.list_contacts(
        session,
        owner_id,
        search=search,
        tag=tag,
        source=source,
        favorites=favorites,
        page=page,
        size=size,
        sort=sort,
    )
    return page_response([ContactRead.model_validate(contact) for contact in contacts], total, page, size)


@router.get("/stats")
async def contact_stats(
    owner_id: str = Depends(get_owner_id),
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, dict[str, Any]]:
    return data_response(await services.contacts.stats(session, owner_id))


@router.get("/search/{identifier}", dependencies=[Depends(rate_limit(CONTACT_OPS))])
async def search_by_identifier(
    identifier: str,
    owner_id: str = Depends(get_owner_id),
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, list[ContactRead]]:
    """Find contacts by exact phone number or email address."""

    contacts = await services.contacts.find_by_identifier(session, owner_id, identifier)
    return data_response([ContactRead.model_validate(contact) for contact in contacts])


@router.post("/bulk", dependencies=[Depends(rate_limit(BULK_OPS))])
async def bulk_create_contacts(
    payload: BulkContactsRequest,
    owner_id: str = Depends(get_owner_id),
    services: ServiceRegistry = Depends(get_services),
) -> dict[str, BatchResultRead]:
    """Create many contacts; per-item outcomes are reported, not raised."""

    result = await services.contacts.bulk_create(owner_id, payload.contacts, batch_name=payload.batch_name)
    return data_response(BatchResultRead.from_result(result))


@router.get("/{contact_id}", dependencies=[Depends(rate_limit(CONTACT_OPS))])
async def retrieve_contact(
    contact_id: int,
    owner_id: str = Depends(get_owner_id),
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, ContactRead]:
    contact = await services.contacts.get(session, owner_id, contact_id)
    return data_response(ContactRead.model_validate(contact))


@router.put("/{contact_id}", dependencies=[Depends(rate_limit(CONTACT_OPS))])
async def update_contact(
    contact_id: int,
    payload: ContactUpdate,
    owner_id: str = Depends(get_owner_id),
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, ContactRead]:
    """Update the provided fields of a contact."""

    contact = await services.contacts.update(session, owner_id, contact_id, payload.model_dump(exclude_unset=True))
    return data_response(ContactRead.model_validate(contact))


@router.delete("/{contact_id}", dependencies=[Depends(rate_limit(CONTACT_OPS))])
async def delete_contact(
    contact_id: int,
    owner_id: str = Depends(get_owner_id),
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, dict[str, bool]]:
    await services.contacts.delete(session, owner_id, contact_id)
    return data_response({"deleted": True})

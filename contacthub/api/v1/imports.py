"""Import endpoints for contact CSV and vCard files."""
from __future__ import annotations

from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from contacthub.api.v1.common import data_response
from contacthub.api.v1.deps import IMPORT_OPS, get_owner_id, get_services, rate_limit
from contacthub.core.db import get_session
from contacthub.schemas import BatchResultRead, ImportBatchRead
from contacthub.services.registry import ServiceRegistry

router = APIRouter(prefix="/contacts", tags=["import"])


@router.post("/import", dependencies=[Depends(rate_limit(IMPORT_OPS))])
async def import_contacts(
    file: UploadFile = File(...),
    batch_name: str | None = Form(None),
    owner_id: str = Depends(get_owner_id),
    services: ServiceRegistry = Depends(get_services),
) -> dict[str, BatchResultRead]:
    """Import contacts from an uploaded file and report every row's outcome."""

    content = await file.read()
    result = await services.contacts.import_file(
        owner_id,
        filename=file.filename,
        content_type=file.content_type,
        content=content,
        batch_name=batch_name,
    )
    return data_response(BatchResultRead.from_result(result))


@router.get("/import-batches")
async def list_import_batches(
    owner_id: str = Depends(get_owner_id),
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, list[ImportBatchRead]]:
    batches = await services.contacts.list_import_batches(session, owner_id)
    return data_response([ImportBatchRead.model_validate(batch) for batch in batches])


@router.get("/import-batches/{batch_id}")
async def retrieve_import_batch(
    batch_id: int,
    owner_id: str = Depends(get_owner_id),
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, ImportBatchRead]:
    batch = await services.contacts.get_import_batch(session, owner_id, batch_id)
    return data_response(ImportBatchRead.model_validate(batch))

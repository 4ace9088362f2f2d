"""Export endpoints for contact data."""
from __future__ import annotations

import csv
import io
from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from contacthub.api.v1.deps import CONTACT_OPS, get_owner_id, get_services, rate_limit
from contacthub.core.db import get_session
from contacthub.models import Contact
from contacthub.services.registry import ServiceRegistry

router = APIRouter(prefix="/contacts", tags=["export"])

EXPORT_COLUMNS = [
    ("First Name", "first_name"),
    ("Last Name", "last_name"),
    ("Phone", "phone"),
    ("Email", "email"),
    ("Company", "company"),
    ("Job Title", "job_title"),
    ("Tags", "tags"),
    ("Notes", "notes"),
    ("Created At", "created_at"),
]


@router.get("/export", dependencies=[Depends(rate_limit(CONTACT_OPS))])
async def export_contacts_csv(
    owner_id: str = Depends(get_owner_id),
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> Response:
    """Export the caller's contacts to CSV."""

    contacts = await services.contacts.export(session, owner_id)

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow([title for title, _ in EXPORT_COLUMNS])
    for contact in contacts:
        writer.writerow(_serialize_contact_row(contact))

    return Response(
        output.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=contacts.csv"},
    )


def _serialize_contact_row(contact: Contact) -> list[Any]:
    row: list[Any] = []
    for _, attribute in EXPORT_COLUMNS:
        value = getattr(contact, attribute)
        if attribute == "tags":
            value = ";".join(sorted(value or []))
        elif attribute == "created_at":
            value = value.isoformat() if value else ""
        row.append("" if value is None else value)
    return row

"""Version 1 API routes for the contact and invitation service."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from contacthub.api.v1.contacts import router as contacts_router
from contacthub.api.v1.export import router as export_router
from contacthub.api.v1.imports import router as import_router
from contacthub.api.v1.invitations import router as invitations_router
from contacthub.api.v1.referrals import router as referrals_router
from contacthub.api.v1.sync import router as sync_router
from contacthub.api.v1.webhooks import router as webhooks_router
from contacthub.core.config import Settings, get_settings

router = APIRouter()
# Fixed /contacts/... paths must be registered before /contacts/{contact_id}.
router.include_router(import_router)
router.include_router(sync_router)
router.include_router(export_router)
router.include_router(contacts_router)
router.include_router(invitations_router)
router.include_router(referrals_router)
router.include_router(webhooks_router)


@router.get("/health", tags=["health"])
async def health_check(settings: Settings = Depends(get_settings)) -> dict[str, dict[str, str]]:
    """Report the service health information."""
    return {"data": {"status": "ok", "version": settings.version}}

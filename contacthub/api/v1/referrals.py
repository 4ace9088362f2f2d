"""Referral code endpoints."""
from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Body, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from contacthub.api.v1.common import data_response
from contacthub.api.v1.deps import get_owner_id, get_owner_name, get_services
from contacthub.core.db import get_session
from contacthub.schemas import ReferralVisitRequest
from contacthub.services.registry import ServiceRegistry

router = APIRouter(prefix="/referrals", tags=["referrals"])


@router.get("/code")
async def referral_code(
    owner_id: str = Depends(get_owner_id),
    owner_name: str | None = Depends(get_owner_name),
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, dict[str, str]]:
    """Return the caller's referral code, creating it on first use."""

    code = await services.referrals.get_or_create(session, owner_id, owner_name)
    return data_response({"code": code})


@router.post("/{code}/visit")
async def record_referral_visit(
    code: str,
    payload: ReferralVisitRequest | None = Body(default=None),
    services: ServiceRegistry = Depends(get_services),
    session: AsyncSession = Depends(get_session),
) -> dict[str, dict[str, Any]]:
    payload = payload or ReferralVisitRequest()
    visit = await services.referrals.record_visit(session, code, phone=payload.phone, email=payload.email)
    return data_response(asdict(visit))

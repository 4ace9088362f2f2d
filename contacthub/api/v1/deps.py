"""Request-scoped dependencies: caller identity, services and rate limits."""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from fastapi import Depends, Header, HTTPException, Request, status

from contacthub.core.config import Settings, get_settings
from contacthub.services.rate_limiter import RateLimitRule
from contacthub.services.registry import ServiceRegistry

logger = logging.getLogger(__name__)

CONTACT_OPS = RateLimitRule("contact_ops", limit=200, window_seconds=15 * 60)
BULK_OPS = RateLimitRule("bulk_ops", limit=10, window_seconds=60 * 60)
IMPORT_OPS = RateLimitRule("import_ops", limit=10, window_seconds=60 * 60)
RESEND_OPS = RateLimitRule("resend_ops", limit=20, window_seconds=15 * 60)


def get_services(request: Request) -> ServiceRegistry:
    return request.app.state.services


async def get_owner_id(x_user_id: str | None = Header(default=None)) -> str:
    """Identify the caller; every owner-scoped endpoint requires ``X-User-Id``."""

    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "MISSING_USER", "message": "X-User-Id header is required"},
        )
    return x_user_id.strip()


async def get_owner_name(x_user_name: str | None = Header(default=None)) -> str | None:
    return x_user_name.strip() if x_user_name and x_user_name.strip() else None


def rate_limit(rule: RateLimitRule) -> Callable[..., Awaitable[None]]:
    """Build a dependency enforcing ``rule`` per owner."""

    async def _dependency(
        owner_id: str = Depends(get_owner_id),
        services: ServiceRegistry = Depends(get_services),
        settings: Settings = Depends(get_settings),
    ) -> None:
        if not settings.rate_limit_enabled:
            return
        decision = services.request_limiter.check(rule, owner_id)
        if decision.allowed:
            return
        logger.warning(
            "Rate limit exceeded",
            extra={"rule": rule.name, "owner_id": owner_id, "retry_after": decision.retry_after},
        )
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "code": "RATE_LIMIT_EXCEEDED",
                "message": f"Too many requests; retry in {decision.retry_after} seconds",
            },
            headers={"Retry-After": str(decision.retry_after)},
        )

    return _dependency

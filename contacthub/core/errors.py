"""Error taxonomy shared by services and the HTTP layer."""
from __future__ import annotations

from typing import Any


class ContactHubError(Exception):
    """Base error carrying a stable error code and HTTP status."""

    code = "CONTACTHUB_ERROR"
    status_code = 400

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}


class ValidationError(ContactHubError):
    """Malformed input, detected before any side effect."""

    code = "VALIDATION_ERROR"
    status_code = 422


class NotFoundError(ContactHubError):
    code = "RESOURCE_NOT_FOUND"
    status_code = 404


class DuplicateError(ContactHubError):
    """Identity-key collision with an existing record."""

    code = "DUPLICATE"
    status_code = 409

    def __init__(self, message: str, *, existing_id: int | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.existing_id = existing_id
        if existing_id is not None:
            self.details.setdefault("existing_id", existing_id)


class ConflictError(ContactHubError):
    """Identity matches but field values differ; a merge decision is required."""

    code = "CONFLICT"
    status_code = 409


class CapacityError(ContactHubError):
    """A batch exceeds its size cap and was rejected as a whole."""

    code = "BATCH_TOO_LARGE"
    status_code = 413


class BatchInProgressError(ContactHubError):
    code = "BATCH_IN_PROGRESS"
    status_code = 409


class InvalidTransitionError(ContactHubError):
    code = "INVALID_TRANSITION"
    status_code = 409


class TokenError(ContactHubError):
    """Invitation token is unknown, expired or already used."""

    code = "INVALID_TOKEN"
    status_code = 400

    _STATUS_BY_CODE = {
        "INVALID_TOKEN": 404,
        "TOKEN_ALREADY_USED": 400,
        "TOKEN_EXPIRED": 410,
        "INVITATION_CANCELLED": 410,
    }

    def __init__(self, message: str, *, code: str = "INVALID_TOKEN", **kwargs: Any) -> None:
        super().__init__(message, code=code, **kwargs)
        self.status_code = self._STATUS_BY_CODE.get(code, 400)


class DeliveryError(ContactHubError):
    """Base class for outbound provider failures."""

    code = "DELIVERY_FAILED"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        channel: str | None = None,
        provider_code: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.channel = channel
        self.provider_code = provider_code


class TransientDeliveryError(DeliveryError):
    """Retryable provider failure (timeout, throttling, 5xx)."""

    code = "TRANSIENT_DELIVERY_ERROR"


class PermanentDeliveryError(DeliveryError):
    """Non-retryable provider failure (invalid destination, opt-out)."""

    code = "PERMANENT_DELIVERY_ERROR"

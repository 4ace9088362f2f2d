"""Normalization of loosely-typed contact input from any source."""
from __future__ import annotations

import re
from dataclasses import dataclass, field, fields
from typing import Any, Mapping

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_NON_DIALABLE = re.compile(r"[^\d+]")

INVALID_PHONE = "INVALID_PHONE"
INVALID_EMAIL = "INVALID_EMAIL"
NO_VALID_IDENTIFIER = "NO_VALID_IDENTIFIER"

# Accepted spellings for each field: snake_case, camelCase and common CSV headers.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "first_name": ("first_name", "firstName", "First Name", "given_name", "givenName"),
    "last_name": ("last_name", "lastName", "Last Name", "family_name", "familyName"),
    "phone": ("phone", "Phone", "Phone Number", "phoneNumber", "phone_number", "mobile"),
    "email": ("email", "Email", "Email Address", "emailAddress", "email_address"),
    "company": ("company", "Company", "Organization", "organization"),
    "job_title": ("job_title", "jobTitle", "Job Title", "Title", "title"),
}


@dataclass(frozen=True)
class NormalizedContact:
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    email: str | None = None
    company: str | None = None
    job_title: str | None = None

    def as_dict(self) -> dict[str, str | None]:
        return {item.name: getattr(self, item.name) for item in fields(self)}

    def provided(self) -> dict[str, str]:
        """Return only the fields that carry a value."""

        return {key: value for key, value in self.as_dict().items() if value is not None}


@dataclass
class NormalizationResult:
    """Outcome of normalizing one raw record.

    ``contact`` is ``None`` when the record was rejected; ``reason`` then
    names why. ``issues`` lists identifiers that were dropped as invalid.
    """

    contact: NormalizedContact | None
    issues: list[str] = field(default_factory=list)
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.contact is not None


def normalize_phone(value: Any) -> str | None:
    """Return an E.164-style phone number, or ``None`` when invalid.

    Keeps digits and a leading ``+``; numbers with 11 or more digits and no
    ``+`` get one prefixed. Fewer than 7 or more than 15 digits is invalid.
    """

    if value is None:
        return None
    raw = str(value).strip()
    if not raw:
        return None
    has_plus = raw.startswith("+")
    digits = _NON_DIALABLE.sub("", raw).replace("+", "")
    if not 7 <= len(digits) <= 15:
        return None
    if has_plus or len(digits) >= 11:
        return f"+{digits}"
    return digits


def normalize_email(value: Any) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip().lower()
    if not cleaned or not EMAIL_PATTERN.match(cleaned):
        return None
    return cleaned


def clean_text(value: Any) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def pick(raw: Mapping[str, Any], name: str) -> Any:
    """Return the first non-empty value among the aliases of ``name``."""

    for alias in FIELD_ALIASES[name]:
        value = raw.get(alias)
        if value is not None and str(value).strip():
            return value
    return None


def normalize(raw: Mapping[str, Any]) -> NormalizationResult:
    """Normalize a raw contact mapping.

    Pure and idempotent: feeding ``result.contact.as_dict()`` back in yields
    the same contact.
    """

    issues: list[str] = []

    raw_phone = pick(raw, "phone")
    phone = normalize_phone(raw_phone)
    if raw_phone is not None and phone is None:
        issues.append(INVALID_PHONE)

    raw_email = pick(raw, "email")
    email = normalize_email(raw_email)
    if raw_email is not None and email is None:
        issues.append(INVALID_EMAIL)

    if phone is None and email is None:
        return NormalizationResult(contact=None, issues=issues, reason=NO_VALID_IDENTIFIER)

    contact = NormalizedContact(
        first_name=clean_text(pick(raw, "first_name")),
        last_name=clean_text(pick(raw, "last_name")),
        phone=phone,
        email=email,
        company=clean_text(pick(raw, "company")),
        job_title=clean_text(pick(raw, "job_title")),
    )
    return NormalizationResult(contact=contact, issues=issues)



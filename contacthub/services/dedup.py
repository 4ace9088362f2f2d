"""Duplicate detection and field-level merge decisions for contacts."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Mapping

from contacthub.models import CONTACT_FIELDS, Contact
from contacthub.services.normalizer import NormalizedContact


class DedupKind(str, Enum):
    NEW = "NEW"
    DUPLICATE = "DUPLICATE"
    CONFLICT = "CONFLICT"


@dataclass
class IndexedContact:
    """A contact known to the index: stored (``contact_id``) or planned earlier in a batch."""

    values: dict[str, Any]
    contact_id: int | None = None
    batch_index: int | None = None

    @classmethod
    def from_model(cls, contact: Contact) -> "IndexedContact":
        return cls(values=snapshot(contact), contact_id=contact.id)


@dataclass
class DedupDecision:
    kind: DedupKind
    incoming: NormalizedContact
    existing: IndexedContact | None = None
    diff: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def existing_id(self) -> int | None:
        return self.existing.contact_id if self.existing is not None else None


@dataclass
class MergeResult:
    """Field values chosen by a per-field last-modified-wins merge."""

    updates: dict[str, Any] = field(default_factory=dict)
    device_fields: list[str] = field(default_factory=list)
    server_fields: list[str] = field(default_factory=list)


def snapshot(contact: Contact) -> dict[str, Any]:
    return {name: getattr(contact, name) for name in CONTACT_FIELDS}


class ContactIndex:
    """In-memory lookup of contacts by phone and email for one owner."""

    def __init__(self, contacts: Iterable[IndexedContact] = ()) -> None:
        self._by_phone: dict[str, IndexedContact] = {}
        self._by_email: dict[str, IndexedContact] = {}
        for entry in contacts:
            self.add(entry)

    @classmethod
    def from_models(cls, contacts: Iterable[Contact]) -> "ContactIndex":
        return cls(IndexedContact.from_model(contact) for contact in contacts)

    def add(self, entry: IndexedContact) -> None:
        phone = entry.values.get("phone")
        email = entry.values.get("email")
        if phone:
            self._by_phone.setdefault(phone, entry)
        if email:
            self._by_email.setdefault(email, entry)

    def match(self, incoming: NormalizedContact) -> IndexedContact | None:
        """Return the indexed contact sharing a phone or email; phone wins."""

        if incoming.phone and incoming.phone in self._by_phone:
            return self._by_phone[incoming.phone]
        if incoming.email and incoming.email in self._by_email:
            return self._by_email[incoming.email]
        return None

    def classify(self, incoming: NormalizedContact) -> DedupDecision:
        return classify(incoming, self.match(incoming))


def field_diff(incoming: NormalizedContact, existing: Mapping[str, Any]) -> dict[str, dict[str, Any]]:
    """Return ``{field: {"existing": ..., "incoming": ...}}`` for provided fields that differ."""

    diff: dict[str, dict[str, Any]] = {}
    for name, value in incoming.provided().items():
        current = existing.get(name)
        if current != value:
            diff[name] = {"existing": current, "incoming": value}
    return diff


def classify(incoming: NormalizedContact, existing: IndexedContact | None) -> DedupDecision:
    """Classify ``incoming`` against its identity match without writing anything."""

    if existing is None:
        return DedupDecision(kind=DedupKind.NEW, incoming=incoming)
    diff = field_diff(incoming, existing.values)
    kind = DedupKind.CONFLICT if diff else DedupKind.DUPLICATE
    return DedupDecision(kind=kind, incoming=incoming, existing=existing, diff=diff)


def merge_by_timestamp(
    existing: Mapping[str, Any],
    incoming: NormalizedContact,
    server_versions: Mapping[str, datetime],
    device_versions: Mapping[str, datetime | None],
) -> MergeResult:
    """Choose a winner per differing field by last-modified time.

    The device value wins only when its timestamp is strictly newer than the
    server's; ties and missing device timestamps keep the server value.
    """

    result = MergeResult()
    for name, change in field_diff(incoming, existing).items():
        device_ts = device_versions.get(name)
        server_ts = server_versions.get(name)
        if device_ts is not None and (server_ts is None or device_ts > server_ts):
            result.updates[name] = change["incoming"]
            result.device_fields.append(name)
        else:
            result.server_fields.append(name)
    return result

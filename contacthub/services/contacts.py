"""Contact persistence: single-record CRUD plus bulk create and file import."""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contacthub.core.config import Settings
from contacthub.core.errors import (
    CapacityError,
    ConflictError,
    DuplicateError,
    NotFoundError,
    ValidationError,
)
from contacthub.models import (
    CONTACT_FIELDS,
    Contact,
    ContactSource,
    ImportBatch,
    ImportSource,
    utcnow,
)
from contacthub.services.batch_tracker import BatchTracker
from contacthub.services.bulk import BatchResult, BulkBatchCoordinator, Created, Duplicate, Failed, OwnerLocks
from contacthub.services.contact_importer import ContactFileReader
from contacthub.services.dedup import ContactIndex, DedupKind, IndexedContact
from contacthub.services.normalizer import (
    NormalizedContact,
    clean_text,
    normalize,
    normalize_email,
    normalize_phone,
)

logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    "name": (Contact.first_name, Contact.last_name, Contact.id),
    "created_at": (Contact.created_at, Contact.id),
    "-created_at": (Contact.created_at.desc(), Contact.id.desc()),
    "updated_at": (Contact.updated_at.desc(), Contact.id.desc()),
}


def field_versions_for(fields: Iterable[str], moment: datetime) -> dict[str, str]:
    stamp = moment.isoformat()
    return {name: stamp for name in fields}


async def fetch_matching_contacts(
    session: AsyncSession, owner_id: str, contacts: Sequence[NormalizedContact]
) -> list[Contact]:
    """Load the owner's contacts sharing a phone or email with ``contacts``."""

    phones = {contact.phone for contact in contacts if contact.phone}
    emails = {contact.email for contact in contacts if contact.email}
    clauses = []
    if phones:
        clauses.append(Contact.phone.in_(phones))
    if emails:
        clauses.append(Contact.email.in_(emails))
    if not clauses:
        return []
    result = await session.execute(select(Contact).where(Contact.owner_id == owner_id, or_(*clauses)))
    return list(result.scalars())


async def find_existing_id(session: AsyncSession, owner_id: str, contact: NormalizedContact) -> int | None:
    matches = await fetch_matching_contacts(session, owner_id, [contact])
    index = ContactIndex.from_models(matches)
    entry = index.match(contact)
    return entry.contact_id if entry else None


class ContactService:
    """Owner-scoped contact operations."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        coordinator: BulkBatchCoordinator,
        locks: OwnerLocks,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self._session_factory = session_factory
        self.coordinator = coordinator
        self.locks = locks
        self._clock = clock

    # -- single records -------------------------------------------------

    async def create(
        self,
        session: AsyncSession,
        owner_id: str,
        payload: Mapping[str, Any],
        *,
        source: ContactSource = ContactSource.MANUAL,
    ) -> Contact:
        result = normalize(payload)
        if not result.ok or result.issues:
            raise ValidationError(
                "Contact needs a valid phone number or email address",
                details={"issues": result.issues or [result.reason]},
            )
        incoming = result.contact
        assert incoming is not None

        index = ContactIndex.from_models(await fetch_matching_contacts(session, owner_id, [incoming]))
        decision = index.classify(incoming)
        if decision.kind is DedupKind.DUPLICATE:
            raise DuplicateError("Contact already exists", existing_id=decision.existing_id)
        if decision.kind is DedupKind.CONFLICT:
            raise ConflictError(
                "A contact with this phone or email exists with different details",
                details={"existing_id": decision.existing_id, "diff": decision.diff},
            )

        now = self._clock()
        contact = Contact(
            owner_id=owner_id,
            **incoming.as_dict(),
            source=source,
            is_favorite=bool(payload.get("is_favorite", False)),
            tags=sorted(set(payload.get("tags") or [])),
            notes=clean_text(payload.get("notes")),
            field_versions=field_versions_for(incoming.provided(), now),
            created_at=now,
            updated_at=now,
        )
        session.add(contact)
        try:
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            existing_id = await find_existing_id(session, owner_id, incoming)
            raise DuplicateError("Contact already exists", existing_id=existing_id) from exc
        await session.refresh(contact)
        return contact

    async def get(self, session: AsyncSession, owner_id: str, contact_id: int) -> Contact:
        contact = await session.get(Contact, contact_id)
        if contact is None or contact.owner_id != owner_id:
            raise NotFoundError("Contact not found", details={"contact_id": contact_id})
        return contact

    async def update(
        self, session: AsyncSession, owner_id: str, contact_id: int, changes: Mapping[str, Any]
    ) -> Contact:
        contact = await self.get(session, owner_id, contact_id)
        updates: dict[str, Any] = {}
        for name, value in changes.items():
            if name == "phone":
                updates[name] = self._require_valid(value, normalize_phone(value), "INVALID_PHONE")
            elif name == "email":
                updates[name] = self._require_valid(value, normalize_email(value), "INVALID_EMAIL")
            elif name == "tags":
                updates[name] = sorted(set(value or []))
            elif name == "is_favorite":
                updates[name] = bool(value)
            else:
                updates[name] = clean_text(value)

        phone = updates.get("phone", contact.phone)
        email = updates.get("email", contact.email)
        if phone is None and email is None:
            raise ValidationError(
                "Contact needs a valid phone number or email address",
                details={"issues": ["NO_VALID_IDENTIFIER"]},
            )

        now = self._clock()
        versions = dict(contact.field_versions or {})
        for name, value in updates.items():
            if name in CONTACT_FIELDS and getattr(contact, name) != value:
                versions[name] = now.isoformat()
            setattr(contact, name, value)
        contact.field_versions = versions
        contact.updated_at = now

        try:
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            raise DuplicateError("Another contact already uses this phone or email") from exc
        await session.refresh(contact)
        return contact

    async def delete(self, session: AsyncSession, owner_id: str, contact_id: int) -> None:
        contact = await self.get(session, owner_id, contact_id)
        await session.delete(contact)
        await session.commit()

    async def list_contacts(
        self,
        session: AsyncSession,
        owner_id: str,
        *,
        search: str | None = None,
        tag: str | None = None,
        source: ContactSource | None = None,
        favorites: bool | None = None,
        page: int = 1,
        size: int = 20,
        sort: str = "name",
    ) -> tuple[list[Contact], int]:
        stmt = select(Contact).where(Contact.owner_id == owner_id)
        if search:
            lowered = f"%{search.lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(Contact.first_name).like(lowered),
                    func.lower(Contact.last_name).like(lowered),
                    func.lower(Contact.email).like(lowered),
                    func.lower(Contact.phone).like(lowered),
                    func.lower(Contact.company).like(lowered),
                )
            )
        if source is not None:
            stmt = stmt.where(Contact.source == source)
        if favorites is not None:
            stmt = stmt.where(Contact.is_favorite.is_(favorites))

        order = SORT_COLUMNS.get(sort)
        if order is None:
            raise ValidationError(f"Unsupported sort: {sort}", details={"allowed": sorted(SORT_COLUMNS)})
        offset = (page - 1) * size
        if tag:
            # Tags are a JSON list; membership is checked in Python.
            result = await session.execute(stmt.order_by(*order))
            contacts = [contact for contact in result.scalars() if contact.tags and tag in contact.tags]
            return contacts[offset : offset + size], len(contacts)

        total = await session.scalar(select(func.count()).select_from(stmt.subquery()))
        result = await session.execute(stmt.order_by(*order).offset(offset).limit(size))
        return list(result.scalars()), int(total or 0)

    async def stats(self, session: AsyncSession, owner_id: str) -> dict[str, Any]:
        rows = (
            await session.execute(
                select(Contact.source, func.count(Contact.id))
                .where(Contact.owner_id == owner_id)
                .group_by(Contact.source)
            )
        ).all()
        by_source = {source.value: 0 for source in ContactSource}
        for source, count in rows:
            by_source[source.value] = count

        async def _count(*conditions: Any) -> int:
            value = await session.scalar(
                select(func.count(Contact.id)).where(Contact.owner_id == owner_id, *conditions)
            )
            return int(value or 0)

        return {
            "total": sum(by_source.values()),
            "favorites": await _count(Contact.is_favorite.is_(True)),
            "with_phone": await _count(Contact.phone.is_not(None)),
            "with_email": await _count(Contact.email.is_not(None)),
            "by_source": by_source,
        }

    async def find_by_identifier(self, session: AsyncSession, owner_id: str, identifier: str) -> list[Contact]:
        """Look up contacts by an exact phone number or email address."""

        probe = NormalizedContact(phone=normalize_phone(identifier), email=normalize_email(identifier))
        if probe.phone is None and probe.email is None:
            raise ValidationError("Identifier must be a phone number or email address")
        return await fetch_matching_contacts(session, owner_id, [probe])

    async def export(self, session: AsyncSession, owner_id: str) -> list[Contact]:
        result = await session.execute(
            select(Contact).where(Contact.owner_id == owner_id).order_by(*SORT_COLUMNS["name"])
        )
        return list(result.scalars())

    async def link_or_create(
        self,
        session: AsyncSession,
        owner_id: str,
        *,
        name: str | None,
        phone: str | None,
        email: str | None,
    ) -> Contact:
        """Return the owner's contact for this recipient, creating one if none matches."""

        probe = NormalizedContact(phone=phone, email=email)
        index = ContactIndex.from_models(await fetch_matching_contacts(session, owner_id, [probe]))
        match = index.match(probe)
        if match is not None:
            contact = await session.get(Contact, match.contact_id)
            assert contact is not None
            return contact

        first_name, _, last_name = (name or "").strip().partition(" ")
        now = self._clock()
        incoming = NormalizedContact(
            first_name=first_name or None, last_name=last_name.strip() or None, phone=phone, email=email
        )
        contact = Contact(
            owner_id=owner_id,
            **incoming.as_dict(),
            source=ContactSource.INVITATION,
            tags=[],
            field_versions=field_versions_for(incoming.provided(), now),
            created_at=now,
            updated_at=now,
        )
        session.add(contact)
        await session.flush()
        return contact

    async def list_import_batches(self, session: AsyncSession, owner_id: str) -> list[ImportBatch]:
        result = await session.execute(
            select(ImportBatch)
            .where(ImportBatch.owner_id == owner_id)
            .order_by(ImportBatch.created_at.desc(), ImportBatch.id.desc())
        )
        return list(result.scalars())

    async def get_import_batch(self, session: AsyncSession, owner_id: str, batch_id: int) -> ImportBatch:
        batch = await session.get(ImportBatch, batch_id)
        if batch is None or batch.owner_id != owner_id:
            raise NotFoundError("Import batch not found", details={"batch_id": batch_id})
        return batch

    @staticmethod
    def _require_valid(raw: Any, normalized: str | None, issue: str) -> str | None:
        if raw is not None and str(raw).strip() and normalized is None:
            raise ValidationError("Invalid contact identifier", details={"issues": [issue]})
        return normalized

    # -- bulk -----------------------------------------------------------

    async def bulk_create(
        self, owner_id: str, records: Sequence[Mapping[str, Any]], *, batch_name: str | None = None
    ) -> BatchResult:
        async with self.locks.hold(owner_id):
            tracker = await BatchTracker.create(
                self._session_factory,
                ImportBatch(owner_id=owner_id, name=batch_name, source=ImportSource.MANUAL),
            )
            await self._enforce_cap(tracker, len(records), self.settings.import_max_contacts)
            return await self._run(owner_id, list(records), tracker, ContactSource.MANUAL)

    async def import_file(
        self,
        owner_id: str,
        *,
        filename: str | None,
        content_type: str | None,
        content: bytes,
        batch_name: str | None = None,
    ) -> BatchResult:
        reader = ContactFileReader(filename, content_type)
        async with self.locks.hold(owner_id):
            tracker = await BatchTracker.create(
                self._session_factory,
                ImportBatch(owner_id=owner_id, name=batch_name or filename, source=reader.source),
            )
            try:
                rows = reader.read(content)
            except ValidationError as exc:
                await tracker.fail(f"{exc.code}: {exc.message}")
                exc.details.setdefault("batch_id", tracker.batch_id)
                raise
            await self._enforce_cap(tracker, len(rows), self.settings.import_max_contacts)
            return await self._run(owner_id, rows, tracker, ContactSource.IMPORTED)

    async def _enforce_cap(self, tracker: BatchTracker, count: int, cap: int) -> None:
        if count > cap:
            await tracker.fail(f"BATCH_TOO_LARGE: {count} items exceeds the limit of {cap}")
            raise CapacityError(
                f"Batch of {count} items exceeds the limit of {cap}",
                details={"limit": cap, "received": count, "batch_id": tracker.batch_id},
            )

    async def _run(
        self,
        owner_id: str,
        rows: list[Mapping[str, Any]],
        tracker: BatchTracker,
        source: ContactSource,
    ) -> BatchResult:
        plans, earlier_rows = await self.plan(owner_id, rows)
        await tracker.start(len(rows))

        async def _operation(index: int, row: Mapping[str, Any]) -> Created | Duplicate | Failed:
            plan = plans[index]
            if not isinstance(plan, NormalizedContact):
                return plan
            return await self._insert_planned(owner_id, index, row, plan, source)

        result = await self.coordinator.run(rows, _operation, tracker=tracker)
        link_batch_duplicates(result, earlier_rows)
        return result

    async def plan(
        self, owner_id: str, rows: Sequence[Mapping[str, Any]]
    ) -> tuple[list[NormalizedContact | Created | Duplicate | Failed], dict[int, int]]:
        """Normalize and classify rows in input order.

        Returns one entry per row (a contact to insert or an already decided
        outcome) and, for rows duplicating an earlier row of the same batch,
        the index of that earlier row.
        """

        normalized = [normalize(row) for row in rows]
        async with self._session_factory() as session:
            existing = await fetch_matching_contacts(
                session, owner_id, [item.contact for item in normalized if item.contact]
            )
        index = ContactIndex.from_models(existing)

        plans: list[NormalizedContact | Created | Duplicate | Failed] = []
        earlier_rows: dict[int, int] = {}
        for position, (row, item) in enumerate(zip(rows, normalized)):
            if item.contact is None:
                plans.append(Failed(index=position, item=row, reason=item.reason or "INVALID"))
                continue
            decision = index.classify(item.contact)
            if decision.kind is DedupKind.NEW:
                index.add(IndexedContact(values=item.contact.as_dict(), batch_index=position))
                plans.append(item.contact)
                continue
            assert decision.existing is not None
            if decision.existing.batch_index is not None:
                earlier_rows[position] = decision.existing.batch_index
            plans.append(
                Duplicate(
                    index=position,
                    item=row,
                    existing_id=decision.existing_id,
                    reason=decision.kind.value,
                    diff=decision.diff or None,
                )
            )
        return plans, earlier_rows

    async def _insert_planned(
        self,
        owner_id: str,
        index: int,
        row: Mapping[str, Any],
        incoming: NormalizedContact,
        source: ContactSource,
    ) -> Created | Duplicate:
        now = self._clock()
        contact = Contact(
            owner_id=owner_id,
            **incoming.as_dict(),
            source=source,
            tags=[],
            field_versions=field_versions_for(incoming.provided(), now),
            created_at=now,
            updated_at=now,
        )
        async with self._session_factory() as session:
            session.add(contact)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing_id = await find_existing_id(session, owner_id, incoming)
                return Duplicate(index=index, item=row, existing_id=existing_id, reason="DUPLICATE")
            return Created(index=index, item=row, value={"id": contact.id, **incoming.as_dict()})


def link_batch_duplicates(result: BatchResult, earlier_rows: Mapping[int, int]) -> None:
    """Point in-batch duplicates at the contact created for their earlier row."""

    if not earlier_rows:
        return
    created_ids = {
        outcome.index: outcome.value["id"]
        for outcome in result.successful
        if isinstance(outcome.value, dict) and "id" in outcome.value
    }
    for duplicate in result.duplicates:
        source_index = earlier_rows.get(duplicate.index)
        if source_index is not None and duplicate.existing_id is None:
            duplicate.existing_id = created_ids.get(source_index)

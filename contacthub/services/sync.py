"""Reconciliation of device address books against stored contacts."""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contacthub.core.config import Settings
from contacthub.core.errors import CapacityError, NotFoundError
from contacthub.models import (
    CONTACT_FIELDS,
    BatchStatus,
    Contact,
    ContactSource,
    SyncSession,
    SyncType,
    utcnow,
)
from contacthub.models.base import as_naive_utc
from contacthub.services.bulk import BatchResult, BulkBatchCoordinator, Created, Duplicate, Failed, OwnerLocks
from contacthub.services.contacts import fetch_matching_contacts, find_existing_id, link_batch_duplicates
from contacthub.services.dedup import ContactIndex, DedupKind, IndexedContact, merge_by_timestamp
from contacthub.services.normalizer import FIELD_ALIASES, NormalizedContact, normalize

logger = logging.getLogger(__name__)

LAST_MODIFIED_KEYS = ("lastModified", "last_modified", "updatedAt", "updated_at")
FIELD_TIMESTAMP_KEYS = ("fieldTimestamps", "field_timestamps")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a device timestamp: datetime, ISO-8601 string or epoch seconds/milliseconds."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_naive_utc(value)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=UTC).replace(tzinfo=None)
    text = str(value).strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        return as_naive_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def device_versions(raw: Mapping[str, Any], fallback: datetime | None) -> dict[str, datetime | None]:
    """Per-field device timestamps: field overrides, then ``lastModified``, then ``fallback``."""

    record_ts = None
    for key in LAST_MODIFIED_KEYS:
        record_ts = parse_timestamp(raw.get(key))
        if record_ts is not None:
            break
    default = record_ts or fallback

    overrides: dict[str, Any] = {}
    for key in FIELD_TIMESTAMP_KEYS:
        if isinstance(raw.get(key), Mapping):
            overrides = dict(raw[key])
            break

    versions: dict[str, datetime | None] = {}
    for name in CONTACT_FIELDS:
        override = next(
            (parse_timestamp(overrides[alias]) for alias in FIELD_ALIASES[name] if alias in overrides),
            None,
        )
        versions[name] = override or default
    return versions


def server_versions(contact: Contact) -> dict[str, datetime]:
    stored = contact.field_versions or {}
    versions: dict[str, datetime] = {}
    for name in CONTACT_FIELDS:
        versions[name] = parse_timestamp(stored.get(name)) or contact.updated_at
    return versions


@dataclass
class SyncOutcome:
    session: SyncSession
    result: BatchResult


@dataclass
class _Merge:
    contact_id: int
    incoming: NormalizedContact
    server: Mapping[str, Any]
    server_versions: dict[str, datetime]
    device_versions: dict[str, datetime | None]


@dataclass
class _Touch:
    contact_id: int


class SyncReconciler:
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

    async def sync(
        self,
        owner_id: str,
        *,
        device_id: str | None,
        sync_type: SyncType,
        contacts: Sequence[Mapping[str, Any]],
        last_sync_time: datetime | None = None,
        confirm_deletions: bool = False,
    ) -> SyncOutcome:
        cap = self.settings.sync_max_contacts
        if len(contacts) > cap:
            raise CapacityError(
                f"Sync of {len(contacts)} contacts exceeds the limit of {cap}",
                details={"limit": cap, "received": len(contacts)},
            )

        async with self.locks.hold(owner_id):
            started = self._clock()
            record = SyncSession(
                owner_id=owner_id,
                device_id=device_id,
                sync_type=sync_type,
                total_device_contacts=len(contacts),
                status=BatchStatus.PROCESSING,
                started_at=started,
                deletion_candidates=[],
                error_message=None,
                completed_at=None,
            )
            async with self._session_factory() as session:
                session.add(record)
                await session.commit()
            logger.info(
                "Sync started",
                extra={"sync_session_id": record.id, "owner_id": owner_id, "total": len(contacts)},
            )

            try:
                result, stored = await self._reconcile(
                    owner_id, list(contacts), as_naive_utc(last_sync_time), full=sync_type is SyncType.FULL
                )
                candidates: list[int] = []
                if sync_type is SyncType.FULL:
                    candidates = self._deletion_candidates(stored, result, started)
                deleted = 0
                if candidates and confirm_deletions:
                    deleted = await self._delete(owner_id, candidates)
            except Exception as exc:
                await self._finish(record, status=BatchStatus.FAILED, error_message=str(exc))
                logger.exception("Sync failed", extra={"sync_session_id": record.id})
                raise

            successful = result.successful
            await self._finish(
                record,
                status=BatchStatus.COMPLETED,
                new_contacts=sum(1 for item in successful if item.value["action"] == "created"),
                updated_contacts=sum(1 for item in successful if item.value["action"] == "updated"),
                conflicts=sum(1 for item in successful if item.value["action"] in {"updated", "kept_server"}),
                duplicates=len(result.duplicates),
                errors=len(result.failed),
                deleted_contacts=deleted,
                deletion_candidates=candidates,
            )
            logger.info(
                "Sync completed",
                extra={"sync_session_id": record.id, **result.counts(), "deletion_candidates": len(candidates)},
            )
            return SyncOutcome(session=record, result=result)

    async def list_sessions(self, session: AsyncSession, owner_id: str) -> list[SyncSession]:
        result = await session.execute(
            select(SyncSession)
            .where(SyncSession.owner_id == owner_id)
            .order_by(SyncSession.started_at.desc(), SyncSession.id.desc())
        )
        return list(result.scalars())

    async def get_session(self, session: AsyncSession, owner_id: str, session_id: int) -> SyncSession:
        record = await session.get(SyncSession, session_id)
        if record is None or record.owner_id != owner_id:
            raise NotFoundError("Sync session not found", details={"sync_session_id": session_id})
        return record

    async def _reconcile(
        self,
        owner_id: str,
        rows: list[Mapping[str, Any]],
        last_sync_time: datetime | None,
        *,
        full: bool,
    ) -> tuple[BatchResult, dict[int, Contact]]:
        normalized = [normalize(row) for row in rows]
        async with self._session_factory() as session:
            if full:
                found = list(await session.scalars(select(Contact).where(Contact.owner_id == owner_id)))
            else:
                found = await fetch_matching_contacts(
                    session, owner_id, [item.contact for item in normalized if item.contact]
                )
        stored = {contact.id: contact for contact in found}
        index = ContactIndex.from_models(found)
        claimed: dict[int, int] = {}
        earlier_rows: dict[int, int] = {}
        plans: list[Any] = []

        for position, (row, item) in enumerate(zip(rows, normalized)):
            if item.contact is None:
                plans.append(Failed(index=position, item=row, reason=item.reason or "INVALID"))
                continue
            decision = index.classify(item.contact)
            existing = decision.existing
            if decision.kind is DedupKind.NEW:
                index.add(IndexedContact(values=item.contact.as_dict(), batch_index=position))
                plans.append((item.contact, device_versions(row, last_sync_time)))
                continue
            assert existing is not None
            if existing.batch_index is not None or existing.contact_id in claimed:
                if existing.batch_index is not None:
                    earlier_rows[position] = existing.batch_index
                plans.append(
                    Duplicate(
                        index=position,
                        item=row,
                        existing_id=existing.contact_id,
                        reason="DUPLICATE_IN_PAYLOAD",
                    )
                )
                continue
            claimed[existing.contact_id] = position
            if decision.kind is DedupKind.DUPLICATE:
                plans.append(_Touch(existing.contact_id))
            else:
                contact = stored[existing.contact_id]
                plans.append(
                    _Merge(
                        contact_id=contact.id,
                        incoming=item.contact,
                        server=existing.values,
                        server_versions=server_versions(contact),
                        device_versions=device_versions(row, last_sync_time),
                    )
                )

        async def _operation(index_: int, row: Mapping[str, Any]) -> Created | Duplicate | Failed:
            plan = plans[index_]
            if isinstance(plan, (Created, Duplicate, Failed)):
                return plan
            if isinstance(plan, _Touch):
                await self._touch(plan.contact_id)
                return Duplicate(index=index_, item=row, existing_id=plan.contact_id, reason="UNCHANGED")
            if isinstance(plan, _Merge):
                return await self._merge(index_, row, plan)
            incoming, versions = plan
            return await self._insert(owner_id, index_, row, incoming, versions)

        result = await self.coordinator.run(rows, _operation)
        link_batch_duplicates(result, earlier_rows)
        return result, {cid: stored[cid] for cid in stored if cid not in claimed}

    async def _insert(
        self,
        owner_id: str,
        index: int,
        row: Mapping[str, Any],
        incoming: NormalizedContact,
        versions: dict[str, datetime | None],
    ) -> Created | Duplicate:
        now = self._clock()
        contact = Contact(
            owner_id=owner_id,
            **incoming.as_dict(),
            source=ContactSource.SYNCED,
            tags=[],
            field_versions={
                name: (versions.get(name) or now).isoformat() for name in incoming.provided()
            },
            created_at=now,
            updated_at=now,
            synced_at=now,
        )
        async with self._session_factory() as session:
            session.add(contact)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing_id = await find_existing_id(session, owner_id, incoming)
                return Duplicate(index=index, item=row, existing_id=existing_id, reason="DUPLICATE")
            return Created(index=index, item=row, value={"id": contact.id, "action": "created"})

    async def _touch(self, contact_id: int) -> None:
        async with self._session_factory() as session:
            # A touch is not an edit; keep updated_at as it is.
            await session.execute(
                update(Contact)
                .where(Contact.id == contact_id)
                .values(synced_at=self._clock(), updated_at=Contact.updated_at)
            )
            await session.commit()

    async def _merge(self, index: int, row: Mapping[str, Any], plan: _Merge) -> Created | Failed:
        merged = merge_by_timestamp(plan.server, plan.incoming, plan.server_versions, plan.device_versions)
        now = self._clock()
        value = {
            "id": plan.contact_id,
            "action": "updated" if merged.updates else "kept_server",
            "device_fields": merged.device_fields,
            "server_fields": merged.server_fields,
        }
        values: dict[str, Any] = {"synced_at": now, "updated_at": Contact.updated_at}
        if merged.updates:
            versions = {name: stamp.isoformat() for name, stamp in plan.server_versions.items()}
            for name in merged.device_fields:
                device_ts = plan.device_versions[name]
                assert device_ts is not None
                versions[name] = device_ts.isoformat()
            values.update(merged.updates, field_versions=versions, updated_at=now)

        async with self._session_factory() as session:
            try:
                await session.execute(update(Contact).where(Contact.id == plan.contact_id).values(**values))
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return Failed(index=index, item=row, reason="IDENTIFIER_IN_USE")
        return Created(index=index, item=row, value=value)

    @staticmethod
    def _deletion_candidates(unmatched: Mapping[int, Contact], result: BatchResult, started: datetime) -> list[int]:
        # Rows created by this sync are never candidates.
        created = {item.value["id"] for item in result.successful if item.value["action"] == "created"}
        return sorted(
            contact_id
            for contact_id, contact in unmatched.items()
            if contact_id not in created and contact.updated_at < started
        )

    async def _delete(self, owner_id: str, contact_ids: list[int]) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(Contact).where(Contact.owner_id == owner_id, Contact.id.in_(contact_ids))
            )
            await session.commit()
        logger.info("Sync deleted contacts", extra={"owner_id": owner_id, "deleted": result.rowcount})
        return int(result.rowcount or 0)

    async def _finish(self, record: SyncSession, **values: Any) -> None:
        values["completed_at"] = self._clock()
        async with self._session_factory() as session:
            await session.execute(update(SyncSession).where(SyncSession.id == record.id).values(**values))
            await session.commit()
        for name, value in values.items():
            setattr(record, name, value)

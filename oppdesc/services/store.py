from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any

from oppdesc.schemas.opportunities import Opportunity
from oppdesc.services.locks import DistributedLock, InMemoryLockRegistry
from oppdesc.services.repository import (
    BackfillSelection,
    DescriptionRecord,
    OpportunityRecord,
    RepositoryConflictError,
    RepositoryNotFoundError,
)


@dataclass(slots=True)
class OpportunityVersionRecord:
    notice_id: str
    content_hash: str
    raw_snapshot: dict[str, Any]
    fetched_at: datetime


class InMemoryRepository:
    """Repository with the same coroutine surface as ``PostgresRepository``.

    Used by tests and by local runs without a database. Records are copied on
    the way in and out so callers cannot mutate stored state by reference.
    """

    def __init__(self) -> None:
        self.opportunities: dict[str, OpportunityRecord] = {}
        self.versions: list[OpportunityVersionRecord] = []
        self.descriptions: dict[str, DescriptionRecord] = {}
        self.locks = InMemoryLockRegistry()
        self.opportunity_writes = 0
        self.description_writes = 0

    async def close(self) -> None:
        return None

    async def lock(self, key: int) -> DistributedLock:
        return self.locks.lock(key)

    async def get_opportunity(self, notice_id: str) -> OpportunityRecord:
        record = self.opportunities.get(notice_id)
        if record is None:
            raise RepositoryNotFoundError("opportunity not found")
        return replace(record, raw=dict(record.raw))

    async def get_opportunity_hash(self, notice_id: str) -> str | None:
        record = self.opportunities.get(notice_id)
        return record.content_hash if record is not None else None

    async def insert_opportunity(self, opportunity: Opportunity, *, content_hash: str) -> None:
        if opportunity.notice_id in self.opportunities:
            raise RepositoryConflictError("opportunity already exists")
        now = _utcnow()
        self.opportunities[opportunity.notice_id] = _to_record(opportunity, content_hash, created_at=now, updated_at=now)
        self.opportunity_writes += 1

    async def replace_opportunity(
        self,
        opportunity: Opportunity,
        *,
        content_hash: str,
        expected_hash: str,
        fetched_at: datetime,
    ) -> None:
        current = self.opportunities.get(opportunity.notice_id)
        if current is None or current.content_hash != expected_hash:
            raise RepositoryConflictError("opportunity changed concurrently")
        self.opportunities[opportunity.notice_id] = _to_record(
            opportunity,
            content_hash,
            created_at=current.created_at,
            updated_at=_utcnow(),
        )
        self.versions.append(
            OpportunityVersionRecord(
                notice_id=opportunity.notice_id,
                content_hash=content_hash,
                raw_snapshot=opportunity.to_payload(),
                fetched_at=fetched_at,
            )
        )
        self.opportunity_writes += 1

    async def count_opportunity_versions(self, notice_id: str) -> int:
        return sum(1 for version in self.versions if version.notice_id == notice_id)

    async def get_description(self, notice_id: str) -> DescriptionRecord | None:
        record = self.descriptions.get(notice_id)
        return _copy_description(record) if record is not None else None

    async def create_description_placeholder(self, record: DescriptionRecord) -> bool:
        if record.notice_id in self.descriptions:
            return False
        await self.save_description(record)
        return True

    async def save_description(self, record: DescriptionRecord) -> None:
        now = _utcnow()
        existing = self.descriptions.get(record.notice_id)
        stored = _copy_description(record)
        stored.created_at = existing.created_at if existing is not None else now
        stored.updated_at = now
        self.descriptions[record.notice_id] = stored
        self.description_writes += 1

    async def iter_backfill_candidates(
        self,
        selection: BackfillSelection,
        *,
        prefetch: int = 100,
    ) -> AsyncIterator[DescriptionRecord]:
        yielded = 0
        for notice_id in sorted(self.descriptions):
            if selection.limit and yielded >= selection.limit:
                return
            record = self.descriptions[notice_id]
            if not selection.matches(record):
                continue
            yielded += 1
            yield _copy_description(record)


def _to_record(
    opportunity: Opportunity,
    content_hash: str,
    *,
    created_at: datetime | None,
    updated_at: datetime,
) -> OpportunityRecord:
    return OpportunityRecord(
        notice_id=opportunity.notice_id,
        title=opportunity.title,
        department=opportunity.department,
        sub_tier=opportunity.sub_tier,
        office=opportunity.office,
        posted_date=opportunity.posted_date,
        response_deadline=opportunity.response_deadline,
        type=opportunity.type,
        type_of_set_aside=opportunity.type_of_set_aside,
        active=opportunity.active,
        description=opportunity.description,
        content_hash=content_hash,
        raw=opportunity.to_payload(),
        created_at=created_at,
        updated_at=updated_at,
    )


def _copy_description(record: DescriptionRecord) -> DescriptionRecord:
    meta = record.ai_meta.model_copy(deep=True) if record.ai_meta is not None else None
    return replace(record, ai_meta=meta)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

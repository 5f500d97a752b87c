from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field, fields
from datetime import datetime
from functools import lru_cache
import json
from typing import Any

import asyncpg  # type: ignore[import-untyped]

from oppdesc.core.config import get_settings
from oppdesc.schemas.descriptions import AiMeta
from oppdesc.schemas.opportunities import Opportunity
from oppdesc.services.extractor import AI_INPUT_VERSION
from oppdesc.services.locks import DistributedLock, PostgresAdvisoryLock
from oppdesc.services.normalize import NORMALIZATION_VERSION


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when a write lost a compare-and-swap or hit an existing row."""


@dataclass(slots=True)
class OpportunityRecord:
    notice_id: str
    title: str
    department: str
    sub_tier: str
    office: str
    posted_date: str
    response_deadline: str
    type: str
    type_of_set_aside: str
    active: bool
    description: str
    content_hash: str
    raw: dict[str, Any]
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class DescriptionRecord:
    notice_id: str
    source_type: str
    source_url: str | None = None
    source_inline: str | None = None
    fetch_status: str = "not_requested"
    http_status: int | None = None
    fetched_at: datetime | None = None
    raw_text: str | None = None
    raw_text_normalized: str | None = None
    text_normalized: str | None = None
    content_hash: str | None = None
    content_type: str | None = None
    last_error: str | None = None
    raw_json_response: str | None = None
    normalization_version: int | None = None
    ai_input_text: str | None = None
    ai_input_hash: str | None = None
    ai_input_version: int = AI_INPUT_VERSION
    ai_generated_at: datetime | None = None
    ai_meta: AiMeta | None = None
    excerpt_text: str | None = None
    poc_email_primary: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# Columns written by save_description, in bind order.
DESCRIPTION_WRITE_COLUMNS: tuple[str, ...] = tuple(
    item.name for item in fields(DescriptionRecord) if item.name not in {"created_at", "updated_at"}
)


@dataclass(slots=True)
class BackfillSelection:
    """Which cached descriptions a backfill run revisits.

    Only rows that already carry Tier 1 text are candidates. With both flags
    off every such row is selected.
    """

    missing_ai: bool = True
    stale_normalization: bool = False
    fetch_status: str | None = None
    notice_ids: list[str] = field(default_factory=list)
    limit: int | None = None

    def matches(self, record: DescriptionRecord) -> bool:
        if record.raw_text_normalized is None:
            return False
        if self.fetch_status and record.fetch_status != self.fetch_status:
            return False
        if self.notice_ids and record.notice_id not in self.notice_ids:
            return False
        wants: list[bool] = []
        if self.missing_ai:
            wants.append(record.ai_input_text is None)
        if self.stale_normalization:
            wants.append(record.normalization_version != NORMALIZATION_VERSION)
        return any(wants) if wants else True


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def lock(self, key: int) -> DistributedLock:
        pool = await self._get_pool()
        return PostgresAdvisoryLock(pool, key)

    async def get_opportunity(self, notice_id: str) -> OpportunityRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              notice_id, title, department, sub_tier, office, posted_date, response_deadline,
              type, type_of_set_aside, active, description, content_hash, raw_data,
              created_at, updated_at
            from opportunity
            where notice_id = $1
            """,
            notice_id,
        )
        if not row:
            raise RepositoryNotFoundError("opportunity not found")
        return self._opportunity_row_to_record(row)

    async def get_opportunity_hash(self, notice_id: str) -> str | None:
        pool = await self._get_pool()
        return await pool.fetchval("select content_hash from opportunity where notice_id = $1", notice_id)

    async def insert_opportunity(self, opportunity: Opportunity, *, content_hash: str) -> None:
        pool = await self._get_pool()
        try:
            await pool.execute(
                """
                insert into opportunity (
                  notice_id, title, department, sub_tier, office, posted_date, response_deadline,
                  type, type_of_set_aside, active, description, content_hash, raw_data
                )
                values ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13::jsonb)
                """,
                *self._opportunity_params(opportunity),
                content_hash,
                json.dumps(opportunity.to_payload()),
            )
        except asyncpg.UniqueViolationError as exc:
            raise RepositoryConflictError("opportunity already exists") from exc

    async def replace_opportunity(
        self,
        opportunity: Opportunity,
        *,
        content_hash: str,
        expected_hash: str,
        fetched_at: datetime,
    ) -> None:
        """Update the row only if it still carries ``expected_hash``, snapshotting the change."""
        pool = await self._get_pool()
        payload = json.dumps(opportunity.to_payload())
        async with pool.acquire() as conn:
            async with conn.transaction():
                updated = await conn.fetchval(
                    """
                    update opportunity
                    set
                      title = $2, department = $3, sub_tier = $4, office = $5, posted_date = $6,
                      response_deadline = $7, type = $8, type_of_set_aside = $9, active = $10,
                      description = $11, content_hash = $12, raw_data = $13::jsonb, updated_at = now()
                    where notice_id = $1 and content_hash = $14
                    returning notice_id
                    """,
                    *self._opportunity_params(opportunity),
                    content_hash,
                    payload,
                    expected_hash,
                )
                if updated is None:
                    raise RepositoryConflictError("opportunity changed concurrently")
                await conn.execute(
                    """
                    insert into opportunity_version (notice_id, content_hash, raw_snapshot, fetched_at)
                    values ($1, $2, $3::jsonb, $4)
                    """,
                    opportunity.notice_id,
                    content_hash,
                    payload,
                    fetched_at,
                )

    async def count_opportunity_versions(self, notice_id: str) -> int:
        pool = await self._get_pool()
        return int(await pool.fetchval("select count(*) from opportunity_version where notice_id = $1", notice_id))

    async def get_description(self, notice_id: str) -> DescriptionRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow("select * from opportunity_description where notice_id = $1", notice_id)
        if not row:
            return None
        return self._description_row_to_record(row)

    async def create_description_placeholder(self, record: DescriptionRecord) -> bool:
        """Insert a row for ``record`` unless one exists; returns whether it inserted."""
        pool = await self._get_pool()
        inserted = await pool.fetchval(
            """
            insert into opportunity_description (notice_id, source_type, source_url, source_inline, fetch_status)
            values ($1, $2, $3, $4, $5)
            on conflict (notice_id) do nothing
            returning notice_id
            """,
            record.notice_id,
            record.source_type,
            record.source_url,
            record.source_inline,
            record.fetch_status,
        )
        return inserted is not None

    async def save_description(self, record: DescriptionRecord) -> None:
        pool = await self._get_pool()
        params: list[Any] = []

        def bind(value: Any, cast: str = "") -> str:
            params.append(value)
            return f"${len(params)}{cast}"

        placeholders: list[str] = []
        for column in DESCRIPTION_WRITE_COLUMNS:
            value = getattr(record, column)
            if column == "ai_meta":
                placeholders.append(bind(value.model_dump_json() if value is not None else None, "::jsonb"))
            else:
                placeholders.append(bind(value))
        assignments = ", ".join(
            f"{column} = excluded.{column}" for column in DESCRIPTION_WRITE_COLUMNS if column != "notice_id"
        )
        await pool.execute(
            f"""
            insert into opportunity_description ({", ".join(DESCRIPTION_WRITE_COLUMNS)})
            values ({", ".join(placeholders)})
            on conflict (notice_id) do update
            set {assignments}, updated_at = now()
            """,
            *params,
        )

    async def iter_backfill_candidates(
        self,
        selection: BackfillSelection,
        *,
        prefetch: int = 100,
    ) -> AsyncIterator[DescriptionRecord]:
        pool = await self._get_pool()
        conditions = ["raw_text_normalized is not null"]
        params: list[Any] = []

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        wants: list[str] = []
        if selection.missing_ai:
            wants.append("ai_input_text is null")
        if selection.stale_normalization:
            wants.append(f"normalization_version is distinct from {bind(NORMALIZATION_VERSION)}")
        if wants:
            conditions.append("(" + " or ".join(wants) + ")")
        if selection.fetch_status:
            conditions.append(f"fetch_status = {bind(selection.fetch_status)}")
        if selection.notice_ids:
            conditions.append(f"notice_id = any({bind(selection.notice_ids)}::text[])")
        limit_sql = f" limit {bind(selection.limit)}" if selection.limit else ""

        query = (
            "select * from opportunity_description where "
            + " and ".join(conditions)
            + " order by notice_id"
            + limit_sql
        )
        async with pool.acquire() as conn:
            async with conn.transaction():
                async for row in conn.cursor(query, *params, prefetch=prefetch):
                    yield self._description_row_to_record(row)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("OPPDESC_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _opportunity_params(opportunity: Opportunity) -> list[Any]:
        return [
            opportunity.notice_id,
            opportunity.title,
            opportunity.department,
            opportunity.sub_tier,
            opportunity.office,
            opportunity.posted_date,
            opportunity.response_deadline,
            opportunity.type,
            opportunity.type_of_set_aside,
            opportunity.active,
            opportunity.description,
        ]

    @classmethod
    def _opportunity_row_to_record(cls, row: asyncpg.Record) -> OpportunityRecord:
        return OpportunityRecord(
            notice_id=row["notice_id"],
            title=row["title"],
            department=row["department"],
            sub_tier=row["sub_tier"],
            office=row["office"],
            posted_date=row["posted_date"],
            response_deadline=row["response_deadline"],
            type=row["type"],
            type_of_set_aside=row["type_of_set_aside"],
            active=bool(row["active"]),
            description=row["description"],
            content_hash=row["content_hash"],
            raw=cls._coerce_json_dict(row["raw_data"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @classmethod
    def _description_row_to_record(cls, row: asyncpg.Record) -> DescriptionRecord:
        values = {item.name: row[item.name] for item in fields(DescriptionRecord) if item.name != "ai_meta"}
        if values["ai_input_version"] is None:
            values["ai_input_version"] = AI_INPUT_VERSION
        ai_meta = cls._coerce_json_dict(row["ai_meta"]) if row["ai_meta"] is not None else None
        return DescriptionRecord(**values, ai_meta=AiMeta.model_validate(ai_meta) if ai_meta is not None else None)

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )

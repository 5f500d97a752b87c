from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
import logging
from typing import Any, Literal

from opentelemetry import trace
from pydantic import ValidationError

from oppdesc.core.hashing import opportunity_content_hash
from oppdesc.schemas.opportunities import Opportunity
from oppdesc.services.listing_client import ListingClient
from oppdesc.services.repository import RepositoryConflictError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

IngestOutcome = Literal["new", "updated", "skipped"]


@dataclass(slots=True)
class IngestionStats:
    total: int = 0
    new: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0

    def record(self, outcome: IngestOutcome) -> None:
        if outcome == "new":
            self.new += 1
        elif outcome == "updated":
            self.updated += 1
        else:
            self.skipped += 1


def ingestion_window(today: date, days: int) -> tuple[date, date]:
    """Rolling ``[today - days, today]`` posted-date window."""
    return today - timedelta(days=days), today


class IngestionService:
    """Stores listing records, writing only when their canonical hash changed."""

    def __init__(self, repository: Any) -> None:
        self.repository = repository

    async def ingest_record(self, payload: dict[str, Any]) -> IngestOutcome:
        opportunity = Opportunity.model_validate(payload)
        new_hash = opportunity_content_hash(opportunity.to_payload())
        stored_hash = await self.repository.get_opportunity_hash(opportunity.notice_id)

        if stored_hash is None:
            await self.repository.insert_opportunity(opportunity, content_hash=new_hash)
            return "new"
        if stored_hash == new_hash:
            return "skipped"

        await self.repository.replace_opportunity(
            opportunity,
            content_hash=new_hash,
            expected_hash=stored_hash,
            fetched_at=datetime.now(timezone.utc),
        )
        return "updated"

    async def ingest_records(
        self,
        records: Iterable[dict[str, Any]],
        stats: IngestionStats | None = None,
    ) -> IngestionStats:
        stats = stats or IngestionStats()
        for payload in records:
            stats.total += 1
            notice_id = payload.get("noticeId") if isinstance(payload, dict) else None
            try:
                outcome = await self.ingest_record(payload)
            except ValidationError as exc:
                stats.errors += 1
                logger.warning("ingestion rejected record notice_id=%s errors=%s", notice_id, exc.error_count())
                continue
            except RepositoryConflictError as exc:
                stats.errors += 1
                logger.warning("ingestion write conflict notice_id=%s error=%s", notice_id, exc)
                continue
            stats.record(outcome)
            logger.debug("ingested record notice_id=%s outcome=%s", notice_id, outcome)
        return stats

    async def ingest_from_listing(
        self,
        client: ListingClient,
        *,
        posted_from: date,
        posted_to: date,
        page_size: int = 100,
    ) -> IngestionStats:
        """Page through the listing window; a failed page fetch aborts the run."""
        stats = IngestionStats()
        offset = 0
        while True:
            with tracer.start_as_current_span("ingestion.page") as span:
                span.set_attribute("listing.offset", offset)
                page = await client.search_opportunities(
                    posted_from=posted_from,
                    posted_to=posted_to,
                    limit=page_size,
                    offset=offset,
                )
                span.set_attribute("listing.records", len(page.records))
                logger.info(
                    "listing page fetched offset=%s records=%s total_records=%s",
                    offset,
                    len(page.records),
                    page.total_records,
                )
                await self.ingest_records(page.records, stats)

            if not page.records or offset + page_size >= page.total_records:
                break
            offset += page_size
        return stats

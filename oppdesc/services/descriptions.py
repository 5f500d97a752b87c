from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from functools import lru_cache
import json
import logging
from typing import Any, Literal

from opentelemetry import trace

from oppdesc.core.config import ExtractorConfig, get_settings
from oppdesc.core.hashing import content_hash
from oppdesc.schemas.descriptions import DescriptionListStatus, DescriptionOut
from oppdesc.services.extractor import AI_INPUT_VERSION, AiExtraction, optimize_for_ai
from oppdesc.services.fetcher import DescriptionFetcher, FetchResult
from oppdesc.services.locks import LockNotAcquiredError, description_lock_key
from oppdesc.services.normalize import NORMALIZATION_VERSION, normalize, normalize_raw
from oppdesc.services.repository import (
    DescriptionRecord,
    RepositoryNotFoundError,
)
from oppdesc.services.unwrap import unwrap_description_text

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SourceKind = Literal["none", "inline", "url"]
URL_PREFIXES = ("http://", "https://")


class DescriptionServiceError(Exception):
    """Base error for the on-demand description path."""


class OpportunityNotFoundError(DescriptionServiceError):
    """Raised when the requested opportunity is unknown."""


class DescriptionBusyError(DescriptionServiceError):
    """Raised when another caller holds the record's fetch lock; retry shortly."""


@dataclass(slots=True, frozen=True)
class SourceClassification:
    source_type: SourceKind
    url: str | None = None
    inline: str | None = None


@dataclass(slots=True)
class ProcessedText:
    raw_text: str
    raw_text_normalized: str
    text_normalized: str
    content_hash: str
    ai: AiExtraction = field(default_factory=AiExtraction)


def classify_source(description: str | None) -> SourceClassification:
    trimmed = (description or "").strip()
    if not trimmed:
        return SourceClassification(source_type="none")
    if trimmed.startswith(URL_PREFIXES):
        return SourceClassification(source_type="url", url=trimmed)
    return SourceClassification(source_type="inline", inline=trimmed)


def process_description_text(raw_text: str, config: ExtractorConfig | None = None) -> ProcessedText:
    """Run unwrap, both normalization tiers and AI extraction over ``raw_text``."""
    unwrapped = unwrap_description_text(raw_text)
    raw_normalized = normalize_raw(unwrapped)
    display = normalize(raw_normalized)
    return ProcessedText(
        raw_text=unwrapped,
        raw_text_normalized=raw_normalized,
        text_normalized=display,
        content_hash=content_hash(display),
        ai=optimize_for_ai(raw_normalized, config),
    )


def apply_processed_text(record: DescriptionRecord, processed: ProcessedText, *, now: datetime) -> None:
    """Store the text tiers on ``record``; empty display text is recorded as not_found."""
    record.raw_text = processed.raw_text
    record.normalization_version = NORMALIZATION_VERSION
    if not processed.text_normalized.strip():
        record.fetch_status = "not_found"
        record.raw_text_normalized = None
        record.text_normalized = None
        record.content_hash = None
        return
    record.fetch_status = "fetched"
    record.last_error = None
    record.raw_text_normalized = processed.raw_text_normalized
    record.text_normalized = processed.text_normalized
    record.content_hash = processed.content_hash
    apply_ai_extraction(record, processed.ai, now=now)


def apply_ai_extraction(record: DescriptionRecord, extraction: AiExtraction, *, now: datetime) -> None:
    record.ai_input_text = extraction.ai_input_text
    record.ai_input_hash = content_hash(extraction.ai_input_text)
    record.ai_input_version = AI_INPUT_VERSION
    record.ai_generated_at = now
    record.ai_meta = extraction.meta
    record.excerpt_text = extraction.excerpt_text
    record.poc_email_primary = extraction.poc_email_primary


def reprocessing_source(record: DescriptionRecord) -> str | None:
    """Pick the text a cached row should be rebuilt from, or ``None`` if it is current.

    Rows written by an older normalization version are rebuilt from the
    preserved upstream body (its string ``description`` when present). Current
    rows are rebuilt only if their stored raw text still unwraps further.
    """
    if record.normalization_version != NORMALIZATION_VERSION:
        if record.raw_json_response:
            return _description_from_body(record.raw_json_response) or record.raw_json_response
        return record.raw_text or None
    if record.raw_text:
        unwrapped = unwrap_description_text(record.raw_text)
        if unwrapped != record.raw_text:
            return unwrapped
    return None


def describe_record(record: DescriptionRecord) -> DescriptionOut:
    status = {"fetched": "fetched", "not_found": "not_found", "error": "error"}.get(record.fetch_status)
    if status is None:
        status = "none" if record.source_type == "none" else "available_unfetched"
    return DescriptionOut(
        notice_id=record.notice_id,
        status=status,
        source_type=record.source_type,
        source_url=record.source_url,
        raw_text=record.raw_text,
        raw_post_parse_text=record.raw_text_normalized,
        normalized_text=record.text_normalized,
        raw_json_response=record.raw_json_response,
        normalization_version=record.normalization_version,
        fetched_at=record.fetched_at,
        last_error=record.last_error,
    )


def list_status(record: DescriptionRecord | None, classification: SourceClassification) -> DescriptionListStatus:
    """Status shown alongside an opportunity without triggering a fetch."""
    if record is None:
        return "none" if classification.source_type == "none" else "available_unfetched"
    if record.source_type == "none":
        return "none"
    if record.fetch_status == "fetched":
        return "ready"
    if record.fetch_status in {"not_found", "error"}:
        return record.fetch_status  # type: ignore[return-value]
    return "available_unfetched"


class DescriptionService:
    def __init__(
        self,
        repository: Any,
        fetcher: DescriptionFetcher,
        *,
        extractor_config: ExtractorConfig | None = None,
        lock_wait_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.repository = repository
        self.fetcher = fetcher
        self.extractor_config = extractor_config or ExtractorConfig()
        self.lock_wait_seconds = lock_wait_seconds
        self._sleep = sleep

    async def get_description(self, notice_id: str, *, refresh: bool = False) -> DescriptionOut:
        with tracer.start_as_current_span("descriptions.get") as span:
            span.set_attribute("opportunity.notice_id", notice_id)
            span.set_attribute("description.refresh", refresh)
            try:
                opportunity = await self.repository.get_opportunity(notice_id)
            except RepositoryNotFoundError as exc:
                raise OpportunityNotFoundError(f"opportunity {notice_id} not found") from exc

            classification = classify_source(opportunity.description)
            existing = await self.repository.get_description(notice_id)
            if existing is not None and existing.fetch_status == "fetched" and not refresh:
                return describe_record(await self.self_heal(existing))

            if classification.source_type == "none":
                record = await self._store_without_source(notice_id, existing)
            elif classification.source_type == "inline":
                record = await self._store_inline(notice_id, classification)
            else:
                record = await self._fetch_with_lock(notice_id, classification, existing=existing, refresh=refresh)
            span.set_attribute("description.fetch_status", record.fetch_status)
            return describe_record(record)

    async def self_heal(self, record: DescriptionRecord) -> DescriptionRecord:
        """Rebuild a cached row if it predates the current rules; persists only on change."""
        source = reprocessing_source(record)
        if source is None:
            return record
        before = (record.raw_text, record.text_normalized, record.normalization_version, record.ai_input_hash)
        now = _utcnow()
        apply_processed_text(record, process_description_text(source, self.extractor_config), now=now)
        after = (record.raw_text, record.text_normalized, record.normalization_version, record.ai_input_hash)
        if after == before:
            return record
        record.fetched_at = now
        logger.info(
            "description self-heal notice_id=%s normalization_version=%s fetch_status=%s",
            record.notice_id,
            record.normalization_version,
            record.fetch_status,
        )
        await self.repository.save_description(record)
        return record

    async def refetch(self, record: DescriptionRecord) -> DescriptionRecord:
        """Fetch a URL-sourced row again under its lock (used by backfill)."""
        if record.source_type != "url" or not record.source_url:
            return record
        lock = await self.repository.lock(description_lock_key(record.notice_id))
        async with lock.hold():
            result = await self.fetcher.fetch(record.source_url)
            result.raise_for_error()
            updated = self._record_from_fetch(record.notice_id, record.source_url, result, base=replace(record))
            await self.repository.save_description(updated)
            return updated

    async def _store_without_source(self, notice_id: str, existing: DescriptionRecord | None) -> DescriptionRecord:
        record = DescriptionRecord(notice_id=notice_id, source_type="none", fetch_status="not_requested")
        if existing is not None and existing.source_type == "none" and existing.fetch_status == "not_requested":
            return existing
        await self.repository.save_description(record)
        return record

    async def _store_inline(self, notice_id: str, classification: SourceClassification) -> DescriptionRecord:
        inline = classification.inline or ""
        now = _utcnow()
        record = DescriptionRecord(notice_id=notice_id, source_type="inline", source_inline=inline, fetched_at=now)
        apply_processed_text(record, process_description_text(inline, self.extractor_config), now=now)
        await self.repository.save_description(record)
        return record

    async def _fetch_with_lock(
        self,
        notice_id: str,
        classification: SourceClassification,
        *,
        existing: DescriptionRecord | None,
        refresh: bool,
    ) -> DescriptionRecord:
        source_url = classification.url or ""
        if existing is None:
            await self.repository.create_description_placeholder(
                DescriptionRecord(notice_id=notice_id, source_type="url", source_url=source_url)
            )

        lock = await self.repository.lock(description_lock_key(notice_id))
        try:
            async with lock.hold():
                if not refresh:
                    current = await self.repository.get_description(notice_id)
                    if current is not None and current.fetch_status == "fetched":
                        return current
                result = await self.fetcher.fetch(source_url)
                record = self._record_from_fetch(notice_id, source_url, result)
                await self.repository.save_description(record)
                logger.info(
                    "description fetched notice_id=%s outcome=%s http_status=%s",
                    notice_id,
                    record.fetch_status,
                    result.http_status,
                )
                return record
        except LockNotAcquiredError:
            logger.info("description fetch in progress elsewhere notice_id=%s; waiting", notice_id)

        await self._sleep(self.lock_wait_seconds)
        current = await self.repository.get_description(notice_id)
        if current is not None and current.fetch_status == "fetched":
            return current
        raise DescriptionBusyError("description is being fetched by another request")

    def _record_from_fetch(
        self,
        notice_id: str,
        source_url: str,
        result: FetchResult,
        *,
        base: DescriptionRecord | None = None,
    ) -> DescriptionRecord:
        now = _utcnow()
        record = base
        if record is None:
            record = DescriptionRecord(notice_id=notice_id, source_type="url", source_url=source_url)
        record.http_status = result.http_status
        record.content_type = result.content_type
        record.fetched_at = now
        if result.raw_body is not None:
            record.raw_json_response = result.raw_body

        if result.outcome == "error":
            record.fetch_status = "error"
            record.last_error = result.error
            return record
        if result.outcome == "not_found":
            record.fetch_status = "not_found"
            record.raw_text = result.text
            record.last_error = None
            return record

        apply_processed_text(record, process_description_text(result.text, self.extractor_config), now=now)
        return record


def _description_from_body(body: str) -> str | None:
    try:
        parsed = json.loads(body)
    except (ValueError, RecursionError):
        return None
    if isinstance(parsed, dict):
        description = parsed.get("description")
        if isinstance(description, str) and description:
            return description
    return None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@lru_cache
def get_description_fetcher() -> DescriptionFetcher:
    settings = get_settings()
    return DescriptionFetcher(
        settings.sam_api_key,
        timeout_seconds=settings.fetch_timeout_seconds,
        max_body_bytes=settings.fetch_max_body_bytes,
    )


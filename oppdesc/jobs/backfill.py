from __future__ import annotations

import argparse
import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import datetime, timezone
import logging
from typing import Any, Literal

from opentelemetry import trace

from oppdesc.core.config import BackfillConfig, ExtractorConfig, get_settings
from oppdesc.core.telemetry import configure_logging, setup_worker_telemetry, shutdown_worker_telemetry
from oppdesc.jobs.rate_limit import TokenBucket
from oppdesc.services.descriptions import (
    DescriptionService,
    apply_ai_extraction,
    apply_processed_text,
    get_description_fetcher,
    process_description_text,
    reprocessing_source,
)
from oppdesc.services.extractor import optimize_for_ai
from oppdesc.services.fetcher import DescriptionFetchError
from oppdesc.services.locks import BACKFILL_LOCK_KEY, LockNotAcquiredError
from oppdesc.services.repository import (
    BackfillSelection,
    DescriptionRecord,
    RepositoryError,
    RepositoryUnavailableError,
    get_repository,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

RecordOutcome = Literal["updated", "skipped"]
RETRYABLE_SIGNATURES = ("429", "500", "502", "503", "504", "timeout", "connection", "network")
PROGRESS_LOG_EVERY = 100
FETCH_STATUS_CHOICES = ("not_requested", "fetched", "not_found", "error")


@dataclass(slots=True)
class BackfillStats:
    processed: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, DescriptionFetchError):
        return exc.retryable
    if isinstance(exc, (LockNotAcquiredError, RepositoryUnavailableError, asyncio.TimeoutError)):
        return True
    message = str(exc).lower()
    return any(signature in message for signature in RETRYABLE_SIGNATURES)


def should_process(record: DescriptionRecord) -> bool:
    if not (record.raw_text_normalized or "").strip():
        return False
    return record.fetch_status == "fetched" or record.source_type == "inline"


def rebuild_record(
    record: DescriptionRecord,
    config: ExtractorConfig,
    *,
    now: datetime,
) -> DescriptionRecord:
    """Return a copy of ``record`` with its derived fields recomputed from cached text.

    Rows that need reprocessing (older normalization, raw text that still
    unwraps) get every tier rebuilt; current rows only get the AI fields.
    """
    candidate = replace(record, ai_meta=record.ai_meta.model_copy(deep=True) if record.ai_meta else None)
    source = reprocessing_source(record)
    if source is not None:
        apply_processed_text(candidate, process_description_text(source, config), now=now)
    else:
        apply_ai_extraction(candidate, optimize_for_ai(record.raw_text_normalized or "", config), now=now)
    return candidate


def _changed(before: DescriptionRecord, after: DescriptionRecord) -> bool:
    return (
        before.ai_input_hash != after.ai_input_hash
        or before.content_hash != after.content_hash
        or before.normalization_version != after.normalization_version
        or before.fetch_status != after.fetch_status
    )


class BackfillRunner:
    def __init__(
        self,
        repository: Any,
        service: DescriptionService,
        config: BackfillConfig,
        *,
        dry_run: bool = False,
        refetch: bool = False,
        bucket: TokenBucket | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.repository = repository
        self.service = service
        self.config = config
        self.dry_run = dry_run
        self.refetch = refetch
        self.bucket = bucket or TokenBucket(config.rate_limit, config.rate_limit, sleep=sleep)
        self.stats = BackfillStats()
        self._sleep = sleep

    async def run(self, selection: BackfillSelection) -> BackfillStats:
        workers = self.config.effective_workers
        if workers != self.config.workers:
            logger.warning("backfill workers clamped requested=%s effective=%s", self.config.workers, workers)
        queue: asyncio.Queue[DescriptionRecord | None] = asyncio.Queue(maxsize=workers * 2)

        with tracer.start_as_current_span("backfill.run") as span:
            span.set_attribute("backfill.workers", workers)
            span.set_attribute("backfill.dry_run", self.dry_run)
            span.set_attribute("backfill.refetch", self.refetch)
            await asyncio.gather(
                self._produce(queue, selection, workers),
                *(self._work(queue, worker_id) for worker_id in range(workers)),
            )
            span.set_attribute("backfill.updated", self.stats.updated)
            span.set_attribute("backfill.errors", self.stats.errors)
        return self.stats

    async def _produce(
        self,
        queue: asyncio.Queue[DescriptionRecord | None],
        selection: BackfillSelection,
        workers: int,
    ) -> None:
        try:
            async for record in self.repository.iter_backfill_candidates(selection):
                await queue.put(record)
        except RepositoryError:
            self.stats.errors += 1
            logger.exception("backfill candidate scan failed")
        finally:
            for _ in range(workers):
                await queue.put(None)

    async def _work(self, queue: asyncio.Queue[DescriptionRecord | None], worker_id: int) -> None:
        while True:
            record = await queue.get()
            if record is None:
                return
            self.stats.processed += 1
            with tracer.start_as_current_span("backfill.record") as span:
                span.set_attribute("opportunity.notice_id", record.notice_id)
                try:
                    outcome = await self.process(record, worker_id=worker_id)
                except Exception as exc:
                    self.stats.errors += 1
                    span.record_exception(exc)
                    logger.error(
                        "backfill record failed worker=%s notice_id=%s error=%s",
                        worker_id,
                        record.notice_id,
                        exc,
                    )
                    continue
                span.set_attribute("backfill.outcome", outcome)

            if outcome == "skipped":
                self.stats.skipped += 1
                continue
            self.stats.updated += 1
            if self.stats.updated % PROGRESS_LOG_EVERY == 0:
                logger.info("backfill progress updated=%s", self.stats.updated)

    async def process(self, record: DescriptionRecord, *, worker_id: int = 0) -> RecordOutcome:
        if not should_process(record):
            return "skipped"

        await self.bucket.acquire()
        backoff = self.config.initial_backoff_seconds
        attempts = max(1, self.config.max_retries)
        attempt = 0
        while True:
            try:
                return await self._apply(record)
            except Exception as exc:
                attempt += 1
                if attempt >= attempts or not is_retryable_error(exc):
                    raise
                logger.info(
                    "backfill retry worker=%s notice_id=%s attempt=%s/%s backoff=%.1fs error=%s",
                    worker_id,
                    record.notice_id,
                    attempt + 1,
                    attempts,
                    backoff,
                    exc,
                )
                await self._sleep(backoff)
                backoff *= 2

    async def _apply(self, record: DescriptionRecord) -> RecordOutcome:
        if self.refetch and record.source_type == "url":
            if self.dry_run:
                logger.info("[dry-run] would refetch notice_id=%s url=%s", record.notice_id, record.source_url)
                return "updated"
            refreshed = await self.service.refetch(record)
            return "updated" if _changed(record, refreshed) else "skipped"

        candidate = rebuild_record(record, self.service.extractor_config, now=datetime.now(timezone.utc))
        if not _changed(record, candidate):
            return "skipped"
        if self.dry_run:
            logger.info(
                "[dry-run] would update notice_id=%s ai_input_chars=%s excerpt_chars=%s",
                record.notice_id,
                len(candidate.ai_input_text or ""),
                len(candidate.excerpt_text or ""),
            )
            return "updated"
        await self.repository.save_description(candidate)
        return "updated"


async def run_backfill(
    repository: Any,
    service: DescriptionService,
    config: BackfillConfig,
    selection: BackfillSelection,
    *,
    dry_run: bool = False,
    refetch: bool = False,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> BackfillStats | None:
    """Run one backfill pass under the fleet lock; ``None`` when another run holds it."""
    lock = await repository.lock(BACKFILL_LOCK_KEY)
    if not await lock.try_acquire():
        logger.info("another backfill run holds the lock; exiting")
        return None
    try:
        if dry_run:
            logger.info("backfill dry run: no changes will be written")
        runner = BackfillRunner(repository, service, config, dry_run=dry_run, refetch=refetch, sleep=sleep)
        stats = await runner.run(selection)
    finally:
        await lock.release()

    logger.info(
        "backfill complete processed=%s updated=%s skipped=%s errors=%s",
        stats.processed,
        stats.updated,
        stats.skipped,
        stats.errors,
    )
    return stats


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Recompute derived description fields for cached rows.")
    parser.add_argument("--limit", type=int, default=0, help="Maximum rows to process (0 = no limit).")
    parser.add_argument("--workers", type=int, default=None, help="Concurrent workers (clamped to 1..10).")
    parser.add_argument("--dry-run", action="store_true", help="Log intended changes without writing.")
    parser.add_argument(
        "--stale-normalization",
        action="store_true",
        help="Select rows written by an older normalization version instead of rows missing AI fields.",
    )
    parser.add_argument("--all", action="store_true", help="Select every row that has cached text.")
    parser.add_argument("--fetch-status", choices=FETCH_STATUS_CHOICES, default=None)
    parser.add_argument("--notice-id", action="append", default=[], help="Restrict to these notice ids.")
    parser.add_argument("--refetch", action="store_true", help="Re-fetch URL sources instead of recomputing.")
    return parser


def selection_from_args(args: argparse.Namespace) -> BackfillSelection:
    if args.all:
        missing_ai, stale = False, False
    elif args.stale_normalization:
        missing_ai, stale = False, True
    else:
        missing_ai, stale = True, False
    return BackfillSelection(
        missing_ai=missing_ai,
        stale_normalization=stale,
        fetch_status=args.fetch_status,
        notice_ids=list(args.notice_id),
        limit=args.limit if args.limit > 0 else None,
    )


async def _run(args: argparse.Namespace) -> int:
    settings = get_settings()
    repository = get_repository()
    service = DescriptionService(
        repository,
        get_description_fetcher(),
        extractor_config=ExtractorConfig.from_settings(settings),
        lock_wait_seconds=settings.lock_wait_seconds,
    )
    try:
        stats = await run_backfill(
            repository,
            service,
            BackfillConfig.from_settings(settings, workers=args.workers),
            selection_from_args(args),
            dry_run=args.dry_run,
            refetch=args.refetch,
        )
    except RepositoryUnavailableError as exc:
        logger.error("backfill cannot start: %s", exc)
        return 1
    finally:
        await repository.close()

    if stats is None:
        return 0
    if stats.errors:
        logger.warning("backfill finished with errors=%s", stats.errors)
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_worker_telemetry(settings, service_suffix="backfill")
    try:
        return asyncio.run(_run(args))
    finally:
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    raise SystemExit(main())

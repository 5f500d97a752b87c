from __future__ import annotations

import argparse
import asyncio
from collections.abc import Awaitable, Callable
from datetime import date, datetime, timezone
import json
import logging
from pathlib import Path
from typing import Any

from opentelemetry import trace

from oppdesc.core.config import get_settings
from oppdesc.core.telemetry import configure_logging, setup_worker_telemetry, shutdown_worker_telemetry
from oppdesc.schemas.opportunities import ListingPage
from oppdesc.services.ingestion import IngestionService, IngestionStats, ingestion_window
from oppdesc.services.listing_client import ListingClient, parse_listing_page
from oppdesc.services.locks import INGESTION_LOCK_KEY
from oppdesc.services.repository import RepositoryUnavailableError, get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def load_listing_file(path: Path) -> ListingPage:
    """Read a saved listing response (``totalRecords`` + ``opportunitiesData``)."""
    return parse_listing_page(json.loads(path.read_text(encoding="utf-8")))


async def run_ingestion(
    repository: Any,
    work: Callable[[IngestionService], Awaitable[IngestionStats]],
) -> IngestionStats | None:
    """Run ``work`` under the ingestion fleet lock; ``None`` when another run holds it."""
    lock = await repository.lock(INGESTION_LOCK_KEY)
    if not await lock.try_acquire():
        logger.info("another ingestion run holds the lock; exiting")
        return None
    try:
        with tracer.start_as_current_span("ingestion.run") as span:
            stats = await work(IngestionService(repository))
            span.set_attribute("ingestion.total", stats.total)
            span.set_attribute("ingestion.errors", stats.errors)
    finally:
        await lock.release()

    logger.info(
        "ingestion complete total=%s new=%s updated=%s skipped=%s errors=%s",
        stats.total,
        stats.new,
        stats.updated,
        stats.skipped,
        stats.errors,
    )
    return stats


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ingest opportunity listings with change detection.")
    parser.add_argument("--file", type=Path, default=None, help="Ingest a saved listing response instead.")
    parser.add_argument("--days", type=int, default=None, help="Rolling window size in days.")
    parser.add_argument("--from", dest="posted_from", type=date.fromisoformat, default=None, help="YYYY-MM-DD")
    parser.add_argument("--to", dest="posted_to", type=date.fromisoformat, default=None, help="YYYY-MM-DD")
    return parser


async def _run(args: argparse.Namespace) -> int:
    settings = get_settings()
    repository = get_repository()

    if args.file is not None:
        try:
            page = load_listing_file(args.file)
        except (OSError, ValueError) as exc:
            logger.error("cannot load listing file path=%s error=%s", args.file, exc)
            await repository.close()
            return 1
        logger.info("loaded listing file path=%s records=%s", args.file, len(page.records))

        async def work(service: IngestionService) -> IngestionStats:
            return await service.ingest_records(page.records)

    else:
        days = args.days if args.days and args.days > 0 else settings.ingestion_window_days
        posted_from, posted_to = ingestion_window(datetime.now(timezone.utc).date(), days)
        posted_from = args.posted_from or posted_from
        posted_to = args.posted_to or posted_to
        client = ListingClient(
            settings.listing_base_url,
            settings.sam_api_key,
            timeout_seconds=settings.listing_timeout_seconds,
        )
        logger.info("ingesting listing window posted_from=%s posted_to=%s", posted_from, posted_to)

        async def work(service: IngestionService) -> IngestionStats:
            return await service.ingest_from_listing(
                client,
                posted_from=posted_from,
                posted_to=posted_to,
                page_size=settings.listing_page_size,
            )

    try:
        stats = await run_ingestion(repository, work)
    except RepositoryUnavailableError as exc:
        logger.error("ingestion cannot start: %s", exc)
        return 1
    except Exception:
        logger.exception("ingestion failed")
        return 1
    finally:
        await repository.close()

    if stats is None:
        return 0
    if stats.errors:
        logger.warning("ingestion finished with errors=%s", stats.errors)
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_worker_telemetry(settings, service_suffix="ingest")
    try:
        return asyncio.run(_run(args))
    finally:
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    raise SystemExit(main())

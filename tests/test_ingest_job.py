import asyncio
import json
from datetime import date
from pathlib import Path

import pytest

from oppdesc.jobs.ingest import build_parser, load_listing_file, run_ingestion
from oppdesc.services.ingestion import IngestionService
from oppdesc.services.locks import INGESTION_LOCK_KEY
from oppdesc.services.store import InMemoryRepository


def _listing(*notice_ids: str) -> dict:
    return {
        "totalRecords": len(notice_ids),
        "opportunitiesData": [{"noticeId": notice_id, "title": f"Item {notice_id}"} for notice_id in notice_ids],
    }


def test_load_listing_file(tmp_path: Path) -> None:
    path = tmp_path / "listing.json"
    path.write_text(json.dumps(_listing("a", "b")), encoding="utf-8")

    page = load_listing_file(path)

    assert page.total_records == 2
    assert [record["noticeId"] for record in page.records] == ["a", "b"]


def test_load_listing_file_rejects_unexpected_shape(tmp_path: Path) -> None:
    path = tmp_path / "listing.json"
    path.write_text("[]", encoding="utf-8")

    with pytest.raises(ValueError):
        load_listing_file(path)


def test_run_ingestion_records_and_releases_lock() -> None:
    repository = InMemoryRepository()
    records = _listing("a", "b")["opportunitiesData"]

    async def work(service: IngestionService):
        return await service.ingest_records(records)

    stats = asyncio.run(run_ingestion(repository, work))

    assert (stats.total, stats.new, stats.errors) == (2, 2, 0)
    assert not repository.locks.is_held(INGESTION_LOCK_KEY)


def test_run_ingestion_skips_when_lock_is_held() -> None:
    repository = InMemoryRepository()
    holder = repository.locks.lock(INGESTION_LOCK_KEY)
    assert asyncio.run(holder.try_acquire())
    called = []

    async def work(service: IngestionService):
        called.append(True)
        return await service.ingest_records([])

    assert asyncio.run(run_ingestion(repository, work)) is None
    assert called == []


def test_build_parser_accepts_window_bounds() -> None:
    args = build_parser().parse_args(["--from", "2024-04-01", "--to", "2024-05-01", "--days", "7"])

    assert args.posted_from == date(2024, 4, 1)
    assert args.posted_to == date(2024, 5, 1)
    assert args.days == 7
    assert args.file is None

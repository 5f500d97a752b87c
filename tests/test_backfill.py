import asyncio
import json

import httpx

from oppdesc.core.config import BackfillConfig
from oppdesc.jobs.backfill import (
    build_parser,
    is_retryable_error,
    run_backfill,
    selection_from_args,
    should_process,
)
from oppdesc.jobs.rate_limit import TokenBucket
from oppdesc.services.descriptions import DescriptionService
from oppdesc.services.fetcher import DescriptionFetchError, DescriptionFetcher
from oppdesc.services.locks import BACKFILL_LOCK_KEY
from oppdesc.services.normalize import NORMALIZATION_VERSION
from oppdesc.services.repository import BackfillSelection, DescriptionRecord
from oppdesc.services.store import InMemoryRepository

FAST_CONFIG = BackfillConfig(workers=2, rate_limit=1000.0, max_retries=3, initial_backoff_seconds=1.0)


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _record(notice_id: str, text: str = "Quote valid for 30 days.", **overrides) -> DescriptionRecord:
    values = {
        "notice_id": notice_id,
        "source_type": "url",
        "source_url": f"https://api.sam.gov/prod/opportunities/v1/noticedesc?noticeid={notice_id}",
        "fetch_status": "fetched",
        "raw_text": text,
        "raw_text_normalized": text,
        "text_normalized": text,
        "normalization_version": NORMALIZATION_VERSION,
    }
    values.update(overrides)
    return DescriptionRecord(**values)


def _repository(*records: DescriptionRecord) -> InMemoryRepository:
    repository = InMemoryRepository()
    for record in records:
        asyncio.run(repository.save_description(record))
    return repository


def _service(repository: InMemoryRepository, handler=None) -> DescriptionService:
    if handler is None:

        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("unexpected fetch")

    fetcher = DescriptionFetcher("test-key", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    return DescriptionService(repository, fetcher)


def test_backfill_fills_missing_ai_fields() -> None:
    repository = _repository(_record("a"), _record("b", "REQUIRES IRPOD review."))
    writes = repository.description_writes

    stats = asyncio.run(run_backfill(repository, _service(repository), FAST_CONFIG, BackfillSelection()))

    assert stats is not None
    assert (stats.processed, stats.updated, stats.skipped, stats.errors) == (2, 2, 0, 0)
    assert repository.description_writes == writes + 2
    assert repository.descriptions["a"].ai_input_text.startswith("KEY FACTS:\nQuote validity: 30 days")
    assert repository.descriptions["b"].ai_meta.requires_irpod_review is True
    assert not repository.locks.is_held(BACKFILL_LOCK_KEY)


def test_backfill_skips_rows_without_usable_text_or_status() -> None:
    repository = _repository(
        _record("not-found", fetch_status="not_found"),
        _record("blank", "   "),
        _record("inline", source_type="inline", fetch_status="not_requested"),
    )

    stats = asyncio.run(run_backfill(repository, _service(repository), FAST_CONFIG, BackfillSelection()))

    assert (stats.processed, stats.updated, stats.skipped, stats.errors) == (3, 1, 2, 0)
    assert repository.descriptions["not-found"].ai_input_text is None
    assert repository.descriptions["inline"].ai_input_text is not None


def test_backfill_dry_run_writes_nothing() -> None:
    repository = _repository(_record("a"))
    writes = repository.description_writes

    stats = asyncio.run(
        run_backfill(repository, _service(repository), FAST_CONFIG, BackfillSelection(), dry_run=True)
    )

    assert stats.updated == 1
    assert repository.description_writes == writes
    assert repository.descriptions["a"].ai_input_text is None


def test_backfill_reports_unchanged_rows_as_skipped() -> None:
    repository = _repository(_record("a"))
    asyncio.run(run_backfill(repository, _service(repository), FAST_CONFIG, BackfillSelection()))

    stats = asyncio.run(
        run_backfill(repository, _service(repository), FAST_CONFIG, BackfillSelection(missing_ai=False))
    )

    assert (stats.processed, stats.updated, stats.skipped) == (1, 0, 1)


def test_backfill_rebuilds_stale_normalization_rows() -> None:
    stale = _record(
        "a",
        "old",
        normalization_version=NORMALIZATION_VERSION - 1,
        raw_json_response=json.dumps({"description": "Rebuilt &amp; fresh"}),
        ai_input_text="stale ai text",
    )
    repository = _repository(stale)

    selection = BackfillSelection(missing_ai=False, stale_normalization=True)
    stats = asyncio.run(run_backfill(repository, _service(repository), FAST_CONFIG, selection))

    assert stats.updated == 1
    rebuilt = repository.descriptions["a"]
    assert rebuilt.text_normalized == "Rebuilt & fresh"
    assert rebuilt.normalization_version == NORMALIZATION_VERSION
    assert rebuilt.ai_input_text != "stale ai text"


def test_backfill_exits_when_another_run_holds_the_lock() -> None:
    repository = _repository(_record("a"))
    holder = repository.locks.lock(BACKFILL_LOCK_KEY)
    assert asyncio.run(holder.try_acquire())

    stats = asyncio.run(run_backfill(repository, _service(repository), FAST_CONFIG, BackfillSelection()))

    assert stats is None
    assert repository.descriptions["a"].ai_input_text is None


def test_backfill_refetch_retries_transient_failures_with_backoff() -> None:
    repository = _repository(_record("a"))
    statuses = [503, 502, 200]
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        status_code = statuses[len(calls)]
        calls.append(status_code)
        if status_code != 200:
            return httpx.Response(status_code, text="temporarily unavailable")
        return httpx.Response(status_code, json={"description": "Refetched description text."})

    sleep = RecordingSleep()
    stats = asyncio.run(
        run_backfill(
            repository,
            _service(repository, handler),
            FAST_CONFIG,
            BackfillSelection(),
            refetch=True,
            sleep=sleep,
        )
    )

    assert calls == [503, 502, 200]
    assert sleep.calls == [1.0, 2.0]
    assert (stats.updated, stats.errors) == (1, 0)
    assert repository.descriptions["a"].text_normalized == "Refetched description text."


def test_backfill_does_not_retry_permanent_failures() -> None:
    repository = _repository(_record("a"))
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(400)
        return httpx.Response(400, text="bad request")

    sleep = RecordingSleep()
    stats = asyncio.run(
        run_backfill(
            repository,
            _service(repository, handler),
            FAST_CONFIG,
            BackfillSelection(),
            refetch=True,
            sleep=sleep,
        )
    )

    assert calls == [400]
    assert sleep.calls == []
    assert stats.errors == 1
    assert repository.descriptions["a"].text_normalized == "Quote valid for 30 days."


def test_is_retryable_error() -> None:
    assert is_retryable_error(DescriptionFetchError("throttled", status_code=429, retryable=True))
    assert not is_retryable_error(DescriptionFetchError("bad", status_code=400))
    assert is_retryable_error(RuntimeError("connection reset by peer"))
    assert is_retryable_error(RuntimeError("upstream returned 504"))
    assert not is_retryable_error(ValueError("invalid literal"))


def test_should_process() -> None:
    assert should_process(_record("a"))
    assert should_process(_record("a", source_type="inline", fetch_status="not_requested"))
    assert not should_process(_record("a", fetch_status="error"))
    assert not should_process(_record("a", raw_text_normalized=None))


def test_workers_are_clamped() -> None:
    assert BackfillConfig(workers=0).effective_workers == 1
    assert BackfillConfig(workers=50).effective_workers == 10
    assert BackfillConfig(workers=4).effective_workers == 4


def test_selection_from_args() -> None:
    parser = build_parser()

    default = selection_from_args(parser.parse_args([]))
    assert (default.missing_ai, default.stale_normalization, default.limit) == (True, False, None)

    stale = selection_from_args(parser.parse_args(["--stale-normalization", "--limit", "5"]))
    assert (stale.missing_ai, stale.stale_normalization, stale.limit) == (False, True, 5)

    everything = selection_from_args(parser.parse_args(["--all", "--fetch-status", "fetched", "--notice-id", "x"]))
    assert (everything.missing_ai, everything.stale_normalization) == (False, False)
    assert everything.fetch_status == "fetched"
    assert everything.notice_ids == ["x"]


def test_token_bucket_refills_over_time() -> None:
    now = [0.0]
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        now[0] += seconds

    bucket = TokenBucket(2.0, 2.0, poll_interval=0.25, clock=lambda: now[0], sleep=fake_sleep)

    assert bucket.try_take()
    assert bucket.try_take()
    assert not bucket.try_take()

    asyncio.run(bucket.acquire())
    assert sleeps == [0.25, 0.25]
    assert bucket.tokens == 0.0


def test_token_bucket_with_rate_below_one_still_drains() -> None:
    now = [0.0]
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        now[0] += seconds

    bucket = TokenBucket(0.5, 0.5, poll_interval=0.25, clock=lambda: now[0], sleep=fake_sleep)

    assert bucket.capacity == 1.0
    asyncio.run(bucket.acquire())
    assert sleeps == []

    asyncio.run(bucket.acquire())
    assert sleeps == [0.25] * 8
    assert now[0] == 2.0


def test_backfill_refetch_counts_changed_rows_as_updated() -> None:
    repository = _repository(_record("a"))

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"description": "Brand new text."})

    stats = asyncio.run(
        run_backfill(
            repository,
            _service(repository, handler),
            FAST_CONFIG,
            BackfillSelection(),
            refetch=True,
            sleep=RecordingSleep(),
        )
    )

    assert (stats.processed, stats.updated, stats.skipped, stats.errors) == (1, 1, 0, 0)
    assert repository.descriptions["a"].text_normalized == "Brand new text."

import asyncio
from datetime import date
from typing import Any

import httpx
import pytest

from oppdesc.core.hashing import opportunity_content_hash
from oppdesc.schemas.opportunities import Opportunity
from oppdesc.services.ingestion import IngestionService, ingestion_window
from oppdesc.services.listing_client import ListingClient, parse_listing_page
from oppdesc.services.store import InMemoryRepository

LISTING_URL = "https://listing.example.test/opportunities/v2/search"


def _payload(notice_id: str = "abc123", **overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "noticeId": notice_id,
        "title": "Valve assembly",
        "postedDate": "2024-05-01",
        "type": "Solicitation",
        "responseDeadline": None,
        "active": "Yes",
        "department": "DEPT OF DEFENSE",
        "subTier": "DEPT OF THE NAVY",
        "office": "NAVSUP",
        "description": "https://api.sam.gov/prod/opportunities/v1/noticedesc?noticeid=" + notice_id,
        "placeOfPerformance": {"city": {"name": "Norfolk"}, "state": {"code": "VA", "name": "Virginia"}},
        "pointOfContact": [{"email": "buyer@navy.mil", "fullName": "Pat Buyer"}],
        "uiLink": "https://sam.gov/opp/" + notice_id,
    }
    payload.update(overrides)
    return payload


def test_opportunity_accepts_flexible_upstream_shapes() -> None:
    opportunity = Opportunity.model_validate(_payload(title=None))

    assert opportunity.title == ""
    assert opportunity.active is True
    assert opportunity.place_of_performance.city == "Norfolk"
    assert opportunity.place_of_performance.state == "VA"
    assert opportunity.point_of_contact[0].full_name == "Pat Buyer"
    assert "uiLink" not in opportunity.to_payload()


def test_opportunity_requires_notice_id() -> None:
    with pytest.raises(ValueError):
        Opportunity.model_validate(_payload(noticeId="  "))


def test_content_hash_ignores_key_order_and_unhashed_fields() -> None:
    payload = Opportunity.model_validate(_payload()).to_payload()
    reordered = dict(reversed(list(payload.items())))
    reordered["somethingElse"] = "ignored"

    assert opportunity_content_hash(payload) == opportunity_content_hash(reordered)

    changed = dict(payload, title="Different title")
    assert opportunity_content_hash(changed) != opportunity_content_hash(payload)


def test_ingest_record_new_skipped_updated() -> None:
    repository = InMemoryRepository()
    service = IngestionService(repository)

    assert asyncio.run(service.ingest_record(_payload())) == "new"
    assert asyncio.run(service.ingest_record(_payload())) == "skipped"
    assert asyncio.run(service.ingest_record(_payload(title="Valve assembly, revised"))) == "updated"

    stored = asyncio.run(repository.get_opportunity("abc123"))
    assert stored.title == "Valve assembly, revised"
    assert asyncio.run(repository.count_opportunity_versions("abc123")) == 1
    assert repository.opportunity_writes == 2


def test_ingest_records_counts_invalid_records_as_errors() -> None:
    repository = InMemoryRepository()
    service = IngestionService(repository)

    stats = asyncio.run(
        service.ingest_records([_payload("one"), {"title": "no notice id"}, _payload("two"), _payload("one")])
    )

    assert (stats.total, stats.new, stats.updated, stats.skipped, stats.errors) == (4, 2, 0, 1, 1)


def test_ingest_from_listing_pages_until_total() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        offset = int(request.url.params["offset"])
        count = 100 if offset == 0 else 50
        records = [_payload(f"n{offset + index}") for index in range(count)]
        return httpx.Response(200, json={"totalRecords": 150, "opportunitiesData": records})

    client = ListingClient(LISTING_URL, "test-key", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    service = IngestionService(InMemoryRepository())

    stats = asyncio.run(
        service.ingest_from_listing(client, posted_from=date(2024, 4, 1), posted_to=date(2024, 5, 1), page_size=100)
    )

    assert stats.total == 150
    assert stats.new == 150
    assert [request.url.params["offset"] for request in requests] == ["0", "100"]
    first = requests[0].url.params
    assert first["postedFrom"] == "04/01/2024"
    assert first["postedTo"] == "05/01/2024"
    assert first["ptype"] == "o"
    assert first["limit"] == "100"
    assert first["api_key"] == "test-key"


def test_ingest_from_listing_aborts_on_page_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "boom"})

    client = ListingClient(LISTING_URL, None, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    service = IngestionService(InMemoryRepository())

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(service.ingest_from_listing(client, posted_from=date(2024, 4, 1), posted_to=date(2024, 5, 1)))


def test_parse_listing_page() -> None:
    page = parse_listing_page({"totalRecords": "2", "opportunitiesData": [_payload("a"), "junk", _payload("b")]})
    assert page.total_records == 2
    assert [record["noticeId"] for record in page.records] == ["a", "b"]

    assert parse_listing_page({"totalRecords": 0, "opportunitiesData": None}).records == []
    with pytest.raises(ValueError):
        parse_listing_page([])


def test_ingestion_window() -> None:
    assert ingestion_window(date(2024, 5, 31), 30) == (date(2024, 5, 1), date(2024, 5, 31))

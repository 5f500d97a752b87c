from __future__ import annotations

import asyncio
import json

import httpx
from fastapi.testclient import TestClient

from oppdesc.api.routes.opportunities import get_description_service
from oppdesc.main import app
from oppdesc.services.descriptions import DescriptionService, get_description_fetcher
from oppdesc.services.fetcher import DescriptionFetcher
from oppdesc.services.ingestion import IngestionService
from oppdesc.services.locks import description_lock_key
from oppdesc.services.repository import get_repository
from oppdesc.services.store import InMemoryRepository

DESCRIPTION_URL = "https://api.sam.gov/prod/opportunities/v1/noticedesc?noticeid=abc123"


async def _no_sleep(_: float) -> None:
    return None


def _handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"description": "Quote valid for 60 days."})


def _seeded_repository() -> InMemoryRepository:
    repository = InMemoryRepository()
    payload = {"noticeId": "abc123", "title": "Valve assembly", "description": DESCRIPTION_URL}
    asyncio.run(IngestionService(repository).ingest_record(payload))
    return repository


def _fetcher() -> DescriptionFetcher:
    return DescriptionFetcher("test-key", client=httpx.AsyncClient(transport=httpx.MockTransport(_handler)))


def test_opportunity_and_description_routes() -> None:
    repository = _seeded_repository()
    fetcher = _fetcher()
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_description_fetcher] = lambda: fetcher
    try:
        client = TestClient(app)

        before = client.get("/opportunities/abc123")
        assert before.status_code == 200
        assert before.json()["description_status"] == "available_unfetched"
        assert before.json()["title"] == "Valve assembly"

        description = client.get("/opportunities/abc123/description")
        assert description.status_code == 200
        body = description.json()
        assert body["status"] == "fetched"
        assert body["normalized_text"] == "Quote valid for 60 days."
        assert json.loads(body["raw_json_response"]) == {"description": "Quote valid for 60 days."}

        after = client.get("/opportunities/abc123")
        assert after.json()["description_status"] == "ready"
    finally:
        app.dependency_overrides.clear()


def test_unknown_opportunity_returns_404() -> None:
    repository = InMemoryRepository()
    fetcher = _fetcher()
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_description_fetcher] = lambda: fetcher
    try:
        client = TestClient(app)
        assert client.get("/opportunities/missing").status_code == 404
        assert client.get("/opportunities/missing/description").status_code == 404
    finally:
        app.dependency_overrides.clear()


def test_busy_description_returns_503_with_retry_after() -> None:
    repository = _seeded_repository()
    holder = repository.locks.lock(description_lock_key("abc123"))
    assert asyncio.run(holder.try_acquire())
    service = DescriptionService(repository, _fetcher(), lock_wait_seconds=0.0, sleep=_no_sleep)
    app.dependency_overrides[get_description_service] = lambda: service
    try:
        client = TestClient(app)
        response = client.get("/opportunities/abc123/description")
        assert response.status_code == 503
        assert response.headers["retry-after"] == "1"
    finally:
        app.dependency_overrides.clear()

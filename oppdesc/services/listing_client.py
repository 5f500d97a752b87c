from __future__ import annotations

from datetime import date
from typing import Any

import httpx

from oppdesc.schemas.opportunities import ListingPage

LISTING_DATE_FORMAT = "%m/%d/%Y"
DEFAULT_PROCUREMENT_TYPE = "o"


class ListingClient:
    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        *,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def search_opportunities(
        self,
        *,
        posted_from: date,
        posted_to: date,
        limit: int = 100,
        offset: int = 0,
        ptype: str = DEFAULT_PROCUREMENT_TYPE,
    ) -> ListingPage:
        params: dict[str, Any] = {
            "postedFrom": posted_from.strftime(LISTING_DATE_FORMAT),
            "postedTo": posted_to.strftime(LISTING_DATE_FORMAT),
            "limit": limit,
            "offset": offset,
            "ptype": ptype,
        }
        if self.api_key:
            params["api_key"] = self.api_key

        if self._client is not None:
            payload = await self._get(self._client, params)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                payload = await self._get(client, params)
        return parse_listing_page(payload)

    async def _get(self, client: httpx.AsyncClient, params: dict[str, Any]) -> Any:
        response = await client.get(self.base_url, params=params, headers={"Accept": "application/json"})
        response.raise_for_status()
        return response.json()


def parse_listing_page(payload: Any) -> ListingPage:
    if not isinstance(payload, dict):
        raise ValueError("listing response must be a JSON object")
    records = payload.get("opportunitiesData") or []
    if not isinstance(records, list):
        raise ValueError("listing response opportunitiesData must be a list")
    try:
        total = int(payload.get("totalRecords") or 0)
    except (TypeError, ValueError) as exc:
        raise ValueError("listing response totalRecords must be an integer") from exc
    return ListingPage(total_records=total, records=[record for record in records if isinstance(record, dict)])

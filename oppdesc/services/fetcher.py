from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Literal

import httpx

from oppdesc.services.unwrap import extract_description_json_like, unwrap_description_text

logger = logging.getLogger(__name__)

FetchOutcome = Literal["fetched", "not_found", "error"]

NOT_FOUND_PHRASE = "description not found"
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_BODY_BYTES = 5 * 1024 * 1024


class DescriptionFetchError(Exception):
    """Raised when a description could not be fetched and the caller needs an exception."""

    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class ResponseTooLargeError(Exception):
    """Raised while streaming a body that exceeds the configured cap."""


@dataclass(slots=True)
class FetchResult:
    outcome: FetchOutcome
    text: str = ""
    raw_body: str | None = None
    http_status: int | None = None
    content_type: str | None = None
    error: str | None = None
    retryable: bool = False

    def raise_for_error(self) -> None:
        if self.outcome == "error":
            raise DescriptionFetchError(
                self.error or "description fetch failed",
                status_code=self.http_status,
                retryable=self.retryable,
            )


class DescriptionFetcher:
    """Fetches a per-record description URL and reduces the body to plain text."""

    def __init__(
        self,
        api_key: str | None,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.max_body_bytes = max_body_bytes
        self._client = client

    async def fetch(self, url: str) -> FetchResult:
        if self._client is not None:
            return await self._fetch_with(self._client, url)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await self._fetch_with(client, url)

    async def _fetch_with(self, client: httpx.AsyncClient, url: str) -> FetchResult:
        try:
            request_url = httpx.URL(url)
            if self.api_key:
                request_url = request_url.copy_merge_params({"api_key": self.api_key})
            async with client.stream(
                "GET",
                request_url,
                headers={"Accept": "application/json"},
                timeout=self.timeout_seconds,
            ) as response:
                status_code = response.status_code
                content_type = response.headers.get("content-type")
                try:
                    body = await self._read_capped(response)
                except ResponseTooLargeError as exc:
                    return FetchResult(
                        outcome="error",
                        http_status=status_code,
                        content_type=content_type,
                        error=str(exc),
                    )
        except httpx.TimeoutException as exc:
            logger.warning("description fetch timed out url=%s", _redact(url))
            return FetchResult(outcome="error", error=f"request timed out: {exc}", retryable=True)
        except httpx.TransportError as exc:
            logger.warning("description fetch transport failure url=%s error=%s", _redact(url), exc)
            return FetchResult(outcome="error", error=f"connection failed: {exc}", retryable=True)
        except httpx.InvalidURL as exc:
            return FetchResult(outcome="error", error=f"invalid URL: {exc}")

        return interpret_description_body(body, status_code=status_code, content_type=content_type)

    async def _read_capped(self, response: httpx.Response) -> str:
        chunks: list[bytes] = []
        received = 0
        async for chunk in response.aiter_bytes():
            received += len(chunk)
            if received > self.max_body_bytes:
                raise ResponseTooLargeError(f"response body exceeds maximum size of {self.max_body_bytes} bytes")
            chunks.append(chunk)
        return b"".join(chunks).decode(response.encoding or "utf-8", errors="replace")


def interpret_description_body(body: str, *, status_code: int, content_type: str | None = None) -> FetchResult:
    """Classify an upstream response body into fetched / not_found / error."""

    def finish(text: str, *, outcome: FetchOutcome | None = None, status: int = status_code) -> FetchResult:
        if outcome is None:
            outcome = _outcome_for_status(status)
        error = None
        if outcome == "error":
            error = f"description API returned status {status}"
        return FetchResult(
            outcome=outcome,
            text=text,
            raw_body=body,
            http_status=status,
            content_type=content_type,
            error=error,
            retryable=outcome == "error" and status in RETRYABLE_STATUS_CODES,
        )

    try:
        parsed = json.loads(body)
    except (ValueError, RecursionError):
        recovered = extract_description_json_like(body)
        if recovered is not None and recovered.strip():
            return finish(unwrap_description_text(recovered).strip(), outcome="fetched")
    else:
        if isinstance(parsed, dict):
            description = parsed.get("description")
            if isinstance(description, str) and description:
                return finish(unwrap_description_text(description).strip(), outcome="fetched")
            error_message = parsed.get("error")
            if isinstance(error_message, str) and NOT_FOUND_PHRASE in error_message.lower():
                return finish("", outcome="not_found", status=404)
            return finish(unwrap_description_text(body).strip())

    text = unwrap_description_text(body).strip()
    if NOT_FOUND_PHRASE in text.lower():
        return finish(text, outcome="not_found", status=404)
    return finish(text)


def _outcome_for_status(status_code: int) -> FetchOutcome:
    if status_code == 404:
        return "not_found"
    if 200 <= status_code < 300:
        return "fetched"
    return "error"


def _redact(url: str) -> str:
    return url.split("?", 1)[0]

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

SourceType = Literal["none", "inline", "url"]
FetchStatus = Literal["not_requested", "fetched", "not_found", "error"]
DescriptionStatus = Literal["none", "fetched", "not_found", "error", "available_unfetched"]
DescriptionListStatus = Literal["none", "ready", "not_found", "error", "available_unfetched"]


class AiMeta(BaseModel):
    poc_emails: list[str] = Field(default_factory=list)
    poc_phones: list[str] = Field(default_factory=list)
    important_urls: list[str] = Field(default_factory=list)
    set_aside_detected: str | None = None
    clauses_kept: list[str] = Field(default_factory=list)
    certs_required: list[str] = Field(default_factory=list)
    wawf_required: bool | None = None
    quote_validity_days: int | None = None
    do_rated: bool | None = None
    requires_irpod_review: bool | None = None
    key_requirements: list[str] = Field(default_factory=list)


class DescriptionOut(BaseModel):
    notice_id: str
    status: DescriptionStatus
    source_type: SourceType
    source_url: str | None = None
    raw_text: str | None = None
    raw_post_parse_text: str | None = None
    normalized_text: str | None = None
    raw_json_response: str | None = None
    normalization_version: int | None = None
    fetched_at: datetime | None = None
    last_error: str | None = None

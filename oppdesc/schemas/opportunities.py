import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel

from oppdesc.schemas.descriptions import DescriptionListStatus

FLEXIBLE_STRING_KEYS = ("value", "code", "name", "description", "text", "label")
TRUTHY_STRINGS = {"true", "1", "yes"}


def coerce_flexible_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY_STRINGS
    return False


def coerce_flexible_string(value: Any) -> str:
    """Accept a plain string or an object carrying the value under a common key."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        for key in FLEXIBLE_STRING_KEYS:
            candidate = value.get(key)
            if isinstance(candidate, str) and candidate:
                return candidate
        return json.dumps(value, separators=(",", ":"), sort_keys=True)
    return ""


class _UpstreamModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    @field_validator("*", mode="before")
    @classmethod
    def _none_as_empty_string(cls, value: Any, info: ValidationInfo) -> Any:
        field = cls.model_fields.get(info.field_name)
        if value is None and field is not None and field.annotation is str:
            return ""
        return value


class Naics(_UpstreamModel):
    code: str = ""
    description: str = ""


class PointOfContact(_UpstreamModel):
    fax: str = ""
    type: str = ""
    email: str = ""
    phone: str = ""
    title: str = ""
    full_name: str = ""
    additional_info_link: str = ""


class PlaceOfPerformance(_UpstreamModel):
    street_address: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    country: str = ""

    @field_validator("street_address", "city", "state", "zip", "country", mode="before")
    @classmethod
    def _flexible(cls, value: Any) -> str:
        return coerce_flexible_string(value)


class Link(_UpstreamModel):
    rel: str = ""
    href: str = ""
    type: str = ""


class Opportunity(_UpstreamModel):
    """One listing record as returned by the search API (camelCase on the wire)."""

    notice_id: str
    title: str = ""
    organization_type: str = ""
    posted_date: str = ""
    type: str = ""
    base_type: str = ""
    archive_type: str = ""
    archive_date: str = ""
    type_of_set_aside: str = ""
    type_of_set_aside_desc: str = ""
    response_deadline: str = ""
    naics: list[Naics] = Field(default_factory=list)
    classification_code: str = ""
    active: bool = False
    point_of_contact: list[PointOfContact] = Field(default_factory=list)
    place_of_performance: PlaceOfPerformance = Field(default_factory=PlaceOfPerformance)
    description: str = ""
    department: str = ""
    sub_tier: str = ""
    office: str = ""
    solicitation_number: str = ""
    agency_path_name: str = ""
    links: list[Link] = Field(default_factory=list)

    @field_validator("notice_id")
    @classmethod
    def _require_notice_id(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("noticeId must be a non-empty string")
        return stripped

    @field_validator("active", mode="before")
    @classmethod
    def _flexible_active(cls, value: Any) -> bool:
        return coerce_flexible_bool(value)

    @field_validator("naics", "point_of_contact", "links", mode="before")
    @classmethod
    def _null_list(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("place_of_performance", mode="before")
    @classmethod
    def _null_place(cls, value: Any) -> Any:
        return {} if value is None else value

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class ListingPage(BaseModel):
    """One page of search results; records stay raw so one bad record cannot sink the page."""

    total_records: int = 0
    records: list[dict[str, Any]] = Field(default_factory=list)


class OpportunityDetailOut(BaseModel):
    notice_id: str
    title: str
    department: str = ""
    sub_tier: str = ""
    office: str = ""
    posted_date: str = ""
    response_deadline: str = ""
    type: str = ""
    type_of_set_aside: str = ""
    active: bool = False
    description: str = ""
    content_hash: str
    description_status: DescriptionListStatus
    raw: dict[str, Any] = Field(default_factory=dict)

from __future__ import annotations

import hashlib
import json
from typing import Any

# Field order is part of the hash contract; reordering invalidates stored hashes.
OPPORTUNITY_HASH_FIELDS: tuple[str, ...] = (
    "noticeId",
    "title",
    "organizationType",
    "postedDate",
    "type",
    "baseType",
    "archiveType",
    "archiveDate",
    "typeOfSetAside",
    "typeOfSetAsideDesc",
    "responseDeadline",
    "naics",
    "classificationCode",
    "active",
    "pointOfContact",
    "placeOfPerformance",
    "description",
    "department",
    "subTier",
    "office",
    "links",
)


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def opportunity_content_hash(payload: dict[str, Any]) -> str:
    """Hash the canonical subset of an opportunity payload (camelCase keys)."""
    subset = {field: payload.get(field) for field in OPPORTUNITY_HASH_FIELDS}
    serialized = json.dumps(subset, separators=(",", ":"), ensure_ascii=False, default=str)
    return content_hash(serialized)

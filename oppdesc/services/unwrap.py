"""Recover description text from JSON wrappers the upstream API emits.

The description endpoint is inconsistent: sometimes it returns plain text,
sometimes ``{"description": "..."}``, sometimes that object JSON-encoded a
second time, and sometimes an object whose string value contains raw CR/LF
bytes (invalid JSON). Everything here is total: callers always get a string
back, falling back to the input when nothing can be unwrapped.
"""

from __future__ import annotations

import json
import re

MAX_UNWRAP_DEPTH = 2
MAX_EXTRACT_SCAN_LENGTH = 10 * 1024 * 1024
MAX_EXTRACTED_LENGTH = 5 * 1024 * 1024

DESCRIPTION_KEY = '"description"'

_SIMPLE_ESCAPES = {
    '"': '"',
    "\\": "\\",
    "/": "/",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
}
_STRING_CHUNK_RE = re.compile(r'[^"\\]+')
_HEX4_RE = re.compile(r"[0-9a-fA-F]{4}")
_STRUCTURAL_RE = re.compile(r'["{}\[\]]')
_IN_STRING_RE = re.compile(r'["\\]')
_JSON_WHITESPACE = " \t\n\r"


def unwrap_description_text(value: str) -> str:
    """Peel up to ``MAX_UNWRAP_DEPTH`` wrapper layers off ``value``.

    If the depth limit is hit while the remaining text still looks like a
    ``{"description": ...}`` object, the tolerant scanner gets one last try so
    the payload is still recovered when it is detectable.
    """
    current = value
    for _ in range(MAX_UNWRAP_DEPTH):
        inner = _unwrap_once(current)
        if inner is None:
            return current
        current = inner

    salvaged = _salvage_wrapped_object(current)
    return salvaged if salvaged is not None else current


def extract_description_json_like(value: str) -> str | None:
    """Return the top-level ``description`` string of a JSON-ish object.

    Tolerates raw newlines inside string literals and ignores ``description``
    keys in nested objects or inside other strings. Returns ``None`` when there
    is no top-level string value (or a guardrail trips); an empty string is a
    valid match.
    """
    if len(value) > MAX_EXTRACT_SCAN_LENGTH:
        return None

    start = value.find("{")
    if start < 0:
        return None

    depth = 1
    index = start + 1
    length = len(value)
    while index < length:
        match = _STRUCTURAL_RE.search(value, index)
        if match is None:
            return None
        index = match.start()
        char = value[index]

        if char == '"':
            if depth == 1 and value.startswith(DESCRIPTION_KEY, index):
                found, resume_at = _read_description_value(value, index + len(DESCRIPTION_KEY))
                if found is not None:
                    return found
                if resume_at is None:
                    return None
                index = resume_at
                continue
            closing = _skip_string(value, index)
            if closing is None:
                return None
            index = closing
            continue

        if char in "{[":
            depth += 1
        else:
            depth -= 1
            if depth < 0:
                return None
        index += 1

    return None


def parse_lenient_json_string(value: str, start: int) -> tuple[str, int] | None:
    """Decode the JSON string literal whose opening quote sits at ``start``.

    Returns the decoded text and the index just past the closing quote. Raw
    control characters are accepted as-is, unknown escapes keep the escaped
    character, and unpaired surrogates decode to U+FFFD.
    """
    if start < 0 or start >= len(value) or value[start] != '"':
        return None

    parts: list[str] = []
    index = start + 1
    length = len(value)
    while index < length:
        chunk = _STRING_CHUNK_RE.match(value, index)
        if chunk is not None:
            parts.append(chunk.group())
            index = chunk.end()
            continue

        char = value[index]
        if char == '"':
            return "".join(parts), index + 1

        if index + 1 >= length:
            return None
        escape = value[index + 1]
        if escape != "u":
            parts.append(_SIMPLE_ESCAPES.get(escape, escape))
            index += 2
            continue

        code_point = _read_hex4(value, index + 2)
        if code_point is None:
            return None
        index += 6
        if 0xD800 <= code_point <= 0xDBFF and value.startswith("\\u", index):
            low = _read_hex4(value, index + 2)
            if low is not None and 0xDC00 <= low <= 0xDFFF:
                parts.append(chr(0x10000 + ((code_point - 0xD800) << 10) + (low - 0xDC00)))
                index += 6
                continue
        if 0xD800 <= code_point <= 0xDFFF:
            parts.append("\ufffd")
        else:
            parts.append(chr(code_point))

    return None


def _unwrap_once(value: str) -> str | None:
    stripped = value.strip()
    if not stripped:
        return None

    if stripped.startswith("{") and DESCRIPTION_KEY in stripped:
        try:
            parsed = json.loads(stripped)
        except (ValueError, RecursionError):
            recovered = extract_description_json_like(stripped)
            if recovered is not None and recovered.strip():
                return recovered
            return None
        if not isinstance(parsed, dict):
            return None
        description = parsed.get("description")
        if isinstance(description, str) and description.strip():
            return description
        if isinstance(description, (dict, list)):
            return json.dumps(description, separators=(",", ":"), ensure_ascii=False)
        return None

    if stripped.startswith('"'):
        try:
            decoded = json.loads(stripped)
        except (ValueError, RecursionError):
            decoded = None
        if isinstance(decoded, str):
            return decoded
        recovered = extract_description_json_like(stripped)
        if recovered is not None and recovered.strip():
            return recovered

    return None


def _salvage_wrapped_object(value: str) -> str | None:
    stripped = value.strip()
    if not (stripped.startswith("{") and DESCRIPTION_KEY in stripped):
        return None
    recovered = extract_description_json_like(stripped)
    if recovered is None or not recovered.strip():
        return None
    return recovered


def _read_description_value(value: str, index: int) -> tuple[str | None, int | None]:
    """Parse ``: "<value>"`` after a top-level description key.

    Returns ``(text, None)`` on success, ``(None, resume_index)`` when the key
    turned out to be a plain string token, and ``(None, None)`` on a hard miss.
    """
    colon = _skip_whitespace(value, index)
    if colon >= len(value) or value[colon] != ":":
        return None, index

    value_start = _skip_whitespace(value, colon + 1)
    if value_start >= len(value) or value[value_start] != '"':
        return None, None

    parsed = parse_lenient_json_string(value, value_start)
    if parsed is None:
        return None, None
    text, _ = parsed
    if len(text) > MAX_EXTRACTED_LENGTH:
        return None, None
    return text, None


def _skip_string(value: str, quote_index: int) -> int | None:
    index = quote_index + 1
    while True:
        match = _IN_STRING_RE.search(value, index)
        if match is None:
            return None
        if match.group() == '"':
            return match.end()
        index = match.end() + 1


def _skip_whitespace(value: str, index: int) -> int:
    while index < len(value) and value[index] in _JSON_WHITESPACE:
        index += 1
    return index


def _read_hex4(value: str, index: int) -> int | None:
    match = _HEX4_RE.match(value, index)
    if match is None:
        return None
    return int(match.group(), 16)

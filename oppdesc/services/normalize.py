from __future__ import annotations

import html
import re

# Bump when any normalization or extraction rule changes; cached rows with an
# older version are reprocessed on next read.
NORMALIZATION_VERSION = 4

_TAG_RE = re.compile(r"<[^>]*>")
_FORMATTING_TAG_RE = re.compile(r"(?i)</?(strong|b|em|i|u|br|p)(\s[^>]*)?/?>")
_PUNCTUATION_ENTITY_RE = re.compile(r"([.,;:!?])(&nbsp;|&ensp;|&emsp;|&thinsp;)")
_PIPE_ONLY_LINE_RE = re.compile(r"[ \t|]+")
_PIPE_NUMBER_RE = re.compile(r"\|[0-9]+\|")
_PIPE_RUN_RE = re.compile(r"\|\|+")
_LEADING_PIPES_RE = re.compile(r"^\|+\s*")
_TRAILING_PIPES_RE = re.compile(r"\s*\|+$")
_SPACE_RUN_RE = re.compile(r"\s{2,}")

MAX_CONSECUTIVE_BLANK_LINES = 2


def normalize_raw(text: str) -> str:
    """Tier 1: canonical line endings, trailing spaces/tabs trimmed, markup untouched."""
    unified = text.replace("\r\n", "\n").replace("\r", "\n")
    return "\n".join(line.rstrip(" \t") for line in unified.split("\n"))


def normalize(text: str) -> str:
    """Tier 2: display text with markup, entities and clause-table debris cleaned up.

    A single pass can expose new work (``&amp;lt;b&amp;gt;`` decodes to a tag
    only after the first pass), so passes repeat until the output is stable.
    Every pass that changes the text also shortens it, which bounds the loop.
    """
    current = _display_pass(text)
    while True:
        following = _display_pass(current)
        if following == current:
            return current
        current = following


def _display_pass(text: str) -> str:
    stripped = _TAG_RE.sub(_keep_formatting_tag, text)
    stripped = _PUNCTUATION_ENTITY_RE.sub(r"\1", stripped)
    decoded = normalize_raw(html.unescape(stripped))

    lines: list[str] = []
    blank_run = 0
    for line in decoded.split("\n"):
        if _PIPE_ONLY_LINE_RE.fullmatch(line):
            continue
        cleaned = _PIPE_NUMBER_RE.sub(" ", line)
        cleaned = _PIPE_RUN_RE.sub(" ", cleaned)
        cleaned = _LEADING_PIPES_RE.sub("", cleaned)
        cleaned = _TRAILING_PIPES_RE.sub("", cleaned)
        cleaned = _SPACE_RUN_RE.sub(" ", cleaned).strip()
        if cleaned:
            blank_run = 0
            lines.append(cleaned)
            continue
        blank_run += 1
        if blank_run <= MAX_CONSECUTIVE_BLANK_LINES:
            lines.append("")
    return "\n".join(lines)


def _keep_formatting_tag(match: re.Match[str]) -> str:
    tag = match.group()
    if _FORMATTING_TAG_RE.fullmatch(tag):
        return tag
    return " "

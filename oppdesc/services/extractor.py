"""Deterministic extraction of an AI-ready excerpt and structured facts.

The input is Tier 1 text: clause tables still carry their ``|`` separators,
which the clause matcher depends on. Every heuristic is expressed as a rule
table below; the traversal functions only consume the tables.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import re

from oppdesc.core.config import ExtractorConfig
from oppdesc.schemas.descriptions import AiMeta

AI_INPUT_VERSION = 1


@dataclass(slots=True, frozen=True)
class FactRule:
    label: str
    keywords: tuple[str, ...] = ()
    pattern: re.Pattern[str] | None = None

    def apply(self, text: str, lowered: str) -> str | None:
        """Return the fact label (formatted with the first capture group) on a match."""
        if self.pattern is not None:
            match = self.pattern.search(text)
            if match is None:
                return None
            return self.label.format(*match.groups())
        if any(keyword in lowered for keyword in self.keywords):
            return self.label
        return None


@dataclass(slots=True)
class AiExtraction:
    ai_input_text: str = ""
    excerpt_text: str = ""
    meta: AiMeta = field(default_factory=AiMeta)
    poc_email_primary: str | None = None


QUOTE_VALIDITY_RE = re.compile(
    r"(?i)(?:pricing\s+for\s+this\s+)?(?:quote|quotation|offer)\s+(?:is\s+)?(?:valid|validity|good)\s+(?:for\s+)?(\d+)\s*days?"
)
ROTI_LEAD_TIME_RE = re.compile(
    r"(?i)(?:rotis?|reports\s+of\s+test\s+and\s+inspection).*?(?:due|required)\s+(\d+)\s+days?\s+prior"
)
CERTIFICATE_RE = re.compile(r"(?i)(?:certificate|certification|cert)\s+(?:of\s+)?(?:compliance|conformance|origin|insurance)")
CERTIFICATE_REQUIREMENT_RE = re.compile(
    r"(?i)(?:certificate|certification|cert)\s+(?:of\s+)?(?:compliance|conformance|origin|insurance|quality)"
)
SET_ASIDE_RE = re.compile(r"(?i)(?:set[-\s]?aside|small\s+business)\s*:?\s*([^\n]+)")
EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
PHONE_RE = re.compile(r"(?:\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}|\d{3}-\d{3}-\d{4}|\d{10})")
URL_RE = re.compile(r"https?://[^\s<>\"{}|\\^`\[\]]+")

# Order matters: facts are listed in the AI header in this order.
KEY_FACT_RULES: tuple[FactRule, ...] = (
    FactRule("Requires IRPOD review", keywords=("irpod",)),
    FactRule("Quote validity: {} days", pattern=QUOTE_VALIDITY_RE),
    FactRule("ROTIs (Reports of Test and Inspection) required", keywords=("rotis", "reports of test and inspection")),
    FactRule("ROTIs due {} days prior to delivery", pattern=ROTI_LEAD_TIME_RE),
    FactRule("MIL-P-24503 specification", keywords=("mil-p-24503", "mil p 24503")),
    FactRule("Certificate required", pattern=CERTIFICATE_RE),
    FactRule("DO-rated order", keywords=("do rated", "rated order")),
    FactRule("WAWF (Wide Area Workflow) required", keywords=("wawf", "wide area workflow")),
    FactRule("CMMC certification required", keywords=("cmmc",)),
)

# Only mined from the boilerplate region, which is otherwise dropped.
RESTRICTION_RULES: tuple[FactRule, ...] = (
    FactRule("NOFORN restrictions apply", keywords=("noforn",)),
    FactRule("Need-to-know restrictions apply", keywords=("need-to-know", "need to know")),
    FactRule("Foreign nationals restrictions may apply", keywords=("foreign national",)),
)

RELEVANT_CLAUSE_KEYWORDS: tuple[str, ...] = (
    "small business",
    "set-aside",
    "set aside",
    "cybersecurity",
    "cmmc",
    "wawf",
    "wide area workflow",
    "priority rating",
    "payment",
    "certificate",
    "compliance",
    "delivery",
    "submission",
    "quote",
    "validity",
    "irpod",
    "do rated",
    "rated order",
    "certification",
    "certificate of compliance",
)

PARAGRAPH_KEYWORD_WEIGHTS: dict[str, int] = {
    keyword: 2
    for keyword in (
        "scope",
        "requirements",
        "delivery",
        "submission",
        "certificate",
        "quote",
        "valid",
        "due",
        "close",
        "amendment",
        "irpod",
        "wawf",
        "cmmc",
        "easa",
        "faa",
        "rotis",
        "specification",
        "deliverable",
        "contract",
        "order",
        "purchase",
        "acquisition",
    )
}
BOILERPLATE_PHRASES: tuple[str, ...] = (
    "block 1:",
    "dd form 1423",
    "inspection acceptance",
    "information regarding abbreviations",
)
BOILERPLATE_PENALTY = 10

# Boolean metadata flags keyed by AiMeta field name.
FLAG_KEYWORDS: dict[str, tuple[str, ...]] = {
    "wawf_required": ("wawf", "wide area workflow"),
    "do_rated": ("do rated", "rated order"),
    "requires_irpod_review": ("irpod",),
}

BOILERPLATE_START_RE = re.compile(r"(?i)information regarding abbreviations.*dd form 1423")
BOILERPLATE_END_RES: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?i)date of first submission"),
    re.compile(r"(?i)submit at the time of material delivery"),
    re.compile(r"(?i)certificate of compliance"),
)
HEADING_RE = re.compile(r"^\d+\.\s+")

CLAUSE_TITLE_MIN_CHARS = 8
CLAUSE_TITLE_MAX_CHARS = 100
HEADING_MAX_CHARS = 80
SHOUTING_MIN_CHARS = 100
UPPERCASE_RATIO_PERCENT = 80
EXCERPT_ELLIPSIS = "..."


def optimize_for_ai(raw_normalized_text: str, config: ExtractorConfig | None = None) -> AiExtraction:
    config = config or ExtractorConfig()
    if not raw_normalized_text.strip():
        return AiExtraction()

    lines = raw_normalized_text.split("\n")
    emails = _dedupe(EMAIL_RE.findall(raw_normalized_text))
    phones = _dedupe(PHONE_RE.findall(raw_normalized_text))
    urls = _dedupe(URL_RE.findall(raw_normalized_text))

    facts = extract_key_facts(raw_normalized_text)
    kept_lines, restriction_facts = _strip_boilerplate(lines)
    facts = _dedupe(facts + restriction_facts)

    scored = sorted(
        ((score_paragraph(paragraph), paragraph) for paragraph in split_paragraphs(kept_lines)),
        key=lambda item: item[0],
        reverse=True,
    )
    header = "KEY FACTS:\n" + "\n".join(facts) + "\n\nRELEVANT EXCERPT:\n"
    selected = _select_paragraphs(scored, config=config, available_chars=config.max_chars - len(header))

    meta = AiMeta(
        poc_emails=emails,
        poc_phones=phones,
        important_urls=urls,
        clauses_kept=[title for title in (relevant_clause_title(line) for line in lines) if title],
        certs_required=_dedupe_casefold(CERTIFICATE_REQUIREMENT_RE.findall(raw_normalized_text)),
        key_requirements=facts,
    )
    set_aside = SET_ASIDE_RE.search(raw_normalized_text)
    if set_aside is not None:
        meta.set_aside_detected = set_aside.group(1).strip()
    lowered = raw_normalized_text.lower()
    for flag, keywords in FLAG_KEYWORDS.items():
        if any(keyword in lowered for keyword in keywords):
            setattr(meta, flag, True)
    quote_validity = QUOTE_VALIDITY_RE.search(raw_normalized_text)
    if quote_validity is not None:
        meta.quote_validity_days = int(quote_validity.group(1))

    return AiExtraction(
        ai_input_text=header + "\n\n".join(selected),
        excerpt_text=build_excerpt(selected, target_chars=config.excerpt_target_chars),
        meta=meta,
        poc_email_primary=emails[0] if emails else None,
    )


def extract_key_facts(text: str) -> list[str]:
    lowered = text.lower()
    facts = [fact for fact in (rule.apply(text, lowered) for rule in KEY_FACT_RULES) if fact]
    return _dedupe(facts)


def relevant_clause_title(line: str) -> str | None:
    """Return the clause title of a table row if it names a relevant clause."""
    if "|" not in line:
        return None
    title = line.split("|", 1)[0].strip()
    if not CLAUSE_TITLE_MIN_CHARS <= len(title) <= CLAUSE_TITLE_MAX_CHARS:
        return None
    lowered = title.lower()
    if any(keyword in lowered for keyword in RELEVANT_CLAUSE_KEYWORDS):
        return title
    return None


def split_paragraphs(lines: list[str]) -> list[str]:
    paragraphs: list[str] = []
    current: list[str] = []
    for line in lines:
        stripped = line.strip()
        heading = _is_heading(stripped)
        if not stripped or heading:
            if current:
                paragraphs.append("\n".join(current))
                current = []
            if heading:
                current.append(stripped)
            continue
        current.append(stripped)
    if current:
        paragraphs.append("\n".join(current))
    return [paragraph.strip() for paragraph in paragraphs if paragraph.strip()]


def score_paragraph(paragraph: str) -> int:
    lowered = paragraph.lower()
    score = sum(weight for keyword, weight in PARAGRAPH_KEYWORD_WEIGHTS.items() if keyword in lowered)
    if is_boilerplate_paragraph(paragraph):
        score -= BOILERPLATE_PENALTY
    return score


def is_boilerplate_paragraph(paragraph: str) -> bool:
    stripped = paragraph.strip()
    if not stripped:
        return True
    lowered = stripped.lower()
    if any(phrase in lowered for phrase in BOILERPLATE_PHRASES):
        return True
    return len(stripped) > SHOUTING_MIN_CHARS and _mostly_uppercase(stripped)


def build_excerpt(paragraphs: list[str], *, target_chars: int) -> str:
    excerpt = ""
    for paragraph in paragraphs:
        if len(excerpt) >= target_chars:
            break
        if excerpt:
            excerpt += "\n\n"
        remaining = target_chars - len(excerpt)
        if len(paragraph) <= remaining:
            excerpt += paragraph
            continue
        if remaining > len(EXCERPT_ELLIPSIS):
            excerpt += paragraph[: remaining - len(EXCERPT_ELLIPSIS)] + EXCERPT_ELLIPSIS
        break
    return excerpt.rstrip("\n")


def _select_paragraphs(scored: list[tuple[int, str]], *, config: ExtractorConfig, available_chars: int) -> list[str]:
    selected: list[str] = []
    used_chars = 0
    for position, (score, paragraph) in enumerate(scored):
        if position >= config.max_paragraphs or score <= 0:
            break
        if used_chars + len(paragraph) > available_chars:
            break
        selected.append(paragraph)
        used_chars += len(paragraph) + 2
    return selected


def _strip_boilerplate(lines: list[str]) -> tuple[list[str], list[str]]:
    """Drop the CDRL boilerplate region and mine it for restriction facts.

    The region opens on the abbreviations/DD Form 1423 line (dropped) and
    closes on the first end marker (kept). An unterminated region drops the
    rest of the document without mining it.
    """
    kept: list[str] = []
    facts: list[str] = []
    region: list[str] | None = None
    for line in lines:
        if BOILERPLATE_START_RE.search(line):
            region = []
            continue
        if region is None:
            kept.append(line)
            continue
        if any(pattern.search(line) for pattern in BOILERPLATE_END_RES):
            region_text = "\n".join(region)
            lowered = region_text.lower()
            facts.extend(fact for fact in (rule.apply(region_text, lowered) for rule in RESTRICTION_RULES) if fact)
            region = None
            kept.append(line)
            continue
        region.append(line)
    return kept, facts


def _is_heading(stripped: str) -> bool:
    if HEADING_RE.match(stripped):
        return True
    return 0 < len(stripped) < HEADING_MAX_CHARS and _mostly_uppercase(stripped)


def _mostly_uppercase(text: str) -> bool:
    letters = [char for char in text if char.isascii() and char.isalpha()]
    if not letters:
        return False
    upper = sum(1 for char in letters if char.isupper())
    return upper * 100 // len(letters) >= UPPERCASE_RATIO_PERCENT


def _dedupe(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


def _dedupe_casefold(items: list[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for item in items:
        cleaned = item.strip()
        key = cleaned.lower()
        if key in seen:
            continue
        seen.add(key)
        result.append(cleaned)
    return result

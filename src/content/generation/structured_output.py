"""
Structured output extraction for template-driven generation.

Small local models rarely return clean JSON. parse_template_json() tries, in
order, every plausible JSON candidate in the raw text:

1. strict-json      the whole response
2. code-fence-json  each ``` / ```json fenced block
3. brace-extract    each balanced top-level {...} span (string aware)

Each candidate is parsed strictly, then once more after a light repair
(curly quotes straightened, trailing commas dropped) when the repair changed
anything. The first candidate that validates wins.

Parsing never raises: failures come back as telemetry with a reason.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from loguru import logger

from src.textbook.models import ParseMode, ParserStatus

NOT_FOUND_TEXT = "Not found in provided sources."
DEFAULT_NEXT_STEP = "Re-run the query after applying one focused fix."
MAX_RECOVERED_ITEMS = 3
MAX_RECOVERED_ITEM_LENGTH = 180

# Field synonyms, first present key wins
FIELD_SYNONYMS: dict[str, tuple[str, ...]] = {
    "title": ("title", "heading"),
    "content_markdown": ("content_markdown", "contentMarkdown", "content"),
    "key_points": ("key_points", "keyPoints", "keypoints"),
    "next_steps": ("next_steps", "nextSteps", "nextsteps"),
    "source_ids": ("source_ids", "sourceIds", "sources", "source_id"),
    "common_pitfall": ("common_pitfall", "commonPitfall", "pitfall"),
}
WRAPPER_KEYS = ("output", "result", "data")

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_LIST_LINE_RE = re.compile(r"^(?:[-*]|\d+\.)\s+(.*)$")


@dataclass
class StructuredTemplateOutput:
    """Validated fields of a template response."""
    title: str
    content_markdown: str
    key_points: list[str]
    next_steps: list[str]
    source_ids: list[str] = field(default_factory=list)
    common_pitfall: str = ""

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "content_markdown": self.content_markdown,
            "key_points": list(self.key_points),
            "next_steps": list(self.next_steps),
            "source_ids": list(self.source_ids),
            "common_pitfall": self.common_pitfall,
        }


@dataclass
class RetrievalMetrics:
    pdf_chunks_retrieved: int = 0
    anchor_rows_used: int = 0
    hint_history_count: int = 0

    def to_dict(self) -> dict:
        return {
            "pdf_chunks_retrieved": self.pdf_chunks_retrieved,
            "anchor_rows_used": self.anchor_rows_used,
            "hint_history_count": self.hint_history_count,
        }


@dataclass
class ParseTelemetry:
    """What the parser (and the pipeline around it) observed."""
    status: ParserStatus
    attempts: int = 0
    raw_length: int = 0
    mode: Optional[ParseMode] = None
    failure_reason: Optional[str] = None
    tokens_used: Optional[int] = None
    generation_time_ms: Optional[int] = None
    cache_hit: Optional[bool] = None
    retrieval_metrics: Optional[RetrievalMetrics] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "mode": self.mode.value if self.mode else None,
            "attempts": self.attempts,
            "raw_length": self.raw_length,
            "failure_reason": self.failure_reason,
            "tokens_used": self.tokens_used,
            "generation_time_ms": self.generation_time_ms,
            "cache_hit": self.cache_hit,
            "retrieval_metrics": self.retrieval_metrics.to_dict() if self.retrieval_metrics else None,
        }


@dataclass
class TemplateParseResult:
    output: Optional[StructuredTemplateOutput]
    telemetry: ParseTelemetry

    @property
    def ok(self) -> bool:
        return self.output is not None


@dataclass
class ParseOk:
    output: StructuredTemplateOutput


@dataclass
class ParseFail:
    reason: str  # invalid_json | non_object_payload | missing_required_fields


ParseValidation = Union[ParseOk, ParseFail]


@dataclass
class _Candidate:
    mode: ParseMode
    text: str


# =============================================================================
# Candidate extraction
# =============================================================================


def normalize_raw_text(raw: Optional[str]) -> str:
    """Strip a leading BOM and surrounding whitespace."""
    if not raw:
        return ""
    return raw.lstrip("\ufeff").strip()


def extract_code_fence_candidates(raw: str) -> list[str]:
    return [match.group(1) for match in _FENCE_RE.finditer(raw)]


def extract_balanced_object_candidates(raw: str) -> list[str]:
    """Top-level {...} spans; braces inside JSON strings are ignored."""
    candidates: list[str] = []
    depth = 0
    start = -1
    in_string = False
    escaped = False

    for index, char in enumerate(raw):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start >= 0:
                candidates.append(raw[start:index + 1])
                start = -1

    return candidates


def _collect_candidates(raw: str) -> list[_Candidate]:
    candidates: list[_Candidate] = []
    seen: set[str] = set()

    def push(mode: ParseMode, text: str) -> None:
        trimmed = text.strip()
        if not trimmed or trimmed in seen:
            return
        seen.add(trimmed)
        candidates.append(_Candidate(mode=mode, text=trimmed))

    push(ParseMode.STRICT_JSON, raw)
    for text in extract_code_fence_candidates(raw):
        push(ParseMode.CODE_FENCE_JSON, text)
    for text in extract_balanced_object_candidates(raw):
        push(ParseMode.BRACE_EXTRACT, text)
    return candidates


def repair_likely_json(candidate: str) -> str:
    """Straighten curly quotes and drop trailing commas."""
    repaired = candidate.replace("\u201c", '"').replace("\u201d", '"')
    repaired = repaired.replace("\u2018", "'").replace("\u2019", "'")
    return _TRAILING_COMMA_RE.sub(r"\1", repaired)


# =============================================================================
# Validation
# =============================================================================


def _read_first(source: dict, keys: tuple[str, ...]) -> Any:
    for key in keys:
        if key in source:
            return source[key]
    return None


def _normalize_string(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _normalize_string_list(value: Any) -> list[str]:
    if isinstance(value, list):
        return [item for item in (_normalize_string(v) for v in value) if item]
    if not isinstance(value, str):
        return []
    items = []
    for line in re.split(r"\r?\n|;", value):
        line = re.sub(r"^\s*[-*]\s*", "", line)
        line = re.sub(r"^\s*\d+\.\s*", "", line).strip()
        if line:
            items.append(line)
    return items


def extract_list_items(markdown: str) -> list[str]:
    """Bullet or numbered list lines from markdown, markers removed."""
    items = []
    for line in (markdown or "").splitlines():
        match = _LIST_LINE_RE.match(line.strip())
        if not match:
            continue
        item = match.group(1).strip()
        if item and len(item) <= MAX_RECOVERED_ITEM_LENGTH:
            items.append(item)
    return items


def _recover_list(items: list[str], content_markdown: str, placeholder: str) -> list[str]:
    if items:
        return items
    recovered = extract_list_items(content_markdown)
    if recovered:
        return recovered[:MAX_RECOVERED_ITEMS]
    return [placeholder]


def _primary_object(parsed: Any) -> Optional[dict]:
    if isinstance(parsed, dict):
        nested = _read_first(parsed, WRAPPER_KEYS)
        return nested if isinstance(nested, dict) else parsed
    if isinstance(parsed, list) and len(parsed) == 1 and isinstance(parsed[0], dict):
        return parsed[0]
    return None


def validate_structured_output(candidate: str) -> ParseValidation:
    """Parse one candidate strictly and validate its fields."""
    try:
        parsed = json.loads(candidate)
    except (json.JSONDecodeError, ValueError):
        return ParseFail("invalid_json")

    root = _primary_object(parsed)
    if root is None:
        return ParseFail("non_object_payload")

    title = _normalize_string(_read_first(root, FIELD_SYNONYMS["title"]))
    content = _normalize_string(_read_first(root, FIELD_SYNONYMS["content_markdown"]))
    key_points = _recover_list(
        _normalize_string_list(_read_first(root, FIELD_SYNONYMS["key_points"])),
        content,
        NOT_FOUND_TEXT,
    )
    next_steps = _recover_list(
        _normalize_string_list(_read_first(root, FIELD_SYNONYMS["next_steps"])),
        content,
        DEFAULT_NEXT_STEP,
    )
    source_ids = _normalize_string_list(_read_first(root, FIELD_SYNONYMS["source_ids"]))
    pitfall = _normalize_string(_read_first(root, FIELD_SYNONYMS["common_pitfall"]))

    if not title or not content or not key_points or not next_steps:
        return ParseFail("missing_required_fields")

    return ParseOk(
        StructuredTemplateOutput(
            title=title,
            content_markdown=content,
            key_points=key_points,
            next_steps=next_steps,
            source_ids=source_ids,
            common_pitfall=pitfall,
        )
    )


def parse_template_json(raw: Optional[str]) -> TemplateParseResult:
    """
    Extract a StructuredTemplateOutput from free-form model text.

    Returns:
        TemplateParseResult; output is None on failure and
        telemetry.failure_reason says why
    """
    text = normalize_raw_text(raw)
    if not text:
        return TemplateParseResult(
            output=None,
            telemetry=ParseTelemetry(
                status=ParserStatus.FAILURE,
                attempts=0,
                raw_length=0,
                failure_reason="empty_response",
            ),
        )

    attempts = 0
    failure_reason = "json_parse_failed"

    for candidate in _collect_candidates(text):
        attempts += 1
        result = validate_structured_output(candidate.text)
        if isinstance(result, ParseOk):
            logger.debug(f"Parsed template output via {candidate.mode.value} after {attempts} attempt(s)")
            return TemplateParseResult(
                output=result.output,
                telemetry=ParseTelemetry(
                    status=ParserStatus.SUCCESS,
                    mode=candidate.mode,
                    attempts=attempts,
                    raw_length=len(text),
                ),
            )
        failure_reason = result.reason

        repaired = repair_likely_json(candidate.text)
        if repaired == candidate.text:
            continue

        attempts += 1
        result = validate_structured_output(repaired)
        if isinstance(result, ParseOk):
            logger.debug(f"Parsed template output via json-repair after {attempts} attempt(s)")
            return TemplateParseResult(
                output=result.output,
                telemetry=ParseTelemetry(
                    status=ParserStatus.SUCCESS,
                    mode=ParseMode.JSON_REPAIR,
                    attempts=attempts,
                    raw_length=len(text),
                ),
            )
        failure_reason = result.reason

    logger.debug(f"Template output unparseable after {attempts} attempt(s): {failure_reason}")
    return TemplateParseResult(
        output=None,
        telemetry=ParseTelemetry(
            status=ParserStatus.FAILURE,
            attempts=attempts,
            raw_length=len(text),
            failure_reason=failure_reason,
        ),
    )

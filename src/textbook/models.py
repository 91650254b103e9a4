"""
Textbook Data Models.

Instructional units are the durable records in a learner's textbook:
- Created by the content pipeline (LLM output or deterministic fallback)
- Merged by dedupe key (concept ids + type) up to a revision ceiling
- Ranked by quality score; one primary per (concept, type), others are
  alternatives, superseded primaries are archived for good

Units are persisted as JSON, so every model here round-trips through
to_dict()/from_dict() and from_dict() tolerates camelCase and missing keys.
"""
from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


class UnitType(str, Enum):
    """Kind of instructional unit."""
    HINT = "hint"
    EXPLANATION = "explanation"
    EXAMPLE = "example"
    SUMMARY = "summary"


class UnitStatus(str, Enum):
    """Competition status; units without a status count as primary."""
    PRIMARY = "primary"
    ALTERNATIVE = "alternative"
    ARCHIVED = "archived"  # terminal


class ParserStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    NOT_ATTEMPTED = "not_attempted"


class ParseMode(str, Enum):
    """Which extraction strategy produced the structured output."""
    STRICT_JSON = "strict-json"
    CODE_FENCE_JSON = "code-fence-json"
    BRACE_EXTRACT = "brace-extract"
    JSON_REPAIR = "json-repair"


class FallbackReason(str, Enum):
    """Why deterministic content was used instead of model output."""
    NONE = "none"
    REPLAY_MODE = "replay_mode"
    PARSE_FAILURE = "parse_failure"
    LLM_ERROR = "llm_error"


def _pick(data: dict, *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [str(item) for item in value if item is not None]


def _opt_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)) and math.isfinite(value):
        return int(value)
    return default


def _enum(enum_cls: type[Enum], value: Any, default: Any = None) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return default


@dataclass
class GenerationParams:
    """Sampling and transport parameters for one generator call."""
    temperature: float = 0.0
    top_p: float = 1.0
    stream: bool = False
    timeout_ms: int = 25000

    def to_dict(self) -> dict:
        return {
            "temperature": self.temperature,
            "top_p": self.top_p,
            "stream": self.stream,
            "timeout_ms": self.timeout_ms,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "GenerationParams":
        data = data if isinstance(data, dict) else {}
        defaults = cls()
        temperature = _pick(data, "temperature")
        top_p = _pick(data, "top_p", "topP")
        return cls(
            temperature=float(temperature) if isinstance(temperature, (int, float)) else defaults.temperature,
            top_p=float(top_p) if isinstance(top_p, (int, float)) else defaults.top_p,
            stream=bool(_pick(data, "stream") or False),
            timeout_ms=_int(_pick(data, "timeout_ms", "timeoutMs"), defaults.timeout_ms),
        )


@dataclass
class PdfCitation:
    """A retrieved textbook passage a unit cites."""
    chunk_id: str
    page: int
    score: float
    doc_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "doc_id": self.doc_id,
            "chunk_id": self.chunk_id,
            "page": self.page,
            "score": self.score,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PdfCitation":
        score = _pick(data, "score")
        return cls(
            chunk_id=str(_pick(data, "chunk_id", "chunkId") or ""),
            page=_int(_pick(data, "page")),
            score=float(score) if isinstance(score, (int, float)) else 0.0,
            doc_id=_opt_str(_pick(data, "doc_id", "docId")),
        )


@dataclass
class UnitProvenance:
    """How a unit was produced: model, inputs, parser outcome."""
    model: str
    params: GenerationParams
    template_id: str
    input_hash: str
    retrieved_source_ids: list[str] = field(default_factory=list)
    retrieved_pdf_citations: list[PdfCitation] = field(default_factory=list)
    created_at: int = 0
    parser_status: Optional[ParserStatus] = None
    parser_mode: Optional[ParseMode] = None
    parser_attempts: int = 0
    parser_raw_length: int = 0
    parser_failure_reason: Optional[str] = None
    fallback_reason: FallbackReason = FallbackReason.NONE

    def to_dict(self) -> dict:
        return {
            "model": self.model,
            "params": self.params.to_dict(),
            "template_id": self.template_id,
            "input_hash": self.input_hash,
            "retrieved_source_ids": list(self.retrieved_source_ids),
            "retrieved_pdf_citations": [c.to_dict() for c in self.retrieved_pdf_citations],
            "created_at": self.created_at,
            "parser_status": self.parser_status.value if self.parser_status else None,
            "parser_mode": self.parser_mode.value if self.parser_mode else None,
            "parser_attempts": self.parser_attempts,
            "parser_raw_length": self.parser_raw_length,
            "parser_failure_reason": self.parser_failure_reason,
            "fallback_reason": self.fallback_reason.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UnitProvenance":
        citations = _pick(data, "retrieved_pdf_citations", "retrievedPdfCitations") or []
        return cls(
            model=str(_pick(data, "model") or ""),
            params=GenerationParams.from_dict(_pick(data, "params")),
            template_id=str(_pick(data, "template_id", "templateId") or ""),
            input_hash=str(_pick(data, "input_hash", "inputHash") or ""),
            retrieved_source_ids=_str_list(_pick(data, "retrieved_source_ids", "retrievedSourceIds")),
            retrieved_pdf_citations=[
                PdfCitation.from_dict(c) for c in citations if isinstance(c, dict)
            ],
            created_at=_int(_pick(data, "created_at", "createdAt")),
            parser_status=_enum(ParserStatus, _pick(data, "parser_status", "parserStatus")),
            parser_mode=_enum(ParseMode, _pick(data, "parser_mode", "parserMode")),
            parser_attempts=_int(_pick(data, "parser_attempts", "parserAttempts")),
            parser_raw_length=_int(_pick(data, "parser_raw_length", "parserRawLength")),
            parser_failure_reason=_opt_str(_pick(data, "parser_failure_reason", "parserFailureReason")),
            fallback_reason=_enum(
                FallbackReason, _pick(data, "fallback_reason", "fallbackReason"), FallbackReason.NONE
            ),
        )


@dataclass
class UpdateHistoryEntry:
    timestamp: int
    reason: str
    added_interaction_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "reason": self.reason,
            "added_interaction_ids": list(self.added_interaction_ids),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UpdateHistoryEntry":
        return cls(
            timestamp=_int(_pick(data, "timestamp")),
            reason=str(_pick(data, "reason") or ""),
            added_interaction_ids=_str_list(_pick(data, "added_interaction_ids", "addedInteractionIds")),
        )


@dataclass
class InstructionalUnit:
    """
    A unit of textbook content for one concept.

    status None is treated as primary everywhere (legacy units predate
    competition). quality_score is always in [0, 1].
    """
    id: str
    concept_id: str
    type: UnitType
    title: str
    content: str
    concept_ids: list[str] = field(default_factory=list)
    summary: Optional[str] = None
    common_mistakes: Optional[list[str]] = None
    minimal_example: Optional[str] = None
    prerequisites: list[str] = field(default_factory=list)
    source_interaction_ids: list[str] = field(default_factory=list)
    created_from_interaction_ids: list[str] = field(default_factory=list)
    source_ref_ids: list[str] = field(default_factory=list)
    provenance: Optional[UnitProvenance] = None
    quality_score: float = 0.0
    status: Optional[UnitStatus] = None
    revision_count: int = 0
    update_history: list[UpdateHistoryEntry] = field(default_factory=list)
    archived_reason: Optional[str] = None
    archived_at: Optional[int] = None
    archived_by_unit_id: Optional[str] = None
    session_id: Optional[str] = None
    updated_session_ids: list[str] = field(default_factory=list)
    last_error_subtype_id: Optional[str] = None
    auto_created: bool = False
    added_timestamp: int = 0
    updated_timestamp: Optional[int] = None
    retrieval_count: int = 0

    @property
    def effective_status(self) -> UnitStatus:
        return self.status or UnitStatus.PRIMARY

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "concept_id": self.concept_id,
            "concept_ids": list(self.concept_ids),
            "type": self.type.value,
            "title": self.title,
            "content": self.content,
            "summary": self.summary,
            "common_mistakes": list(self.common_mistakes) if self.common_mistakes is not None else None,
            "minimal_example": self.minimal_example,
            "prerequisites": list(self.prerequisites),
            "source_interaction_ids": list(self.source_interaction_ids),
            "created_from_interaction_ids": list(self.created_from_interaction_ids),
            "source_ref_ids": list(self.source_ref_ids),
            "provenance": self.provenance.to_dict() if self.provenance else None,
            "quality_score": self.quality_score,
            "status": self.status.value if self.status else None,
            "revision_count": self.revision_count,
            "update_history": [entry.to_dict() for entry in self.update_history],
            "archived_reason": self.archived_reason,
            "archived_at": self.archived_at,
            "archived_by_unit_id": self.archived_by_unit_id,
            "session_id": self.session_id,
            "updated_session_ids": list(self.updated_session_ids),
            "last_error_subtype_id": self.last_error_subtype_id,
            "auto_created": self.auto_created,
            "added_timestamp": self.added_timestamp,
            "updated_timestamp": self.updated_timestamp,
            "retrieval_count": self.retrieval_count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "InstructionalUnit":
        """
        Rebuild a unit from stored JSON.

        Raises:
            ValueError: If the record has no id (unusable as a unit)
        """
        if not isinstance(data, dict):
            raise ValueError("unit record must be an object")
        unit_id = _pick(data, "id")
        if not isinstance(unit_id, str) or not unit_id.strip():
            raise ValueError("unit record has no id")

        concept_ids = _str_list(_pick(data, "concept_ids", "conceptIds"))
        concept_id = _opt_str(_pick(data, "concept_id", "conceptId")) or (concept_ids[0] if concept_ids else "unknown")
        provenance = _pick(data, "provenance")
        history = _pick(data, "update_history", "updateHistory") or []
        mistakes = _pick(data, "common_mistakes", "commonMistakes")
        quality = _pick(data, "quality_score", "qualityScore")
        archived_at = _pick(data, "archived_at", "archivedAt")
        updated_ts = _pick(data, "updated_timestamp", "updatedTimestamp")

        return cls(
            id=unit_id,
            concept_id=concept_id,
            concept_ids=concept_ids or [concept_id],
            type=_enum(UnitType, _pick(data, "type"), UnitType.EXPLANATION),
            title=str(_pick(data, "title") or ""),
            content=str(_pick(data, "content") or ""),
            summary=_opt_str(_pick(data, "summary")),
            common_mistakes=_str_list(mistakes) if isinstance(mistakes, list) else None,
            minimal_example=_opt_str(_pick(data, "minimal_example", "minimalExample")),
            prerequisites=_str_list(_pick(data, "prerequisites")),
            source_interaction_ids=_str_list(_pick(data, "source_interaction_ids", "sourceInteractionIds")),
            created_from_interaction_ids=_str_list(
                _pick(data, "created_from_interaction_ids", "createdFromInteractionIds")
            ),
            source_ref_ids=_str_list(_pick(data, "source_ref_ids", "sourceRefIds")),
            provenance=UnitProvenance.from_dict(provenance) if isinstance(provenance, dict) else None,
            quality_score=min(1.0, max(0.0, float(quality))) if isinstance(quality, (int, float)) else 0.0,
            status=_enum(UnitStatus, _pick(data, "status")),
            revision_count=_int(_pick(data, "revision_count", "revisionCount")),
            update_history=[UpdateHistoryEntry.from_dict(h) for h in history if isinstance(h, dict)],
            archived_reason=_opt_str(_pick(data, "archived_reason", "archivedReason")),
            archived_at=_int(archived_at) if archived_at is not None else None,
            archived_by_unit_id=_opt_str(_pick(data, "archived_by_unit_id", "archivedByUnitId")),
            session_id=_opt_str(_pick(data, "session_id", "sessionId")),
            updated_session_ids=_str_list(_pick(data, "updated_session_ids", "updatedSessionIds")),
            last_error_subtype_id=_opt_str(_pick(data, "last_error_subtype_id", "lastErrorSubtypeId")),
            auto_created=bool(_pick(data, "auto_created", "autoCreated") or False),
            added_timestamp=_int(_pick(data, "added_timestamp", "addedTimestamp")),
            updated_timestamp=_int(updated_ts) if updated_ts is not None else None,
            retrieval_count=_int(_pick(data, "retrieval_count", "retrievalCount")),
        )


@dataclass
class LLMCacheRecord:
    """Cached pipeline output keyed by learner, template and input hash."""
    cache_key: str
    learner_id: str
    template_id: str
    input_hash: str
    unit: InstructionalUnit
    created_at: int

    def to_dict(self) -> dict:
        return {
            "cache_key": self.cache_key,
            "learner_id": self.learner_id,
            "template_id": self.template_id,
            "input_hash": self.input_hash,
            "unit": self.unit.to_dict(),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LLMCacheRecord":
        unit = _pick(data, "unit")
        return cls(
            cache_key=str(_pick(data, "cache_key", "cacheKey") or ""),
            learner_id=str(_pick(data, "learner_id", "learnerId") or ""),
            template_id=str(_pick(data, "template_id", "templateId") or ""),
            input_hash=str(_pick(data, "input_hash", "inputHash") or ""),
            unit=InstructionalUnit.from_dict(unit),
            created_at=_int(_pick(data, "created_at", "createdAt")),
        )


@dataclass
class UpsertEvent:
    """Passed to CreateUnitInput.on_upsert after every upsert."""
    unit_id: str
    action: str
    dedupe_key: str
    revision_count: int


@dataclass
class CreateUnitInput:
    """Content to create a unit from, or merge into an existing one."""
    learner_id: str
    session_id: str
    concept_ids: list[str]
    type: UnitType
    title: str
    content: str
    source_interaction_ids: list[str] = field(default_factory=list)
    summary: Optional[str] = None
    common_mistakes: Optional[list[str]] = None
    minimal_example: Optional[str] = None
    source_ref_ids: Optional[list[str]] = None
    error_subtype_id: Optional[str] = None
    auto_created: Optional[bool] = None
    provenance: Optional[UnitProvenance] = None
    on_upsert: Optional[Callable[[UpsertEvent], None]] = None

"""
Retrieval bundle: the grounded context handed to content generation.

Bundles are built upstream (hint history, grounding anchor, concept
candidates, textbook passages) and are read-only here. from_dict() accepts
both snake_case and the camelCase keys written by the browser client.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


def _pick(data: dict, *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _as_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value)
    return default


def _as_float(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    return default


def _as_list(value: Any) -> list:
    return list(value) if isinstance(value, (list, tuple)) else []


@dataclass
class HintHistoryEntry:
    hint_level: int
    hint_text: str
    interaction_id: str = ""
    source_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "HintHistoryEntry":
        return cls(
            hint_level=_as_int(_pick(data, "hint_level", "hintLevel"), 1),
            hint_text=str(_pick(data, "hint_text", "hintText") or ""),
            interaction_id=str(_pick(data, "interaction_id", "interactionId") or ""),
            source_id=_pick(data, "source_id", "sourceId"),
        )

    def to_dict(self) -> dict:
        return {
            "hint_level": self.hint_level,
            "hint_text": self.hint_text,
            "interaction_id": self.interaction_id,
            "source_id": self.source_id,
        }


@dataclass
class AnchorSnapshot:
    """The grounding row selected for the bundle."""
    row_id: str
    error_subtype: str
    feedback_target: str
    intended_learning_outcome: str

    @classmethod
    def from_dict(cls, data: dict) -> "AnchorSnapshot":
        return cls(
            row_id=str(_pick(data, "row_id", "rowId") or ""),
            error_subtype=str(_pick(data, "error_subtype", "errorSubtype") or ""),
            feedback_target=str(_pick(data, "feedback_target", "feedbackTarget") or ""),
            intended_learning_outcome=str(
                _pick(data, "intended_learning_outcome", "intendedLearningOutcome") or ""
            ),
        )

    def to_dict(self) -> dict:
        return {
            "row_id": self.row_id,
            "error_subtype": self.error_subtype,
            "feedback_target": self.feedback_target,
            "intended_learning_outcome": self.intended_learning_outcome,
        }


@dataclass
class ConceptCandidate:
    id: str
    name: str
    description: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "ConceptCandidate":
        concept_id = str(_pick(data, "id") or "")
        return cls(
            id=concept_id,
            name=str(_pick(data, "name") or concept_id),
            description=str(_pick(data, "description") or ""),
        )

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "description": self.description}


@dataclass
class InteractionSummary:
    errors: int = 0
    retries: int = 0
    time_spent: int = 0
    hint_count: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "InteractionSummary":
        return cls(
            errors=_as_int(_pick(data, "errors")),
            retries=_as_int(_pick(data, "retries")),
            time_spent=_as_int(_pick(data, "time_spent", "timeSpent")),
            hint_count=_as_int(_pick(data, "hint_count", "hintCount")),
        )

    def to_dict(self) -> dict:
        return {
            "errors": self.errors,
            "retries": self.retries,
            "time_spent": self.time_spent,
            "hint_count": self.hint_count,
        }


@dataclass
class PdfPassage:
    chunk_id: str
    doc_id: str
    page: int
    text: str
    score: float = 0.0

    @classmethod
    def from_dict(cls, data: dict) -> "PdfPassage":
        return cls(
            chunk_id=str(_pick(data, "chunk_id", "chunkId") or ""),
            doc_id=str(_pick(data, "doc_id", "docId") or ""),
            page=_as_int(_pick(data, "page")),
            text=str(_pick(data, "text") or ""),
            score=_as_float(_pick(data, "score")),
        )

    def to_dict(self) -> dict:
        return {
            "chunk_id": self.chunk_id,
            "doc_id": self.doc_id,
            "page": self.page,
            "text": self.text,
            "score": self.score,
        }


@dataclass
class RetrievalBundle:
    learner_id: str
    problem_id: str
    problem_title: str
    schema_text: str = ""
    last_error_subtype_id: str = ""
    hint_history: list[HintHistoryEntry] = field(default_factory=list)
    grounding_anchor: Optional[AnchorSnapshot] = None
    concept_candidates: list[ConceptCandidate] = field(default_factory=list)
    recent_interactions_summary: InteractionSummary = field(default_factory=InteractionSummary)
    retrieved_source_ids: list[str] = field(default_factory=list)
    trigger_interaction_ids: list[str] = field(default_factory=list)
    pdf_passages: list[PdfPassage] = field(default_factory=list)
    pdf_index_provenance: Optional[dict] = None

    @classmethod
    def from_dict(cls, data: dict) -> "RetrievalBundle":
        anchor = _pick(data, "grounding_anchor", "sqlEngageAnchor", "sql_engage_anchor")
        summary = _pick(data, "recent_interactions_summary", "recentInteractionsSummary")
        provenance = _pick(data, "pdf_index_provenance", "pdfIndexProvenance")
        return cls(
            learner_id=str(_pick(data, "learner_id", "learnerId") or ""),
            problem_id=str(_pick(data, "problem_id", "problemId") or ""),
            problem_title=str(_pick(data, "problem_title", "problemTitle") or ""),
            schema_text=str(_pick(data, "schema_text", "schemaText") or ""),
            last_error_subtype_id=str(_pick(data, "last_error_subtype_id", "lastErrorSubtypeId") or ""),
            hint_history=[
                HintHistoryEntry.from_dict(item)
                for item in _as_list(_pick(data, "hint_history", "hintHistory"))
                if isinstance(item, dict)
            ],
            grounding_anchor=AnchorSnapshot.from_dict(anchor) if isinstance(anchor, dict) else None,
            concept_candidates=[
                ConceptCandidate.from_dict(item)
                for item in _as_list(_pick(data, "concept_candidates", "conceptCandidates"))
                if isinstance(item, dict)
            ],
            recent_interactions_summary=(
                InteractionSummary.from_dict(summary) if isinstance(summary, dict) else InteractionSummary()
            ),
            retrieved_source_ids=[
                str(item) for item in _as_list(_pick(data, "retrieved_source_ids", "retrievedSourceIds"))
            ],
            trigger_interaction_ids=[
                str(item) for item in _as_list(_pick(data, "trigger_interaction_ids", "triggerInteractionIds"))
            ],
            pdf_passages=[
                PdfPassage.from_dict(item)
                for item in _as_list(_pick(data, "pdf_passages", "pdfPassages"))
                if isinstance(item, dict)
            ],
            pdf_index_provenance=provenance if isinstance(provenance, dict) else None,
        )

    def to_dict(self) -> dict:
        return {
            "learner_id": self.learner_id,
            "problem_id": self.problem_id,
            "problem_title": self.problem_title,
            "schema_text": self.schema_text,
            "last_error_subtype_id": self.last_error_subtype_id,
            "hint_history": [h.to_dict() for h in self.hint_history],
            "grounding_anchor": self.grounding_anchor.to_dict() if self.grounding_anchor else None,
            "concept_candidates": [c.to_dict() for c in self.concept_candidates],
            "recent_interactions_summary": self.recent_interactions_summary.to_dict(),
            "retrieved_source_ids": list(self.retrieved_source_ids),
            "trigger_interaction_ids": list(self.trigger_interaction_ids),
            "pdf_passages": [p.to_dict() for p in self.pdf_passages],
            "pdf_index_provenance": self.pdf_index_provenance,
        }

    def hash_projection(self) -> dict:
        """
        The part of the bundle that determines generated content.

        Trigger ids, per-hint interaction ids, passage scores and index
        provenance are excluded so they never change the cache key.
        """
        return {
            "learner_id": self.learner_id,
            "problem_id": self.problem_id,
            "problem_title": self.problem_title,
            "schema_text": self.schema_text,
            "last_error_subtype_id": self.last_error_subtype_id,
            "hint_history": [
                {"hint_level": h.hint_level, "hint_text": h.hint_text} for h in self.hint_history
            ],
            "grounding_anchor": self.grounding_anchor.to_dict() if self.grounding_anchor else None,
            "concept_candidates": [c.to_dict() for c in self.concept_candidates],
            "recent_interactions_summary": self.recent_interactions_summary.to_dict(),
            "pdf_passages": [
                {"doc_id": p.doc_id, "chunk_id": p.chunk_id, "page": p.page, "text": p.text}
                for p in self.pdf_passages
            ],
        }

"""
Textbook: a learner's durable, deduplicated collection of instructional units.

Components:
- models: InstructionalUnit, provenance and cache records
- reconciliation: dedupe-key upsert, quality scoring and competition
- service: reconciliation applied to stored textbooks under a learner lock
"""
from src.textbook.models import (
    CreateUnitInput,
    FallbackReason,
    GenerationParams,
    InstructionalUnit,
    LLMCacheRecord,
    UnitStatus,
    UnitType,
)
from src.textbook.reconciliation import (
    CompetitionAction,
    calculate_quality_score,
    compete_and_select_best_unit,
    generate_dedupe_key,
    upsert_textbook_unit,
)
from src.textbook.service import TextbookService

__all__ = [
    "CreateUnitInput",
    "FallbackReason",
    "GenerationParams",
    "InstructionalUnit",
    "LLMCacheRecord",
    "UnitStatus",
    "UnitType",
    "CompetitionAction",
    "calculate_quality_score",
    "compete_and_select_best_unit",
    "generate_dedupe_key",
    "upsert_textbook_unit",
    "TextbookService",
]

"""
Textbook Reconciliation.

Keeps a learner's textbook deduplicated and ranked:

Upsert (same content, new evidence):
    Units sharing a dedupe key (sorted lowercased concept ids + type) are
    merged: interaction and source ids accumulate, new content wins. After
    max_revisions merges a fresh unit is created instead.

Competition (rival content for the same concept):
    A new unit competes with the current primary for its (concept, type):
    - new better by more than 0.2  -> new primary, old archived (superseded)
    - within 0.1                   -> both kept, new is an alternative
    - otherwise                    -> new is an alternative

Quality score (0-1):
    source richness  min(unique sources / 5, 1) * 0.4
    summary          0.2
    minimal example  0.2
    common mistakes  0.2

All functions are pure: they return new units/lists and never mutate inputs.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Iterable, Optional, Sequence, Union

from loguru import logger

from src.textbook.models import (
    CreateUnitInput,
    InstructionalUnit,
    UnitStatus,
    UnitType,
    UpdateHistoryEntry,
    UpsertEvent,
    now_ms,
)

# Quality score weights (sum to 1.0)
SOURCE_RICHNESS_WEIGHT = 0.4
SUMMARY_WEIGHT = 0.2
EXAMPLE_WEIGHT = 0.2
MISTAKES_WEIGHT = 0.2
MAX_SOURCE_COUNT = 5

BEST_QUALITY_THRESHOLD = 0.8
GOOD_QUALITY_THRESHOLD = 0.6
AVERAGE_QUALITY_THRESHOLD = 0.4

REPLACE_MARGIN = 0.2
SIMILAR_MARGIN = 0.1

MAX_REVISIONS = 10
SCHEMA_VERSION = "textbook-unit-v2"

FRESH_WINDOW_MS = 7 * 24 * 60 * 60 * 1000


class CompetitionAction(str, Enum):
    REPLACE = "replace"
    KEEP_BOTH = "keep_both"
    MARK_ALTERNATIVE = "mark_alternative"
    NO_COMPETITION = "no_competition"


class QualityTier(str, Enum):
    BEST = "best"
    GOOD = "good"
    AVERAGE = "average"
    BASIC = "basic"


@dataclass
class UpsertResult:
    action: str  # created | updated
    unit: InstructionalUnit
    dedupe_key: str
    why: str


@dataclass
class CompetitionResult:
    action: CompetitionAction
    primary_unit: InstructionalUnit
    reason: str
    quality_diff: float
    archived_unit: Optional[InstructionalUnit] = None


@dataclass
class CompetitionOutcome:
    updated_units: list[InstructionalUnit]
    result: CompetitionResult


@dataclass
class DisplayStatus:
    status: UnitStatus
    badge: str  # Best | Alternative | Archived | New | Auto-Created
    color: str


@dataclass
class UnitStats:
    age_ms: int
    revision_count: int
    source_count: int
    is_fresh: bool
    quality_score: float
    quality_tier: QualityTier
    is_auto_created: bool


@dataclass
class ReflectiveNoteSections:
    """Sections recovered from a markdown note."""
    title: Optional[str] = None
    summary: Optional[str] = None
    common_mistakes: Optional[list[str]] = None
    minimal_example: Optional[str] = None


DedupeSource = Union[InstructionalUnit, CreateUnitInput, Sequence[str]]


# =============================================================================
# Keys and scores
# =============================================================================


def generate_dedupe_key(source: DedupeSource, unit_type: Optional[Union[UnitType, str]] = None) -> str:
    """
    Dedupe key: lowercased, sorted concept ids joined by ',' then '::type'.

    Accepts a unit, a CreateUnitInput, or a list of concept ids plus a type.
    """
    if isinstance(source, (InstructionalUnit, CreateUnitInput)):
        concept_ids = list(source.concept_ids)
        if not concept_ids and isinstance(source, InstructionalUnit):
            concept_ids = [source.concept_id]
        kind = source.type
    else:
        concept_ids = list(source)
        kind = unit_type if unit_type is not None else UnitType.EXPLANATION

    type_value = kind.value if isinstance(kind, UnitType) else str(kind)
    joined = ",".join(sorted(cid.lower() for cid in concept_ids))
    return f"{joined}::{type_value}"


def calculate_quality_score(unit: InstructionalUnit) -> float:
    """Quality in [0, 1], rounded to 3 decimals."""
    retrieved = unit.provenance.retrieved_source_ids if unit.provenance else []
    unique_sources = set(unit.source_ref_ids or []) | set(retrieved or [])
    richness = min(len(unique_sources) / MAX_SOURCE_COUNT, 1) * SOURCE_RICHNESS_WEIGHT

    score = richness
    if unit.summary and unit.summary.strip():
        score += SUMMARY_WEIGHT
    if unit.minimal_example and unit.minimal_example.strip():
        score += EXAMPLE_WEIGHT
    if unit.common_mistakes:
        score += MISTAKES_WEIGHT

    return round(score * 1000) / 1000


def is_best_quality_unit(unit: InstructionalUnit) -> bool:
    return (unit.quality_score or 0) >= BEST_QUALITY_THRESHOLD


def get_quality_tier(unit: InstructionalUnit) -> QualityTier:
    score = unit.quality_score or 0
    if score >= BEST_QUALITY_THRESHOLD:
        return QualityTier.BEST
    if score >= GOOD_QUALITY_THRESHOLD:
        return QualityTier.GOOD
    if score >= AVERAGE_QUALITY_THRESHOLD:
        return QualityTier.AVERAGE
    return QualityTier.BASIC


def _with_score(unit: InstructionalUnit) -> InstructionalUnit:
    return replace(unit, quality_score=calculate_quality_score(unit))


def _merge_ids(existing: Optional[Iterable[str]], incoming: Optional[Iterable[str]]) -> list[str]:
    """Order-preserving union."""
    return list(dict.fromkeys([*(existing or []), *(incoming or [])]))


# =============================================================================
# Upsert
# =============================================================================


def find_existing_unit(
    units: Iterable[InstructionalUnit],
    dedupe_key: str,
    max_revisions: int = MAX_REVISIONS,
) -> Optional[InstructionalUnit]:
    """
    First non-archived unit with the key, preferring one still under the
    revision ceiling.
    """
    matches = [
        unit for unit in units
        if unit.effective_status != UnitStatus.ARCHIVED and generate_dedupe_key(unit) == dedupe_key
    ]
    for unit in matches:
        if unit.revision_count < max_revisions:
            return unit
    return matches[0] if matches else None


def _history_entry(new_input: CreateUnitInput, reason: str, now: int) -> UpdateHistoryEntry:
    return UpdateHistoryEntry(
        timestamp=now,
        reason=reason,
        added_interaction_ids=list(new_input.source_interaction_ids),
    )


def build_new_unit(new_input: CreateUnitInput, unit_id: str, now: Optional[int] = None) -> InstructionalUnit:
    """Create a revision-0 unit from input."""
    timestamp = now if now is not None else now_ms()
    concept_ids = list(new_input.concept_ids)
    unit = InstructionalUnit(
        id=unit_id,
        concept_id=concept_ids[0] if concept_ids else "unknown",
        concept_ids=concept_ids,
        type=new_input.type,
        title=new_input.title,
        content=new_input.content,
        summary=new_input.summary,
        common_mistakes=list(new_input.common_mistakes) if new_input.common_mistakes is not None else None,
        minimal_example=new_input.minimal_example,
        source_interaction_ids=_merge_ids(new_input.source_interaction_ids, None),
        created_from_interaction_ids=_merge_ids(new_input.source_interaction_ids, None),
        source_ref_ids=_merge_ids(new_input.source_ref_ids, None),
        provenance=new_input.provenance,
        revision_count=0,
        update_history=[_history_entry(new_input, "Initial creation", timestamp)],
        session_id=new_input.session_id,
        updated_session_ids=[new_input.session_id] if new_input.session_id else [],
        last_error_subtype_id=new_input.error_subtype_id,
        auto_created=bool(new_input.auto_created),
        added_timestamp=timestamp,
        updated_timestamp=timestamp,
    )
    return _with_score(unit)


def _build_updated_unit(existing: InstructionalUnit, new_input: CreateUnitInput, now: int) -> InstructionalUnit:
    updated = replace(
        existing,
        # new content wins
        title=new_input.title,
        content=new_input.content,
        summary=new_input.summary if new_input.summary is not None else existing.summary,
        common_mistakes=(
            list(new_input.common_mistakes) if new_input.common_mistakes is not None
            else existing.common_mistakes
        ),
        minimal_example=(
            new_input.minimal_example if new_input.minimal_example is not None else existing.minimal_example
        ),
        # evidence accumulates
        source_interaction_ids=_merge_ids(existing.source_interaction_ids, new_input.source_interaction_ids),
        created_from_interaction_ids=_merge_ids(
            existing.created_from_interaction_ids, new_input.source_interaction_ids
        ),
        source_ref_ids=_merge_ids(existing.source_ref_ids, new_input.source_ref_ids),
        revision_count=existing.revision_count + 1,
        update_history=[
            *existing.update_history,
            _history_entry(new_input, f"Update revision {existing.revision_count + 1}", now),
        ],
        updated_session_ids=_merge_ids(
            existing.updated_session_ids, [new_input.session_id] if new_input.session_id else []
        ),
        last_error_subtype_id=new_input.error_subtype_id or existing.last_error_subtype_id,
        updated_timestamp=now,
    )
    return _with_score(updated)


def upsert_textbook_unit(
    existing_units: Sequence[InstructionalUnit],
    new_input: CreateUnitInput,
    generate_unit_id: Callable[[], str],
    now: Optional[int] = None,
    max_revisions: int = MAX_REVISIONS,
) -> UpsertResult:
    """
    Create a unit or merge into the one sharing its dedupe key.

    The caller persists the returned unit (replacing the existing one on
    'updated', appending on 'created').
    """
    timestamp = now if now is not None else now_ms()
    dedupe_key = generate_dedupe_key(new_input)
    existing = find_existing_unit(existing_units, dedupe_key, max_revisions)

    if existing is None:
        unit = build_new_unit(new_input, generate_unit_id(), timestamp)
        action, why = "created", "No existing unit with matching conceptIds and type"
    elif existing.revision_count >= max_revisions:
        unit = build_new_unit(new_input, generate_unit_id(), timestamp)
        action, why = "created", f"Revision limit ({max_revisions}) reached - creating new unit"
    else:
        unit = _build_updated_unit(existing, new_input, timestamp)
        action, why = "updated", "Same conceptIds and type - updating existing unit"

    # one primary per concept and type
    if action == "created" and find_primary_unit(existing_units, unit.concept_id, unit.type) is not None:
        unit = replace(unit, status=UnitStatus.ALTERNATIVE)

    logger.info(f"Textbook upsert {action} {unit.id} [{dedupe_key}] rev={unit.revision_count}")

    if new_input.on_upsert is not None:
        new_input.on_upsert(
            UpsertEvent(
                unit_id=unit.id,
                action=action,
                dedupe_key=dedupe_key,
                revision_count=unit.revision_count,
            )
        )

    return UpsertResult(action=action, unit=unit, dedupe_key=dedupe_key, why=why)


def apply_upsert(units: Sequence[InstructionalUnit], result: UpsertResult) -> list[InstructionalUnit]:
    """Return the collection with an upsert result applied."""
    if result.action == "updated":
        return [result.unit if unit.id == result.unit.id else unit for unit in units]
    return [*units, result.unit]


# =============================================================================
# Competition
# =============================================================================


def find_primary_unit(
    units: Iterable[InstructionalUnit],
    concept_id: str,
    unit_type: Optional[UnitType] = None,
) -> Optional[InstructionalUnit]:
    return next(
        (
            unit for unit in units
            if unit.concept_id == concept_id
            and unit.effective_status == UnitStatus.PRIMARY
            and (unit_type is None or unit.type == unit_type)
        ),
        None,
    )


def _percent(score: float) -> str:
    return f"{score * 100:.0f}%"


def compete_and_select_best_unit(
    existing_units: Sequence[InstructionalUnit],
    new_unit: InstructionalUnit,
    now: Optional[int] = None,
) -> CompetitionOutcome:
    """
    Add a new unit to the collection, deciding which unit is primary.

    Returns the full updated collection plus what happened.
    """
    timestamp = now if now is not None else now_ms()
    primary = find_primary_unit(existing_units, new_unit.concept_id, new_unit.type)

    if primary is None:
        promoted = replace(new_unit, status=UnitStatus.PRIMARY)
        logger.info(f"Unit {new_unit.id} is primary for {new_unit.concept_id} (no competition)")
        return CompetitionOutcome(
            updated_units=[*existing_units, promoted],
            result=CompetitionResult(
                action=CompetitionAction.NO_COMPETITION,
                primary_unit=promoted,
                reason="No existing primary unit for this concept",
                quality_diff=0.0,
            ),
        )

    new_score = new_unit.quality_score or 0
    existing_score = primary.quality_score or 0
    diff = new_score - existing_score

    if diff > REPLACE_MARGIN:
        archived = replace(
            primary,
            status=UnitStatus.ARCHIVED,
            archived_reason="superseded",
            archived_at=timestamp,
            archived_by_unit_id=new_unit.id,
        )
        promoted = replace(new_unit, status=UnitStatus.PRIMARY)
        updated = [archived if unit.id == primary.id else unit for unit in existing_units]
        updated.append(promoted)
        logger.info(f"Unit {new_unit.id} supersedes {primary.id} ({diff:+.3f})")
        return CompetitionOutcome(
            updated_units=updated,
            result=CompetitionResult(
                action=CompetitionAction.REPLACE,
                primary_unit=promoted,
                archived_unit=archived,
                reason=(
                    f"New unit quality ({_percent(new_score)}) is significantly better "
                    f"than existing ({_percent(existing_score)})"
                ),
                quality_diff=diff,
            ),
        )

    alternative = replace(new_unit, status=UnitStatus.ALTERNATIVE)
    if abs(diff) <= SIMILAR_MARGIN:
        action = CompetitionAction.KEEP_BOTH
        reason = (
            f"Similar quality (new: {_percent(new_score)}, existing: {_percent(existing_score)}) "
            f"- keeping both"
        )
    else:
        action = CompetitionAction.MARK_ALTERNATIVE
        reason = f"New unit quality ({_percent(new_score)}) is lower than existing ({_percent(existing_score)})"

    logger.info(f"Unit {new_unit.id} kept as alternative to {primary.id} ({action.value})")
    return CompetitionOutcome(
        updated_units=[*existing_units, alternative],
        result=CompetitionResult(
            action=action,
            primary_unit=primary,
            reason=reason,
            quality_diff=diff,
        ),
    )


# =============================================================================
# Views
# =============================================================================


def get_unit_display_status(unit: InstructionalUnit) -> DisplayStatus:
    status = unit.effective_status
    if unit.auto_created:
        return DisplayStatus(status, "Auto-Created", "purple")
    if status == UnitStatus.ALTERNATIVE:
        return DisplayStatus(status, "Alternative", "blue")
    if status == UnitStatus.ARCHIVED:
        return DisplayStatus(status, "Archived", "gray")
    if is_best_quality_unit(unit):
        return DisplayStatus(status, "Best", "amber")
    return DisplayStatus(status, "New", "green")


def filter_units_by_status(
    units: Iterable[InstructionalUnit],
    statuses: Iterable[UnitStatus],
) -> list[InstructionalUnit]:
    wanted = set(statuses)
    return [unit for unit in units if unit.effective_status in wanted]


def get_primary_units(units: Iterable[InstructionalUnit]) -> list[InstructionalUnit]:
    return filter_units_by_status(units, [UnitStatus.PRIMARY])


def get_alternative_units(
    units: Iterable[InstructionalUnit],
    concept_id: str,
    unit_type: Optional[UnitType] = None,
) -> list[InstructionalUnit]:
    return [
        unit for unit in units
        if unit.concept_id == concept_id
        and unit.status == UnitStatus.ALTERNATIVE
        and (unit_type is None or unit.type == unit_type)
    ]


def get_auto_created_units(units: Iterable[InstructionalUnit]) -> list[InstructionalUnit]:
    return [unit for unit in units if unit.auto_created]


def get_unit_stats(unit: InstructionalUnit, now: Optional[int] = None) -> UnitStats:
    timestamp = now if now is not None else now_ms()
    age = timestamp - unit.added_timestamp
    return UnitStats(
        age_ms=age,
        revision_count=unit.revision_count,
        source_count=len(unit.source_ref_ids),
        is_fresh=age < FRESH_WINDOW_MS,
        quality_score=unit.quality_score or 0,
        quality_tier=get_quality_tier(unit),
        is_auto_created=unit.auto_created,
    )


# =============================================================================
# Pipeline output -> upsert input
# =============================================================================

_SUMMARY_RE = re.compile(r"##?\s*Summary\s*\n([^#]+)", re.IGNORECASE)
_MISTAKES_RE = re.compile(r"##?\s*Common\s*(?:Mistakes|Errors)\s*\n([^#]+)", re.IGNORECASE)
_EXAMPLE_RE = re.compile(r"##?\s*(?:Minimal\s*)?Example\s*\n```sql\s*\n([\s\S]*?)```", re.IGNORECASE)


def parse_reflective_note(markdown: str) -> ReflectiveNoteSections:
    """Pull Summary / Common Mistakes / Minimal Example sections out of a note."""
    sections = ReflectiveNoteSections()
    if not markdown:
        return sections

    summary = _SUMMARY_RE.search(markdown)
    if summary:
        sections.summary = summary.group(1).strip() or None

    mistakes = _MISTAKES_RE.search(markdown)
    if mistakes:
        items = [re.sub(r"^[-*]\s*", "", line).strip() for line in mistakes.group(1).split("\n")]
        sections.common_mistakes = [item for item in items if item] or None

    example = _EXAMPLE_RE.search(markdown)
    if example:
        sections.minimal_example = example.group(1).strip() or None

    first_line = markdown.split("\n", 1)[0].strip()
    if first_line.startswith("#") and not first_line.startswith("##"):
        sections.title = re.sub(r"^#\s*", "", first_line)

    return sections


def create_unit_input_from_generated(
    unit: InstructionalUnit,
    markdown: str,
    learner_id: str,
    session_id: str = "",
    source_interaction_ids: Optional[list[str]] = None,
    auto_created: bool = False,
) -> CreateUnitInput:
    """Turn a pipeline-generated unit into upsert input, recovering note sections."""
    sections = parse_reflective_note(markdown)
    retrieved = unit.provenance.retrieved_source_ids if unit.provenance else []
    return CreateUnitInput(
        learner_id=learner_id,
        session_id=session_id,
        concept_ids=list(unit.concept_ids) or [unit.concept_id],
        type=unit.type,
        title=unit.title or sections.title or "Reflective Note",
        content=unit.content,
        source_interaction_ids=list(
            source_interaction_ids if source_interaction_ids is not None else unit.source_interaction_ids
        ),
        summary=sections.summary,
        common_mistakes=sections.common_mistakes,
        minimal_example=sections.minimal_example,
        source_ref_ids=list(retrieved),
        error_subtype_id=unit.last_error_subtype_id,
        auto_created=auto_created,
        provenance=unit.provenance,
    )

"""
Textbook service: reconciliation applied to a learner's stored textbook.

Every write is a read-modify-write done through
LearningStore.update_textbook_units(), so concurrent writers for the same
learner never lose each other's updates.
"""
from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any, Callable, Optional

from loguru import logger

from src.textbook.models import CreateUnitInput, InstructionalUnit, UnitStatus
from src.textbook.reconciliation import (
    MAX_REVISIONS,
    CompetitionAction,
    CompetitionResult,
    UpsertResult,
    apply_upsert,
    compete_and_select_best_unit,
    filter_units_by_status,
    upsert_textbook_unit,
)

if TYPE_CHECKING:
    from src.db.store import LearningStore


def new_unit_id() -> str:
    return f"unit-{uuid.uuid4().hex[:12]}"


class TextbookService:
    """Reads and reconciles textbook units for learners."""

    def __init__(self, store: "LearningStore", max_revisions: int = MAX_REVISIONS):
        self.store = store
        self.max_revisions = max_revisions

    @classmethod
    def from_settings(cls, store: "LearningStore", settings: Any) -> "TextbookService":
        return cls(store, max_revisions=settings.textbook_max_revisions)

    def list_units(
        self,
        learner_id: str,
        statuses: Optional[list[UnitStatus]] = None,
    ) -> list[InstructionalUnit]:
        units = self.store.get_textbook_units(learner_id)
        if statuses:
            return filter_units_by_status(units, statuses)
        return units

    def save_generated_unit(
        self,
        learner_id: str,
        unit: InstructionalUnit,
        now: Optional[int] = None,
    ) -> CompetitionResult:
        """
        Add a pipeline unit to the learner's textbook via quality competition.

        A unit whose id is already stored (a cache hit re-saved) replaces the
        stored copy in place instead of competing with itself.
        """
        outcome: dict[str, CompetitionResult] = {}

        def transform(units: list[InstructionalUnit]) -> list[InstructionalUnit]:
            for index, stored in enumerate(units):
                if stored.id == unit.id:
                    refreshed = _refresh_stored(stored, unit)
                    outcome["result"] = CompetitionResult(
                        action=_resave_action(refreshed),
                        primary_unit=refreshed,
                        reason="Unit already in textbook - refreshed in place",
                        quality_diff=0.0,
                    )
                    return [*units[:index], refreshed, *units[index + 1:]]
            competition = compete_and_select_best_unit(units, unit, now)
            outcome["result"] = competition.result
            return competition.updated_units

        self.store.update_textbook_units(learner_id, transform)
        result = outcome["result"]
        logger.info(f"Saved unit {unit.id} for {learner_id}: {result.action.value}")
        return result

    def upsert_unit(
        self,
        unit_input: CreateUnitInput,
        generate_unit_id: Callable[[], str] = new_unit_id,
        now: Optional[int] = None,
    ) -> UpsertResult:
        """Create or merge a unit by dedupe key in the learner's textbook."""
        outcome: dict[str, UpsertResult] = {}

        def transform(units: list[InstructionalUnit]) -> list[InstructionalUnit]:
            result = upsert_textbook_unit(units, unit_input, generate_unit_id, now, self.max_revisions)
            outcome["result"] = result
            return apply_upsert(units, result)

        self.store.update_textbook_units(unit_input.learner_id, transform)
        return outcome["result"]


def _refresh_stored(stored: InstructionalUnit, incoming: InstructionalUnit) -> InstructionalUnit:
    # status and archival are owned by competition; keep the stored ones
    stored.source_interaction_ids = list(
        dict.fromkeys([*stored.source_interaction_ids, *incoming.source_interaction_ids])
    )
    return stored


def _resave_action(unit: InstructionalUnit) -> CompetitionAction:
    if unit.effective_status == UnitStatus.PRIMARY:
        return CompetitionAction.NO_COMPETITION
    return CompetitionAction.KEEP_BOTH

"""
Unit tests for TextbookService against the in-memory store.
"""

import itertools
from concurrent.futures import ThreadPoolExecutor

import pytest

from src.textbook.models import CreateUnitInput, InstructionalUnit, UnitStatus, UnitType
from src.textbook.reconciliation import CompetitionAction
from src.textbook.service import TextbookService, new_unit_id


def generated_unit(unit_id, score, source_ids=("evt-1",)):
    return InstructionalUnit(
        id=unit_id,
        concept_id="select-basic",
        concept_ids=["select-basic"],
        type=UnitType.EXPLANATION,
        title="Column names",
        content="<p>Use real columns.</p>",
        source_interaction_ids=list(source_ids),
        quality_score=score,
    )


@pytest.fixture
def service(memory_store):
    return TextbookService(memory_store)


class TestSaveGeneratedUnit:
    """Tests for adding pipeline units to a textbook."""

    def test_first_unit_becomes_primary(self, service):
        result = service.save_generated_unit("learner-1", generated_unit("unit-a", 0.4))

        assert result.action == CompetitionAction.NO_COMPETITION
        units = service.list_units("learner-1")
        assert [(u.id, u.status) for u in units] == [("unit-a", UnitStatus.PRIMARY)]

    def test_resaving_same_unit_refreshes_in_place(self, service):
        service.save_generated_unit("learner-1", generated_unit("unit-a", 0.4))
        result = service.save_generated_unit("learner-1", generated_unit("unit-a", 0.4, ("evt-1", "evt-7")))

        assert result.action == CompetitionAction.NO_COMPETITION
        assert result.reason == "Unit already in textbook - refreshed in place"
        units = service.list_units("learner-1")
        assert len(units) == 1
        assert units[0].source_interaction_ids == ["evt-1", "evt-7"]
        assert units[0].status == UnitStatus.PRIMARY

    def test_resaving_an_alternative_keeps_both(self, service):
        service.save_generated_unit("learner-1", generated_unit("unit-a", 0.8))
        service.save_generated_unit("learner-1", generated_unit("unit-b", 0.3))

        result = service.save_generated_unit("learner-1", generated_unit("unit-b", 0.3))

        assert result.action == CompetitionAction.KEEP_BOTH
        assert result.primary_unit.status == UnitStatus.ALTERNATIVE

    def test_better_unit_supersedes(self, service):
        service.save_generated_unit("learner-1", generated_unit("unit-a", 0.2))
        result = service.save_generated_unit("learner-1", generated_unit("unit-b", 0.9))

        assert result.action == CompetitionAction.REPLACE
        primaries = service.list_units("learner-1", [UnitStatus.PRIMARY])
        archived = service.list_units("learner-1", [UnitStatus.ARCHIVED])
        assert [u.id for u in primaries] == ["unit-b"]
        assert [u.id for u in archived] == ["unit-a"]

    def test_learners_are_isolated(self, service):
        service.save_generated_unit("learner-1", generated_unit("unit-a", 0.4))
        assert service.list_units("learner-2") == []


class TestUpsertUnit:
    """Tests for dedupe-key upserts through the store."""

    def unit_input(self, index):
        return CreateUnitInput(
            learner_id="learner-1",
            session_id="session-1",
            concept_ids=["joins"],
            type=UnitType.SUMMARY,
            title="Joins",
            content=f"<p>v{index}</p>",
            source_interaction_ids=[f"evt-{index}"],
        )

    def test_create_then_update(self, service):
        ids = itertools.count(1)
        make_id = lambda: f"unit-{next(ids)}"  # noqa: E731

        created = service.upsert_unit(self.unit_input(0), make_id, now=1000)
        updated = service.upsert_unit(self.unit_input(1), make_id, now=2000)

        assert created.action == "created"
        assert updated.action == "updated"
        stored = service.list_units("learner-1")
        assert [(u.id, u.revision_count) for u in stored] == [("unit-1", 1)]
        assert stored[0].content == "<p>v1</p>"

    def test_concurrent_upserts_lose_no_updates(self, service):
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda i: service.upsert_unit(self.unit_input(i)), range(20)))

        stored = service.list_units("learner-1")
        assert len(stored) == 2
        assert sum(u.revision_count + 1 for u in stored) == 20
        merged = {evt for u in stored for evt in u.source_interaction_ids}
        assert merged == {f"evt-{i}" for i in range(20)}
        assert len(service.list_units("learner-1", [UnitStatus.PRIMARY])) == 1

    def test_max_revisions_comes_from_service(self, memory_store):
        service = TextbookService(memory_store, max_revisions=1)
        for index in range(3):
            service.upsert_unit(self.unit_input(index))

        assert len(service.list_units("learner-1")) == 2


def test_new_unit_id_format():
    unit_id = new_unit_id()
    assert unit_id.startswith("unit-")
    assert len(unit_id) == len("unit-") + 12

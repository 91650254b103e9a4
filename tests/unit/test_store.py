"""
Unit tests for the learning store adapters.

Every contract test runs against both InMemoryStore and SqlAlchemyStore
(in-memory SQLite).
"""

import pytest

from src.db.database import build_engine
from src.db.store import InMemoryStore, LearningStore, SqlAlchemyStore
from src.textbook.models import (
    GenerationParams,
    InstructionalUnit,
    LLMCacheRecord,
    UnitProvenance,
    UnitStatus,
    UnitType,
)


def make_unit(unit_id, title="Column names"):
    return InstructionalUnit(
        id=unit_id,
        concept_id="select-basic",
        concept_ids=["select-basic"],
        type=UnitType.EXPLANATION,
        title=title,
        content="<p>Use real columns.</p>",
        status=UnitStatus.PRIMARY,
        provenance=UnitProvenance(
            model="qwen2.5:1.5b-instruct",
            params=GenerationParams(),
            template_id="explanation.v1",
            input_hash="fnv1a32:1234abcd",
            retrieved_source_ids=["sql-engage:4"],
        ),
    )


def make_record(cache_key="learner-1::explanation.v1::fnv1a32:1234abcd"):
    return LLMCacheRecord(
        cache_key=cache_key,
        learner_id="learner-1",
        template_id="explanation.v1",
        input_hash="fnv1a32:1234abcd",
        unit=make_unit("unit-1"),
        created_at=1700000000000,
    )


@pytest.fixture(params=["memory", "sqlalchemy"])
def store(request):
    if request.param == "memory":
        return InMemoryStore()
    return SqlAlchemyStore(build_engine("sqlite://"), create_tables=True)


class TestStoreContract:
    """Tests shared by every adapter."""

    def test_implements_protocol(self, store):
        assert isinstance(store, LearningStore)

    def test_cache_miss(self, store):
        assert store.get_cache_record("nope") is None

    def test_cache_round_trip(self, store):
        record = make_record()
        store.save_cache_record(record)

        loaded = store.get_cache_record(record.cache_key)

        assert loaded.to_dict() == record.to_dict()

    def test_cache_overwrite(self, store):
        record = make_record()
        store.save_cache_record(record)
        record.unit.source_interaction_ids = ["evt-1", "evt-2"]
        store.save_cache_record(record)

        assert store.get_cache_record(record.cache_key).unit.source_interaction_ids == ["evt-1", "evt-2"]

    def test_units_keep_order(self, store):
        units = [make_unit("unit-b"), make_unit("unit-a"), make_unit("unit-c")]
        store.save_textbook_units("learner-1", units)

        assert [u.id for u in store.get_textbook_units("learner-1")] == ["unit-b", "unit-a", "unit-c"]
        assert store.get_textbook_units("learner-2") == []

    def test_save_replaces_collection(self, store):
        store.save_textbook_units("learner-1", [make_unit("unit-a"), make_unit("unit-b")])
        store.save_textbook_units("learner-1", [make_unit("unit-c")])

        assert [u.id for u in store.get_textbook_units("learner-1")] == ["unit-c"]

    def test_update_textbook_units(self, store):
        store.save_textbook_units("learner-1", [make_unit("unit-a")])

        updated = store.update_textbook_units("learner-1", lambda units: [*units, make_unit("unit-b")])

        assert [u.id for u in updated] == ["unit-a", "unit-b"]
        assert [u.id for u in store.get_textbook_units("learner-1")] == ["unit-a", "unit-b"]

    def test_learner_lock_is_stable(self, store):
        assert store.learner_lock("learner-1") is store.learner_lock("learner-1")
        assert store.learner_lock("learner-1") is not store.learner_lock("learner-2")


class TestInMemoryStore:
    """Tests specific to the in-memory adapter."""

    def test_callers_never_share_objects(self):
        store = InMemoryStore()
        store.save_textbook_units("learner-1", [make_unit("unit-a")])

        loaded = store.get_textbook_units("learner-1")
        loaded[0].title = "changed"

        assert store.get_textbook_units("learner-1")[0].title == "Column names"

    def test_malformed_cache_record_is_a_miss(self):
        store = InMemoryStore()
        store.put_raw_cache_record("bad", {"cache_key": "bad", "unit": {"title": "no id"}})

        assert store.get_cache_record("bad") is None

    def test_learner_ids(self):
        store = InMemoryStore()
        store.save_textbook_units("b", [])
        store.save_textbook_units("a", [])
        assert store.learner_ids() == ["a", "b"]


class TestSqlAlchemyStore:
    """Tests specific to the SQLAlchemy adapter."""

    def test_duplicate_ids_keep_last_payload(self):
        store = SqlAlchemyStore(build_engine("sqlite://"), create_tables=True)
        store.save_textbook_units(
            "learner-1",
            [make_unit("unit-a", "first"), make_unit("unit-b"), make_unit("unit-a", "second")],
        )

        units = store.get_textbook_units("learner-1")

        assert [u.id for u in units] == ["unit-a", "unit-b"]
        assert units[0].title == "second"

    def test_data_survives_new_store_on_same_engine(self):
        engine = build_engine("sqlite://")
        SqlAlchemyStore(engine, create_tables=True).save_cache_record(make_record())

        assert SqlAlchemyStore(engine).get_cache_record(make_record().cache_key) is not None

"""
Learning Store.

Persistence for the content pipeline and the textbook:
- LLM cache records keyed by '{learner_id}::{template_id}::{input_hash}'
- Each learner's ordered list of textbook units

Two adapters share one contract:
- InMemoryStore: process-local, used by tests and one-shot CLI runs
- SqlAlchemyStore: JSON rows in llm_cache_records / textbook_units

Unreadable records never propagate: a malformed cache row is a miss and a
malformed unit row is skipped, both with a warning.

Read-modify-write of a learner's textbook goes through
update_textbook_units(), which holds that learner's lock for the whole
read, transform and write.
"""
from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, Protocol, runtime_checkable

from loguru import logger
from sqlalchemy import Engine, delete, select
from sqlalchemy.orm import Session, sessionmaker

from src.db.database import init_db, make_session_factory, session_scope
from src.db.models import LLMCacheRecordRow, TextbookUnitRow
from src.textbook.models import InstructionalUnit, LLMCacheRecord, now_ms

UnitsTransform = Callable[[list[InstructionalUnit]], list[InstructionalUnit]]


@runtime_checkable
class LearningStore(Protocol):
    """Storage contract used by the pipeline and the textbook service."""

    def get_cache_record(self, cache_key: str) -> Optional[LLMCacheRecord]: ...

    def save_cache_record(self, record: LLMCacheRecord) -> None: ...

    def get_textbook_units(self, learner_id: str) -> list[InstructionalUnit]: ...

    def save_textbook_units(self, learner_id: str, units: list[InstructionalUnit]) -> None: ...

    def update_textbook_units(self, learner_id: str, fn: UnitsTransform) -> list[InstructionalUnit]: ...

    def learner_lock(self, learner_id: str) -> threading.Lock: ...


def _load_cache_record(cache_key: str, data: dict) -> Optional[LLMCacheRecord]:
    try:
        return LLMCacheRecord.from_dict(data)
    except (ValueError, TypeError, KeyError, AttributeError) as e:
        logger.warning(f"Ignoring malformed cache record {cache_key!r}: {e}")
        return None


def _load_units(learner_id: str, payloads: list[dict]) -> list[InstructionalUnit]:
    units = []
    for payload in payloads:
        try:
            units.append(InstructionalUnit.from_dict(payload))
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            logger.warning(f"Skipping malformed textbook unit for {learner_id!r}: {e}")
    return units


class _LearnerLocks:
    """One lock per learner, created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def learner_lock(self, learner_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(learner_id)
            if lock is None:
                lock = self._locks[learner_id] = threading.Lock()
            return lock

    def update_textbook_units(self, learner_id: str, fn: UnitsTransform) -> list[InstructionalUnit]:
        """Apply fn to the learner's units and persist the result atomically per learner."""
        with self.learner_lock(learner_id):
            updated = fn(self.get_textbook_units(learner_id))  # type: ignore[attr-defined]
            self.save_textbook_units(learner_id, updated)  # type: ignore[attr-defined]
            return updated


class InMemoryStore(_LearnerLocks):
    """Dict-backed store; records are kept in serialized form so callers never share objects."""

    def __init__(self) -> None:
        super().__init__()
        self._cache: dict[str, dict] = {}
        self._units: dict[str, list[dict]] = {}

    def get_cache_record(self, cache_key: str) -> Optional[LLMCacheRecord]:
        data = self._cache.get(cache_key)
        if data is None:
            return None
        return _load_cache_record(cache_key, copy.deepcopy(data))

    def save_cache_record(self, record: LLMCacheRecord) -> None:
        self._cache[record.cache_key] = record.to_dict()

    def put_raw_cache_record(self, cache_key: str, data: dict) -> None:
        """Store an arbitrary payload (for importing or simulating legacy rows)."""
        self._cache[cache_key] = copy.deepcopy(data)

    def get_textbook_units(self, learner_id: str) -> list[InstructionalUnit]:
        return _load_units(learner_id, copy.deepcopy(self._units.get(learner_id, [])))

    def save_textbook_units(self, learner_id: str, units: list[InstructionalUnit]) -> None:
        self._units[learner_id] = [unit.to_dict() for unit in units]

    def learner_ids(self) -> list[str]:
        return sorted(self._units)


class SqlAlchemyStore(_LearnerLocks):
    """SQLAlchemy-backed store."""

    def __init__(self, engine: Optional[Engine] = None, create_tables: bool = False):
        super().__init__()
        self._factory: sessionmaker[Session] = make_session_factory(engine)
        if create_tables:
            init_db(self._factory.kw["bind"])

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with session_scope(self._factory) as session:
            yield session

    def get_cache_record(self, cache_key: str) -> Optional[LLMCacheRecord]:
        with self._session() as session:
            row = session.get(LLMCacheRecordRow, cache_key)
            if row is None:
                return None
            data = {
                "cache_key": row.cache_key,
                "learner_id": row.learner_id,
                "template_id": row.template_id,
                "input_hash": row.input_hash,
                "unit": row.unit,
                "created_at": row.created_at,
            }
        return _load_cache_record(cache_key, data)

    def save_cache_record(self, record: LLMCacheRecord) -> None:
        with self._session() as session:
            session.merge(
                LLMCacheRecordRow(
                    cache_key=record.cache_key,
                    learner_id=record.learner_id,
                    template_id=record.template_id,
                    input_hash=record.input_hash,
                    unit=record.unit.to_dict(),
                    created_at=record.created_at,
                )
            )

    def get_textbook_units(self, learner_id: str) -> list[InstructionalUnit]:
        with self._session() as session:
            rows = session.scalars(
                select(TextbookUnitRow)
                .where(TextbookUnitRow.learner_id == learner_id)
                .order_by(TextbookUnitRow.position)
            ).all()
            payloads = [row.payload for row in rows]
        return _load_units(learner_id, payloads)

    def save_textbook_units(self, learner_id: str, units: list[InstructionalUnit]) -> None:
        timestamp = now_ms()
        with self._session() as session:
            session.execute(delete(TextbookUnitRow).where(TextbookUnitRow.learner_id == learner_id))
            # later duplicates of an id replace earlier ones
            by_id: dict[str, tuple[int, InstructionalUnit]] = {}
            for position, unit in enumerate(units):
                by_id[unit.id] = (by_id.get(unit.id, (position, unit))[0], unit)
            session.add_all(
                TextbookUnitRow(
                    learner_id=learner_id,
                    unit_id=unit_id,
                    position=position,
                    payload=unit.to_dict(),
                    updated_at=timestamp,
                )
                for unit_id, (position, unit) in by_id.items()
            )
        logger.debug(f"Saved {len(units)} textbook units for {learner_id!r}")

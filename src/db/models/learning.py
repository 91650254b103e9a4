"""
Learning Store Models.

SQLAlchemy tables backing the learning store:
- Cached pipeline output, one row per cache key
- Textbook units, one row per (learner, unit), payload kept as JSON

Units are stored as their to_dict() form so the schema does not change
when unit fields are added.
"""

from __future__ import annotations

from sqlalchemy import JSON, BigInteger, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class LLMCacheRecordRow(Base):
    """Generated (or fallback) unit cached by learner, template and input hash."""

    __tablename__ = "llm_cache_records"

    cache_key: Mapped[str] = mapped_column(String(512), primary_key=True)
    learner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    template_id: Mapped[str] = mapped_column(String(64), nullable=False)
    input_hash: Mapped[str] = mapped_column(String(32), nullable=False)
    unit: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    def __repr__(self) -> str:
        return f"<LLMCacheRecordRow(cache_key={self.cache_key!r})>"


class TextbookUnitRow(Base):
    """One unit in a learner's textbook."""

    __tablename__ = "textbook_units"

    learner_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    unit_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (Index("idx_textbook_units_learner_position", "learner_id", "position"),)

    def __repr__(self) -> str:
        return f"<TextbookUnitRow(learner_id={self.learner_id!r}, unit_id={self.unit_id!r})>"

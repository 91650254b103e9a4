# SQLAlchemy models
from .base import Base
from .learning import LLMCacheRecordRow, TextbookUnitRow

__all__ = [
    "Base",
    "LLMCacheRecordRow",
    "TextbookUnitRow",
]

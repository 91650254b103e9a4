"""
Configuration settings for the adaptive textbook engine.

Uses Pydantic Settings for environment variable management with .env file support.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # Database
    # ========================================
    database_url: str = Field(
        default="sqlite:///tutor_engine.db",
        description="SQLAlchemy connection string for the cache and textbook store",
    )

    # ========================================
    # Text Generation (Ollama)
    # ========================================
    ollama_url: str = Field(
        default="http://127.0.0.1:11434",
        description="Base URL of the local Ollama server",
    )
    llm_model: str = Field(
        default="qwen2.5:1.5b-instruct",
        description="Model used for explanation and notebook generation",
    )
    llm_temperature: float = Field(
        default=0.0,
        description="Sampling temperature (clamped to 0-2)",
    )
    llm_top_p: float = Field(
        default=1.0,
        description="Nucleus sampling mass (clamped to 0-1)",
    )
    llm_timeout_ms: int = Field(
        default=25000,
        description="Timeout for a single generation call",
    )
    llm_healthcheck_timeout_ms: int = Field(
        default=8000,
        description="Timeout for the model listing health check",
    )

    # ========================================
    # Escalation Policy
    # ========================================
    auto_escalation_mode: Literal["always-after-hint-threshold", "threshold-gated"] = Field(
        default="always-after-hint-threshold",
        description="Whether hint exhaustion alone escalates, or also needs the error threshold",
    )
    hint_escalation_threshold: int = Field(
        default=3,
        description="Hint views on a problem before auto-escalation is considered",
    )
    aggregation_time_ms: int = Field(
        default=600000,
        description="Time on a problem after which notes are aggregated into the textbook",
    )
    anchor_dataset_path: str | None = Field(
        default=None,
        description="Optional CSV of grounding rows (rowId, error_subtype, feedback_target, ...)",
    )

    # ========================================
    # Textbook
    # ========================================
    textbook_max_revisions: int = Field(
        default=10,
        description="Merges allowed into one unit before a new unit is created",
    )

    # ========================================
    # Logging
    # ========================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging verbosity level",
    )
    log_file: str | None = Field(
        default=None,
        description="Log file path (None for stderr only)",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

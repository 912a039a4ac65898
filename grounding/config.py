"""
Configuration Management

Uses Pydantic Settings for type-safe environment variable handling.
"""

import os
from functools import lru_cache
from typing import Literal

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env" if os.path.exists(".env") else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # General
    debug: bool = False
    log_level: str = "INFO"

    # PostgreSQL
    database_url: SecretStr | None = None
    db_pool_min_size: int = 2
    db_pool_max_size: int = 10
    db_command_timeout: float = 30.0

    # Cache
    cache_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379"
    redis_password: str | None = None
    redis_db: int = 0
    cache_ttl_memory: int = 300  # 5 minutes
    cache_ttl_profile: int = 300  # 5 minutes
    cache_ttl_knowledge_search: int = 600  # 10 minutes
    cache_ttl_source: int = 1800  # 30 minutes
    cache_ttl_optimization: int = 900  # 15 minutes

    # Conversation memory
    memory_cleanup_interval_hours: float = 24.0
    memory_similarity_threshold: float = 0.7
    memory_max_auto_links: int = 3
    memory_link_candidate_limit: int = 50
    memory_default_search_results: int = 20
    memory_max_search_results: int = 100
    memory_optimization_batch_limit: int = 1000
    memory_checksum_key: SecretStr = SecretStr("grounding-memory-checksum")

    # Knowledge base
    knowledge_default_limit: int = 20
    knowledge_max_limit: int = 100
    knowledge_candidate_limit: int = 200

    # Context building
    context_default_token_limit: int = 2048
    context_max_knowledge_entries: int = 50
    context_max_conversation_summaries: int = 10
    context_max_external_sources: int = 20
    context_activity_window_days: int = 30
    context_activity_limit: int = 50

    # Optimizer
    optimizer_min_token_limit: int = 100

    # Grounding service
    grounding_enable_context_building: bool = True
    grounding_enable_knowledge_base: bool = True
    grounding_enable_memory: bool = True
    grounding_enable_optimization: bool = True
    grounding_stage_timeout_seconds: float = 10.0

    @field_validator("memory_similarity_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        """Ensure the similarity threshold is a valid score."""
        if not 0.0 <= v <= 1.0:
            raise ValueError("memory_similarity_threshold must be between 0 and 1")
        return v

    @field_validator("context_default_token_limit", "optimizer_min_token_limit")
    @classmethod
    def validate_token_limit(cls, v: int) -> int:
        """Token limits must be positive."""
        if v <= 0:
            raise ValueError("token limits must be positive")
        return v

    @property
    def memory_cleanup_interval_seconds(self) -> float:
        """Cleanup interval expressed in seconds."""
        return self.memory_cleanup_interval_hours * 3600


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()

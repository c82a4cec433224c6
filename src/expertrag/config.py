"""Runtime configuration for the expertrag services."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from expertrag.errors import ConfigurationError


def _env(name: str, *conventional: str) -> AliasChoices:
    return AliasChoices(f"expertrag_{name}", name, *conventional)


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(
        env_prefix="expertrag_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    environment: Literal["dev", "test", "prod"] = "dev"

    # Embedding service (OpenAI-compatible /embeddings endpoint)
    embedding_api_url: str = "https://api.openai.com/v1"
    embedding_api_key: str | None = Field(default=None, validation_alias=_env("embedding_api_key", "openai_api_key"))
    embedding_model: str = "text-embedding-3-small"
    embedding_dim: int = 1536
    embedding_max_retries: int = 3
    embedding_timeout_seconds: float = 15.0
    embedding_retry_base_seconds: float = 1.0

    # Vector index
    qdrant_url: str | None = Field(default=None, validation_alias=_env("qdrant_url", "qdrant_cloude_url"))
    qdrant_api_key: str | None = Field(default=None, validation_alias=_env("qdrant_api_key", "qdrant_cloude_api_key"))
    qdrant_collection: str = "bhorowitz"
    qdrant_timeout_seconds: float = 30.0

    # Search and context budget
    search_top_k: int = 5
    search_score_threshold: float = 0.3
    # Secondary confidence gate, tuned separately from the search floor
    relevance_threshold: float = 0.3
    max_context_tokens: int = 4000

    # Generation backends
    ai_timeout_seconds: float = 120.0
    gemini_api_key: str | None = Field(default=None, validation_alias=_env("gemini_api_key"))
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    openrouter_api_key: str | None = Field(default=None, validation_alias=_env("openrouter_api_key"))
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    site_url: str = "http://localhost:3000"
    app_title: str = "AI Venture Agent"
    default_model: str = "gemini-2.0-flash"
    generation_temperature: float = 0.1
    generation_max_output_tokens: int = 4096
    generation_max_attempts: int = 3
    generation_retry_base_seconds: float = 1.0

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    def validate_rag(self) -> None:
        """Fail fast when the retrieval stack cannot be reached."""

        if not self.qdrant_url:
            raise ConfigurationError("QDRANT_URL environment variable is required")
        if not self.qdrant_api_key:
            raise ConfigurationError("QDRANT_API_KEY environment variable is required")
        if not self.embedding_api_key:
            raise ConfigurationError("OPENAI_API_KEY environment variable is required for embeddings")


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()

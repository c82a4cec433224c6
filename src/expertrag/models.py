"""Shared domain models used across the expertrag pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Mapping, Sequence, Tuple, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class EmbeddingResult:
    """Vector for one query plus the token usage reported by the service."""

    vector: Tuple[float, ...]
    prompt_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class SearchMatch:
    """Single hit returned by the vector index. Vectors are never fetched."""

    id: str | int
    score: float
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VectorSearchResult:
    results: Sequence[SearchMatch]
    processing_time_ms: int


@dataclass(frozen=True)
class CollectionInfo:
    name: str
    status: str
    points_count: int | None = None
    indexed_vectors_count: int | None = None
    payload_schema_count: int = 0


@dataclass(frozen=True)
class ContextChunk:
    """Passage retrieved from the knowledge base, ready for a prompt."""

    content: str
    source: str
    score: float
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RagResult:
    """Token-budgeted context assembled for one request."""

    chunks: Sequence[ContextChunk]
    total_tokens: int
    processing_time_ms: int
    search_result_count: int


class Provider(str, Enum):
    """Generation backend families; each has its own wire format."""

    GEMINI = "gemini"
    OPENROUTER = "openrouter"


@dataclass(frozen=True)
class ProviderConfig:
    provider: Provider
    model: str
    api_key: str = field(repr=False)


@dataclass(frozen=True)
class GenerationParams:
    temperature: float = 0.1
    max_output_tokens: int = 4096
    timeout_seconds: float = 120.0


@dataclass(frozen=True)
class GenerationAttempt:
    """One pass through the retry loop."""

    attempt: int
    raw_text: str | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class RagMetadata:
    context_chunks: int
    total_tokens: int
    processing_time_ms: int
    search_results: int
    context_relevant: bool

    @classmethod
    def from_result(cls, result: RagResult, *, relevant: bool) -> "RagMetadata":
        return cls(
            context_chunks=len(result.chunks),
            total_tokens=result.total_tokens,
            processing_time_ms=result.processing_time_ms,
            search_results=result.search_result_count,
            context_relevant=relevant,
        )


@dataclass(frozen=True)
class GenerationResult(Generic[T]):
    """Validated structured output plus how it was obtained."""

    result: T
    attempts: int
    model: str
    rag: RagMetadata | None = None

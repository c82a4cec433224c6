"""Context assembly: structured input -> embedding -> search -> token-budgeted chunks."""

from __future__ import annotations

import json
import math
import time
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from expertrag.config import Settings
from expertrag.embeddings.service import EmbeddingBackend
from expertrag.errors import EmbeddingError, RagAnalysisError, VectorSearchError
from expertrag.metrics.observability import PipelineMetrics, get_logger
from expertrag.models import ContextChunk, RagResult, SearchMatch
from expertrag.retrieval.service import VectorSearcher

MAX_QUERY_LENGTH = 2000
DEFAULT_QUERY = "venture capital startup investment analysis"

CONTENT_FIELDS = ("text", "content", "chunk", "page_content", "body")
SOURCE_FIELDS = ("source", "file", "chapter", "section", "page")

CONTEXT_HEADER = "=== VENTURE CAPITAL EXPERT KNOWLEDGE BASE ==="
CONTEXT_FOOTER = "=== END OF KNOWLEDGE BASE ==="
NO_CONTEXT = "No relevant context found in the venture capital knowledge base."

# (field, label, json-encode?) in query order
_QUERY_FIELDS: tuple[tuple[tuple[str, ...], str, bool], ...] = (
    (("name",), "startup name", False),
    (("description",), "description", False),
    (("tagline",), "tagline", False),
    (("industry",), "industry", False),
    (("stage",), "stage", False),
    (("funding",), "funding", True),
    (("team",), "team", True),
    (("businessModel", "business_model"), "business model", False),
)


@dataclass(frozen=True)
class ContextConfig:
    """Budget and thresholds for context assembly."""

    max_context_tokens: int = 4000
    score_threshold: float = 0.3
    relevance_threshold: float = 0.3

    @classmethod
    def from_settings(cls, settings: Settings) -> "ContextConfig":
        return cls(
            max_context_tokens=settings.max_context_tokens,
            score_threshold=settings.search_score_threshold,
            relevance_threshold=settings.relevance_threshold,
        )


def estimate_tokens(text: str) -> int:
    """Rough token count: about 1.3 tokens per whitespace-separated word."""

    return math.ceil(len(text.split()) * 1.3)


def build_search_query(data: Mapping[str, Any]) -> str:
    parts: list[str] = []
    for keys, label, encode in _QUERY_FIELDS:
        value = next((data[key] for key in keys if data.get(key)), None)
        if not value:
            continue
        rendered = json.dumps(value, default=str, ensure_ascii=False, separators=(",", ":")) if encode else str(value)
        parts.append(f"{label}: {rendered}")
    if not parts:
        parts.append(DEFAULT_QUERY)
    return " ".join(parts)[:MAX_QUERY_LENGTH]


def extract_content(payload: Mapping[str, Any]) -> str | None:
    for field in CONTENT_FIELDS:
        value = payload.get(field)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extract_source(payload: Mapping[str, Any]) -> str:
    for field in SOURCE_FIELDS:
        value = payload.get(field)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return f"{field} {value}"
    return "unknown"


class ContextAssembler:
    """Builds a relevance-filtered, token-budgeted context window for a prompt.

    The assembler does not retry across the embed + search boundary; each
    client owns its own retry policy. Failures from either client are wrapped
    in a single :class:`RagAnalysisError`.
    """

    def __init__(
        self,
        embedder: EmbeddingBackend,
        searcher: VectorSearcher,
        config: ContextConfig | None = None,
    ) -> None:
        self._embedder = embedder
        self._searcher = searcher
        self._config = config or ContextConfig()
        self._logger = get_logger("context")

    @property
    def config(self) -> ContextConfig:
        return self._config

    async def analyze(self, data: Mapping[str, Any], collection_name: str) -> RagResult:
        start = time.perf_counter()
        try:
            query = build_search_query(data)
            embedding = await self._embedder.embed(query)
            search = await self._searcher.search_with_retry(embedding.vector, collection_name)
            chunks, total_tokens = self.select_chunks(search.results)
        except EmbeddingError as exc:
            raise RagAnalysisError(
                "Failed to generate embeddings for context analysis",
                RagAnalysisError.EMBEDDING_FAILED,
            ) from exc
        except VectorSearchError as exc:
            raise RagAnalysisError(
                "Failed to search in vector database",
                RagAnalysisError.VECTOR_SEARCH_FAILED,
            ) from exc
        except Exception as exc:
            raise RagAnalysisError(
                f"RAG analysis failed: {exc}",
                RagAnalysisError.ANALYSIS_FAILED,
            ) from exc

        duration = time.perf_counter() - start
        PipelineMetrics.observe_context(duration, len(chunks), (chunk.score for chunk in chunks))
        self._logger.info(
            "context.complete",
            collection=collection_name,
            query_length=len(query),
            search_results=len(search.results),
            chunk_count=len(chunks),
            total_tokens=total_tokens,
            duration_seconds=duration,
        )
        return RagResult(
            chunks=chunks,
            total_tokens=total_tokens,
            processing_time_ms=int(duration * 1000),
            search_result_count=len(search.results),
        )

    def select_chunks(self, matches: Sequence[SearchMatch]) -> tuple[list[ContextChunk], int]:
        """Keep matches in descending score order until the token budget is spent."""

        ordered = sorted(matches, key=lambda match: match.score, reverse=True)
        chunks: list[ContextChunk] = []
        total_tokens = 0
        for match in ordered:
            if match.score < self._config.score_threshold:
                continue
            content = extract_content(match.payload)
            if content is None:
                continue
            tokens = estimate_tokens(content)
            if total_tokens + tokens > self._config.max_context_tokens:
                break
            chunks.append(
                ContextChunk(
                    content=content,
                    source=extract_source(match.payload),
                    score=match.score,
                    metadata={"id": match.id, **match.payload},
                ),
            )
            total_tokens += tokens
        return chunks, total_tokens

    def is_relevant(self, chunks: Sequence[ContextChunk]) -> bool:
        return any(chunk.score >= self._config.relevance_threshold for chunk in chunks)

    @staticmethod
    def format_for_prompt(chunks: Sequence[ContextChunk]) -> str:
        if not chunks:
            return NO_CONTEXT
        parts = [
            "\n".join(
                [
                    f"--- Context {index} (Score: {chunk.score:.3f}, Source: {chunk.source}) ---",
                    chunk.content,
                    "",
                ],
            )
            for index, chunk in enumerate(chunks, start=1)
        ]
        return "\n".join([CONTEXT_HEADER, "", "\n".join(parts), CONTEXT_FOOTER])

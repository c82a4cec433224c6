"""Vector search against a Qdrant collection."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol, Sequence

from qdrant_client import AsyncQdrantClient

from expertrag.config import Settings
from expertrag.errors import CollectionNotFoundError, VectorSearchError, is_transient_message
from expertrag.metrics.observability import PipelineMetrics, TimedSection, get_logger
from expertrag.models import CollectionInfo, SearchMatch, VectorSearchResult

Sleep = Callable[[float], Awaitable[None]]

HEALTHY_STATUSES = frozenset({"green", "yellow"})


@dataclass(frozen=True)
class SearchConfig:
    """Configuration for vector search."""

    collection_name: str = "bhorowitz"
    top_k: int = 5
    score_threshold: float = 0.3
    max_retries: int = 3
    retry_base_seconds: float = 1.0
    max_retry_delay_seconds: float = 5.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "SearchConfig":
        return cls(
            collection_name=settings.qdrant_collection,
            top_k=settings.search_top_k,
            score_threshold=settings.search_score_threshold,
        )


class VectorSearcher(Protocol):
    """Search a named collection for the vectors closest to a query vector."""

    async def search_with_retry(
        self,
        vector: Sequence[float],
        collection_name: str,
        max_retries: int | None = None,
    ) -> VectorSearchResult:
        """Return ranked matches, retrying transient failures."""


class QdrantSearchClient:
    """Vector search client backed by ``qdrant_client.AsyncQdrantClient``."""

    _logger = get_logger("retrieval")

    def __init__(
        self,
        client: AsyncQdrantClient,
        config: SearchConfig | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._client = client
        self._config = config or SearchConfig()
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "QdrantSearchClient":
        settings.validate_rag()
        client = AsyncQdrantClient(
            url=settings.qdrant_url,
            api_key=settings.qdrant_api_key,
            timeout=int(settings.qdrant_timeout_seconds),
        )
        return cls(client, SearchConfig.from_settings(settings), **kwargs)

    @property
    def config(self) -> SearchConfig:
        return self._config

    async def search(
        self,
        vector: Sequence[float],
        collection_name: str,
        limit: int | None = None,
        score_threshold: float | None = None,
    ) -> VectorSearchResult:
        start = time.perf_counter()
        try:
            with TimedSection(PipelineMetrics.observe_search):
                response = await self._client.query_points(
                    collection_name=collection_name,
                    query=list(vector),
                    limit=limit or self._config.top_k,
                    score_threshold=self._config.score_threshold if score_threshold is None else score_threshold,
                    with_payload=True,
                    with_vectors=False,
                )
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            raise VectorSearchError(
                f"Failed to search in Qdrant: {message}",
                code="SEARCH_FAILED",
                retryable=is_transient_message(message),
            ) from exc

        results = [
            SearchMatch(id=point.id, score=float(point.score), payload=dict(point.payload or {}))
            for point in response.points
        ]
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        self._logger.info(
            "search.complete",
            collection=collection_name,
            result_count=len(results),
            duration_ms=elapsed_ms,
        )
        return VectorSearchResult(results=results, processing_time_ms=elapsed_ms)

    async def search_with_retry(
        self,
        vector: Sequence[float],
        collection_name: str,
        max_retries: int | None = None,
    ) -> VectorSearchResult:
        max_retries = max_retries or self._config.max_retries
        last_error: VectorSearchError | None = None
        attempts = 0
        for attempt in range(1, max_retries + 1):
            attempts = attempt
            try:
                return await self.search(vector, collection_name)
            except VectorSearchError as exc:
                last_error = exc
                if not exc.retryable or attempt == max_retries:
                    break
                delay = min(
                    self._config.retry_base_seconds * (2 ** (attempt - 1)),
                    self._config.max_retry_delay_seconds,
                )
                self._logger.warning(
                    "search.retry",
                    collection=collection_name,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=str(exc),
                )
                PipelineMetrics.record_retry("search")
                await self._sleep(delay)

        raise VectorSearchError(
            f"Failed to search after {attempts} attempts: {last_error}",
            code="SEARCH_RETRY_FAILED",
        ) from last_error

    async def check_collection_health(self, collection_name: str | None = None) -> bool:
        name = collection_name or self._config.collection_name
        try:
            collections = await self._client.get_collections()
        except Exception as exc:
            raise VectorSearchError(
                f"Failed to check collection health: {exc}",
                code="HEALTH_CHECK_FAILED",
            ) from exc

        if not any(collection.name == name for collection in collections.collections):
            raise CollectionNotFoundError(name)

        info = await self.get_collection_info(name)
        healthy = info.status in HEALTHY_STATUSES
        self._logger.info("search.health", collection=name, status=info.status, healthy=healthy)
        return healthy

    async def get_collection_info(self, collection_name: str | None = None) -> CollectionInfo:
        name = collection_name or self._config.collection_name
        try:
            info = await self._client.get_collection(name)
        except Exception as exc:
            raise VectorSearchError(
                f"Failed to get collection info: {exc}",
                code="COLLECTION_INFO_FAILED",
            ) from exc
        status = getattr(info.status, "value", info.status)
        return CollectionInfo(
            name=name,
            status=str(status).lower(),
            points_count=info.points_count,
            indexed_vectors_count=info.indexed_vectors_count,
            payload_schema_count=len(info.payload_schema or {}),
        )

    async def aclose(self) -> None:
        await self._client.close()

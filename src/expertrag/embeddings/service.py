"""Embedding backends for expertrag."""

from __future__ import annotations

import asyncio
import hashlib
import math
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol, Sequence, Tuple

import httpx

from expertrag.config import Settings
from expertrag.errors import (
    EmbeddingError,
    InvalidInputError,
    TransientServiceError,
    is_transient_message,
)
from expertrag.metrics.observability import PipelineMetrics, TimedSection, get_logger
from expertrag.models import EmbeddingResult

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for embedding backends."""

    model: str = "text-embedding-3-small"
    dim: int = 1536
    api_url: str = "https://api.openai.com/v1"
    api_key: str | None = None
    max_retries: int = 3
    timeout_seconds: float = 15.0
    retry_base_seconds: float = 1.0
    max_retry_delay_seconds: float = 10.0
    normalize: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmbeddingConfig":
        return cls(
            model=settings.embedding_model,
            dim=settings.embedding_dim,
            api_url=settings.embedding_api_url,
            api_key=settings.embedding_api_key,
            max_retries=settings.embedding_max_retries,
            timeout_seconds=settings.embedding_timeout_seconds,
            retry_base_seconds=settings.embedding_retry_base_seconds,
        )


class EmbeddingBackend(Protocol):
    """Protocol describing embedding behaviour."""

    async def embed(self, text: str) -> EmbeddingResult:
        """Return the embedding vector for a query string."""


def _require_text(text: str) -> None:
    if not text or not text.strip():
        raise InvalidInputError("Text cannot be empty")


class HashEmbeddingBackend:
    """Deterministic lightweight embedding fallback used for testing."""

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()

    def _hash_to_vector(self, text: str) -> Tuple[float, ...]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        repeat = (self._config.dim + len(digest) - 1) // len(digest)
        raw = (digest * repeat)[: self._config.dim]
        vector = [byte / 255.0 for byte in raw]
        if self._config.normalize:
            norm = math.sqrt(sum(value * value for value in vector)) or 1.0
            vector = [value / norm for value in vector]
        return tuple(vector)

    async def embed(self, text: str) -> EmbeddingResult:
        _require_text(text)
        tokens = len(text.split())
        return EmbeddingResult(vector=self._hash_to_vector(text), prompt_tokens=tokens, total_tokens=tokens)


class OpenAIEmbeddingClient:
    """Embedding client for OpenAI-compatible ``/embeddings`` endpoints.

    Owns the retry policy for a single embedding call: transient failures
    (rate limits, gateway errors, timeouts, connection problems) are retried
    with capped exponential backoff, everything else surfaces immediately.
    """

    _logger = get_logger("embeddings")

    def __init__(
        self,
        config: EmbeddingConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._config = config or EmbeddingConfig()
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None
        self._sleep = sleep

    async def embed(self, text: str) -> EmbeddingResult:
        _require_text(text)

        last_error: Exception | None = None
        attempts = 0
        for attempt in range(1, self._config.max_retries + 1):
            attempts = attempt
            try:
                with TimedSection(PipelineMetrics.observe_embedding):
                    return await self._request(text)
            except Exception as exc:
                last_error = exc
                if not is_transient_message(str(exc)) or attempt == self._config.max_retries:
                    break
                delay = min(
                    self._config.retry_base_seconds * (2 ** (attempt - 1)),
                    self._config.max_retry_delay_seconds,
                )
                self._logger.warning(
                    "embedding.retry",
                    attempt=attempt,
                    max_retries=self._config.max_retries,
                    delay_seconds=delay,
                    error=str(exc),
                )
                PipelineMetrics.record_retry("embedding")
                await self._sleep(delay)

        message = str(last_error) if last_error else "Unknown error"
        self._logger.error("embedding.failed", attempts=attempts, error=message)
        raise EmbeddingError(
            f"Failed to generate embedding after {attempts} attempts: {message}",
            code="GENERATION_FAILED",
            retryable=is_transient_message(message),
        ) from last_error

    async def embed_many(self, texts: Sequence[str]) -> Sequence[EmbeddingResult]:
        # One request in flight at a time.
        results: list[EmbeddingResult] = []
        for text in texts:
            results.append(await self.embed(text))
        return results

    async def _request(self, text: str) -> EmbeddingResult:
        url = f"{self._config.api_url.rstrip('/')}/embeddings"
        payload = {"model": self._config.model, "input": text, "dimensions": self._config.dim}
        headers = {"Authorization": f"Bearer {self._config.api_key or ''}"}
        try:
            response = await asyncio.wait_for(
                self._client.post(
                    url,
                    json=payload,
                    headers=headers,
                    timeout=httpx.Timeout(self._config.timeout_seconds),
                ),
                timeout=self._config.timeout_seconds,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            raise TransientServiceError(f"Embedding request timeout: {exc!r}") from exc
        except httpx.TransportError as exc:
            raise TransientServiceError(f"Embedding connection error: {exc!r}") from exc

        if response.status_code >= 400:
            detail = "rate limit exceeded" if response.status_code == 429 else response.reason_phrase
            message = f"Embedding API error: {response.status_code} {detail}: {response.text[:200]}"
            raise EmbeddingError(message, code="API_ERROR", retryable=is_transient_message(message))

        data = response.json()
        items = data.get("data") or []
        embedding = items[0].get("embedding") if items else None
        if not embedding:
            raise EmbeddingError("No embedding returned from embedding service", code="NO_EMBEDDING_RETURNED")
        if len(embedding) != self._config.dim:
            self._logger.warning(
                "embedding.dim_mismatch",
                configured=self._config.dim,
                actual=len(embedding),
            )
        usage = data.get("usage") or {}
        return EmbeddingResult(
            vector=tuple(float(value) for value in embedding),
            prompt_tokens=int(usage.get("prompt_tokens", 0)),
            total_tokens=int(usage.get("total_tokens", 0)),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "OpenAIEmbeddingClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

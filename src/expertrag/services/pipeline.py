"""Pipeline composition: optional context, provider routing, resilient generation."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

import httpx

from expertrag.config import Settings, get_settings
from expertrag.embeddings.service import EmbeddingConfig, OpenAIEmbeddingClient
from expertrag.errors import GenerationFailedError, RagAnalysisError, ResponseParseError, ResponseValidationError
from expertrag.metrics.observability import PipelineMetrics, get_logger
from expertrag.models import GenerationParams, GenerationResult, ProviderConfig, RagMetadata, RagResult
from expertrag.retrieval.service import QdrantSearchClient
from expertrag.schemas import (
    ChatRagMetadata,
    ExpertChatResponse,
    MultiExpertAnalysisResult,
    RagAnalysisMetadata,
    RagContextModel,
    RagExpertAnalysisResult,
    VentureAgentAnalysisResult,
)
from expertrag.services.context import ContextAssembler, ContextConfig
from expertrag.services.generation import GenerationBackend, HttpGenerationClient
from expertrag.services.providers import ProviderSelector
from expertrag.services.resilience import RetryPolicy, Schema, Sleep, execute_with_retry


@dataclass(frozen=True)
class PromptBuilderConfig:
    """Placeholders recognised in caller-supplied prompt templates."""

    context_placeholder: str = "{{RAG_CONTEXT}}"
    data_placeholder: str = "{{PROJECT_DATA}}"
    context_heading: str = "KNOWLEDGE BASE CONTEXT:"


class PromptBuilder:
    """Splices retrieved context and request data into a prompt template."""

    def __init__(self, config: PromptBuilderConfig | None = None) -> None:
        self._config = config or PromptBuilderConfig()

    def augment(self, prompt: str, context: str, data: Mapping[str, Any] | None = None) -> str:
        if self._config.context_placeholder in prompt:
            augmented = prompt.replace(self._config.context_placeholder, context)
        else:
            augmented = f"{prompt.rstrip()}\n\n{self._config.context_heading}\n{context}"
        if data is not None and self._config.data_placeholder in augmented:
            augmented = augmented.replace(
                self._config.data_placeholder,
                json.dumps(data, indent=2, default=str, ensure_ascii=False),
            )
        return augmented


@dataclass(frozen=True)
class PipelineConfig:
    collection_name: str = "bhorowitz"
    params: GenerationParams = field(default_factory=GenerationParams)
    max_attempts: int = 3
    retry_base_seconds: float = 1.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "PipelineConfig":
        return cls(
            collection_name=settings.qdrant_collection,
            params=GenerationParams(
                temperature=settings.generation_temperature,
                max_output_tokens=settings.generation_max_output_tokens,
                timeout_seconds=settings.ai_timeout_seconds,
            ),
            max_attempts=settings.generation_max_attempts,
            retry_base_seconds=settings.generation_retry_base_seconds,
        )

    def policy(self, backoff: str = "linear") -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.retry_base_seconds,
            backoff=backoff,
        )


class StructuredGenerator:
    """Runs prompts through provider routing and the retry orchestrator.

    When a :class:`ContextAssembler` is configured, ``generate_with_context``
    grounds the prompt in the knowledge base first; a failure there degrades
    to plain generation instead of failing the request.
    """

    def __init__(
        self,
        selector: ProviderSelector,
        backend: GenerationBackend,
        assembler: ContextAssembler | None = None,
        *,
        config: PipelineConfig | None = None,
        prompt_builder: PromptBuilder | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._selector = selector
        self._backend = backend
        self._assembler = assembler
        self._config = config or PipelineConfig()
        self._prompt_builder = prompt_builder or PromptBuilder()
        self._sleep = sleep
        self._closers: list[Any] = []
        self._logger = get_logger("pipeline")

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        with_context: bool = True,
        http_client: httpx.AsyncClient | None = None,
    ) -> "StructuredGenerator":
        """Wire the production stack (OpenAI embeddings, Qdrant, HTTP generation)."""

        settings = settings or get_settings()
        assembler = None
        closers: list[Any] = []
        if with_context:
            searcher = QdrantSearchClient.from_settings(settings)
            embedder = OpenAIEmbeddingClient(EmbeddingConfig.from_settings(settings), client=http_client)
            assembler = ContextAssembler(embedder, searcher, ContextConfig.from_settings(settings))
            closers.extend([embedder, searcher])
        backend = HttpGenerationClient.from_settings(settings, client=http_client)
        closers.append(backend)
        generator = cls(
            ProviderSelector(settings),
            backend,
            assembler,
            config=PipelineConfig.from_settings(settings),
        )
        generator._closers = closers
        return generator

    @property
    def assembler(self) -> ContextAssembler | None:
        return self._assembler

    async def generate(
        self,
        prompt: str,
        schema: Schema,
        model: str | None = None,
        *,
        params: GenerationParams | None = None,
        policy: RetryPolicy | None = None,
        label: str = "AI analysis",
    ) -> GenerationResult:
        provider_config = self._selector.resolve(model)
        return await self._run(
            prompt,
            schema,
            provider_config,
            params or self._config.params,
            policy or self._config.policy("linear"),
            label,
        )

    async def generate_with_context(
        self,
        data: Mapping[str, Any],
        collection_name: str | None,
        prompt: str,
        schema: Schema,
        model: str | None = None,
        *,
        params: GenerationParams | None = None,
        policy: RetryPolicy | None = None,
        label: str = "AI analysis",
    ) -> GenerationResult:
        provider_config = self._selector.resolve(model)
        params = params or self._config.params
        policy = policy or self._config.policy("linear")

        try:
            rag = await self._analyze(data, collection_name)
        except RagAnalysisError as exc:
            PipelineMetrics.record_rag_fallback()
            self._logger.warning(
                "pipeline.rag_fallback",
                code=exc.code,
                error=str(exc),
                cause=str(exc.__cause__) if exc.__cause__ else None,
            )
            return await self._run(prompt, schema, provider_config, params, policy, label)

        augmented = self._prompt_builder.augment(prompt, ContextAssembler.format_for_prompt(rag.chunks), data)
        metadata = RagMetadata.from_result(rag, relevant=self._assembler.is_relevant(rag.chunks))
        result = await self._run(augmented, schema, provider_config, params, policy, label)
        return replace(result, rag=metadata)

    async def generate_rag_analysis(
        self,
        data: Mapping[str, Any],
        collection_name: str | None,
        prompt: str,
        model: str | None = None,
    ) -> GenerationResult:
        """Venture analysis grounded in the knowledge base.

        Unlike :meth:`generate_with_context` this does not degrade: the caller
        asked for a knowledge-base answer, so a retrieval failure is raised.
        """

        provider_config = self._selector.resolve(model)
        rag = await self._analyze(data, collection_name)
        relevant = self._assembler.is_relevant(rag.chunks)
        if not relevant:
            self._logger.warning("pipeline.low_relevance", chunk_count=len(rag.chunks))

        augmented = self._prompt_builder.augment(prompt, ContextAssembler.format_for_prompt(rag.chunks), data)
        generated = await self._run(
            augmented,
            VentureAgentAnalysisResult,
            provider_config,
            self._config.params,
            self._config.policy("linear"),
            "RAG analysis",
        )
        metadata = RagMetadata.from_result(rag, relevant=relevant)
        result = RagExpertAnalysisResult(
            **generated.result.model_dump(),
            rag_context=[RagContextModel.from_chunk(chunk) for chunk in rag.chunks],
            rag_metadata=RagAnalysisMetadata.from_metadata(metadata),
        )
        return replace(generated, result=result, rag=metadata)

    async def generate_multi_expert(self, prompt: str, model: str | None = None) -> GenerationResult:
        params = replace(
            self._config.params,
            max_output_tokens=self._config.params.max_output_tokens * 2,
            timeout_seconds=self._config.params.timeout_seconds * 2,
        )
        return await self.generate(
            prompt,
            MultiExpertAnalysisResult,
            model,
            params=params,
            policy=self._config.policy("exponential"),
            label="Multi-expert analysis",
        )

    async def generate_expert_reply(
        self,
        prompt: str,
        model: str | None = None,
        *,
        data: Mapping[str, Any] | None = None,
        collection_name: str | None = None,
    ) -> GenerationResult:
        """Expert chat reply; grounded in the knowledge base when ``data`` is given."""

        policy = self._config.policy("exponential")
        label = "Expert chat response generation"
        if data is None or self._assembler is None:
            return await self.generate(prompt, ExpertChatResponse, model, policy=policy, label=label)

        generated = await self.generate_with_context(
            data,
            collection_name,
            prompt,
            ExpertChatResponse,
            model,
            policy=policy,
            label=label,
        )
        if generated.rag is None:
            return generated
        reply = generated.result.model_copy(
            update={
                "rag_metadata": ChatRagMetadata(
                    context_chunks=generated.rag.context_chunks,
                    total_tokens=generated.rag.total_tokens,
                    processing_time=generated.rag.processing_time_ms,
                ),
            },
        )
        return replace(generated, result=reply)

    async def _analyze(self, data: Mapping[str, Any], collection_name: str | None) -> RagResult:
        if self._assembler is None:
            raise RagAnalysisError("Context assembly is not configured", RagAnalysisError.ANALYSIS_FAILED)
        return await self._assembler.analyze(data, collection_name or self._config.collection_name)

    async def _run(
        self,
        prompt: str,
        schema: Schema,
        provider_config: ProviderConfig,
        params: GenerationParams,
        policy: RetryPolicy,
        label: str,
    ) -> GenerationResult:
        async def call() -> str:
            return await self._backend.generate(prompt, provider_config, params)

        try:
            outcome = await execute_with_retry(call, schema, policy=policy, sleep=self._sleep, label=label)
        except GenerationFailedError as exc:
            if isinstance(exc.last_error, (ResponseParseError, ResponseValidationError)):
                raise GenerationFailedError(
                    f"AI model {provider_config.model} returned invalid JSON format "
                    f"after {exc.attempts} attempts: {exc.last_error}",
                    attempts=exc.attempts,
                    last_error=exc.last_error,
                ) from exc
            raise

        self._logger.info(
            "generation.complete",
            label=label,
            provider=provider_config.provider.value,
            model=provider_config.model,
            attempts=outcome.attempts,
            prompt_length=len(prompt),
        )
        return GenerationResult(result=outcome.result, attempts=outcome.attempts, model=provider_config.model)

    async def aclose(self) -> None:
        for closer in self._closers:
            await closer.aclose()

    async def __aenter__(self) -> "StructuredGenerator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

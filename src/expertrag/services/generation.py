"""Generation backends for expertrag.

Each backend turns a prompt into raw text using its own wire format. There is
no retry logic here: one call, one attempt. Resilience lives in
:mod:`expertrag.services.resilience`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence, Union

import httpx

from expertrag.config import Settings
from expertrag.errors import GenerationTimeoutError, ProviderError, TransientServiceError
from expertrag.metrics.observability import PipelineMetrics
from expertrag.models import GenerationParams, Provider, ProviderConfig

LOGGER = logging.getLogger(__name__)


def _as_tuple(value: Any) -> tuple:
    return tuple(value) if isinstance(value, (list, tuple)) else ()


def _error_message(error: Any) -> str:
    if isinstance(error, Mapping):
        return str(error.get("message", "unknown error"))
    return str(error)


def _first(items: Sequence[Any]) -> Mapping[str, Any]:
    head = items[0] if items else None
    return head if isinstance(head, Mapping) else {}


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


@dataclass(frozen=True)
class GeminiResponse:
    """``generateContent`` response envelope."""

    candidates: Sequence[Any] = field(default_factory=tuple)
    error: Any = None

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "GeminiResponse":
        return cls(candidates=_as_tuple(data.get("candidates")), error=data.get("error"))

    def extract_text(self) -> str:
        if self.error:
            raise ProviderError(f"Gemini API error: {_error_message(self.error)}", 500)
        if not self.candidates:
            raise ProviderError("No candidates returned from Gemini API", 500)
        parts = _as_tuple(_mapping(_first(self.candidates).get("content")).get("parts"))
        text = _first(parts).get("text")
        if not isinstance(text, str) or not text.strip():
            raise ProviderError("No content generated from Gemini API", 500)
        return text.strip()


@dataclass(frozen=True)
class OpenRouterResponse:
    """OpenAI-style ``chat/completions`` response envelope."""

    choices: Sequence[Any] = field(default_factory=tuple)
    model: str | None = None
    error: Any = None

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "OpenRouterResponse":
        return cls(
            choices=_as_tuple(data.get("choices")),
            model=data.get("model"),
            error=data.get("error"),
        )

    def extract_text(self) -> str:
        if self.error:
            raise ProviderError(f"OpenRouter API error: {_error_message(self.error)}", 500)
        if not self.choices:
            raise ProviderError("No choices returned from OpenRouter API", 500)
        content = _mapping(_first(self.choices).get("message")).get("content")
        if not isinstance(content, str) or not content.strip():
            raise ProviderError("No content generated from OpenRouter API", 500)
        return content.strip()


ResponseEnvelope = Union[GeminiResponse, OpenRouterResponse]


@dataclass(frozen=True)
class GenerationRequest:
    url: str
    headers: Mapping[str, str]
    body: Mapping[str, Any]
    params: Mapping[str, str] = field(default_factory=dict)


class GenerationBackend(Protocol):
    """Protocol describing generation behaviour."""

    async def generate(self, prompt: str, config: ProviderConfig, params: GenerationParams) -> str:
        """Return raw generated text for the prompt."""


@dataclass(frozen=True)
class EndpointConfig:
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    site_url: str = "http://localhost:3000"
    app_title: str = "AI Venture Agent"

    @classmethod
    def from_settings(cls, settings: Settings) -> "EndpointConfig":
        return cls(
            gemini_base_url=settings.gemini_base_url,
            openrouter_base_url=settings.openrouter_base_url,
            site_url=settings.site_url,
            app_title=settings.app_title,
        )


class GeminiAdapter:
    """``generateContent`` wire format; the API key travels as a query parameter."""

    label = "Gemini"

    def build_request(
        self,
        prompt: str,
        config: ProviderConfig,
        params: GenerationParams,
        endpoints: EndpointConfig,
    ) -> GenerationRequest:
        return GenerationRequest(
            url=f"{endpoints.gemini_base_url.rstrip('/')}/models/{config.model}:generateContent",
            headers={"Content-Type": "application/json"},
            params={"key": config.api_key},
            body={
                "contents": [{"parts": [{"text": prompt}]}],
                "generationConfig": {
                    "temperature": params.temperature,
                    "maxOutputTokens": params.max_output_tokens,
                },
            },
        )

    def parse(self, data: Mapping[str, Any]) -> GeminiResponse:
        return GeminiResponse.from_json(data)


class OpenRouterAdapter:
    """OpenAI-compatible chat completions wire format."""

    label = "OpenRouter"

    def build_request(
        self,
        prompt: str,
        config: ProviderConfig,
        params: GenerationParams,
        endpoints: EndpointConfig,
    ) -> GenerationRequest:
        return GenerationRequest(
            url=f"{endpoints.openrouter_base_url.rstrip('/')}/chat/completions",
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {config.api_key}",
                "HTTP-Referer": endpoints.site_url,
                "X-Title": endpoints.app_title,
            },
            body={
                "model": config.model,
                "messages": [{"role": "user", "content": prompt}],
                "temperature": params.temperature,
                "max_tokens": params.max_output_tokens,
            },
        )

    def parse(self, data: Mapping[str, Any]) -> OpenRouterResponse:
        return OpenRouterResponse.from_json(data)


WireAdapter = Union[GeminiAdapter, OpenRouterAdapter]

ADAPTERS: Mapping[Provider, WireAdapter] = {
    Provider.GEMINI: GeminiAdapter(),
    Provider.OPENROUTER: OpenRouterAdapter(),
}


def adapter_for(provider: Provider) -> WireAdapter:
    try:
        return ADAPTERS[provider]
    except KeyError:
        raise ProviderError(f"Unsupported AI provider: {provider}", 500) from None


def parse_envelope(provider: Provider, data: Mapping[str, Any]) -> ResponseEnvelope:
    return adapter_for(provider).parse(data)


class HttpGenerationClient:
    """Single-attempt HTTP generation client; the wire format comes from the provider's adapter."""

    def __init__(
        self,
        endpoints: EndpointConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._endpoints = endpoints or EndpointConfig()
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, settings: Settings, *, client: httpx.AsyncClient | None = None) -> "HttpGenerationClient":
        return cls(EndpointConfig.from_settings(settings), client=client)

    async def generate(self, prompt: str, config: ProviderConfig, params: GenerationParams) -> str:
        adapter = adapter_for(config.provider)
        label = adapter.label
        request = adapter.build_request(prompt, config, params, self._endpoints)
        start = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self._client.post(
                    request.url,
                    params=request.params,
                    headers=request.headers,
                    json=request.body,
                    timeout=httpx.Timeout(params.timeout_seconds),
                ),
                timeout=params.timeout_seconds,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            raise GenerationTimeoutError(f"{label} API request timeout") from exc
        except httpx.TransportError as exc:
            raise TransientServiceError(f"{label} API connection error: {exc!r}") from exc
        finally:
            PipelineMetrics.observe_generation(time.perf_counter() - start)

        if not response.is_success:
            raise ProviderError(
                f"{label} API error: {response.status_code} {response.reason_phrase}: {response.text[:500]}",
                response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(f"{label} API returned a malformed envelope: {exc}", response.status_code) from exc
        if not isinstance(data, Mapping):
            raise ProviderError(f"{label} API returned a malformed envelope", response.status_code)
        envelope = adapter.parse(data)
        text = envelope.extract_text()
        LOGGER.debug(
            "%s generation returned %d characters for model %s", label, len(text), config.model
        )
        return text

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpGenerationClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

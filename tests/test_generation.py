from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from expertrag.errors import GenerationTimeoutError, ProviderError, TransientServiceError
from expertrag.models import GenerationParams, Provider, ProviderConfig
from expertrag.services.generation import (
    EndpointConfig,
    GeminiAdapter,
    GeminiResponse,
    HttpGenerationClient,
    OpenRouterAdapter,
    OpenRouterResponse,
    adapter_for,
    parse_envelope,
)

GEMINI = ProviderConfig(provider=Provider.GEMINI, model="gemini-2.0-flash", api_key="gm-key")
OPENROUTER = ProviderConfig(provider=Provider.OPENROUTER, model="x-ai/grok-3", api_key="or-key")
PARAMS = GenerationParams(temperature=0.1, max_output_tokens=4096, timeout_seconds=5.0)


def _client(handler) -> HttpGenerationClient:
    return HttpGenerationClient(
        EndpointConfig(site_url="https://venture.example", app_title="Test Agent"),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def test_gemini_request_shape_and_text_extraction():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": '  {"message": "hi"}  '}]}}]})

    text = asyncio.run(_client(handler).generate("Analyse Acme", GEMINI, PARAMS))

    assert text == '{"message": "hi"}'
    request = seen[0]
    assert request.url.path == "/v1beta/models/gemini-2.0-flash:generateContent"
    assert request.url.params["key"] == "gm-key"
    body = json.loads(request.content)
    assert body["contents"] == [{"parts": [{"text": "Analyse Acme"}]}]
    assert body["generationConfig"] == {"temperature": 0.1, "maxOutputTokens": 4096}


def test_openrouter_request_shape_and_text_extraction():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"model": "x-ai/grok-3", "choices": [{"index": 0, "message": {"role": "assistant", "content": "{}"}}]},
        )

    text = asyncio.run(_client(handler).generate("Analyse Acme", OPENROUTER, PARAMS))

    assert text == "{}"
    request = seen[0]
    assert str(request.url) == "https://openrouter.ai/api/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer or-key"
    assert request.headers["HTTP-Referer"] == "https://venture.example"
    assert request.headers["X-Title"] == "Test Agent"
    body = json.loads(request.content)
    assert body["model"] == "x-ai/grok-3"
    assert body["messages"] == [{"role": "user", "content": "Analyse Acme"}]
    assert body["max_tokens"] == 4096


def test_non_success_status_carries_code_in_message():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="overloaded")

    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(_client(handler).generate("prompt", OPENROUTER, PARAMS))

    assert excinfo.value.http_status == 503
    assert "503" in str(excinfo.value)
    assert excinfo.value.retryable


def test_auth_failure_is_not_retryable():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, text="unauthorized")

    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(_client(handler).generate("prompt", GEMINI, PARAMS))

    assert excinfo.value.http_status == 401
    assert not excinfo.value.retryable


def test_timeout_maps_to_generation_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    with pytest.raises(GenerationTimeoutError, match="Gemini API request timeout") as excinfo:
        asyncio.run(_client(handler).generate("prompt", GEMINI, PARAMS))
    assert excinfo.value.http_status == 408


def test_connection_failure_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientServiceError):
        asyncio.run(_client(handler).generate("prompt", OPENROUTER, PARAMS))


def test_empty_envelopes_raise_provider_error():
    with pytest.raises(ProviderError, match="No candidates"):
        GeminiResponse.from_json({}).extract_text()
    with pytest.raises(ProviderError, match="No content generated"):
        OpenRouterResponse.from_json({"choices": [{"message": {"content": "   "}}]}).extract_text()
    with pytest.raises(ProviderError, match="quota exhausted"):
        GeminiResponse.from_json({"error": {"message": "quota exhausted"}}).extract_text()


def test_parse_envelope_dispatches_on_provider():
    assert isinstance(parse_envelope(Provider.GEMINI, {}), GeminiResponse)
    assert isinstance(parse_envelope(Provider.OPENROUTER, {}), OpenRouterResponse)


def test_each_provider_has_its_own_adapter():
    assert isinstance(adapter_for(Provider.GEMINI), GeminiAdapter)
    assert isinstance(adapter_for(Provider.OPENROUTER), OpenRouterAdapter)
    assert adapter_for(Provider.OPENROUTER).label == "OpenRouter"


def test_non_object_bodies_raise_provider_error():
    def array_body(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=["unexpected"])

    def string_choice(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": ["text only"]})

    def string_part(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"candidates": [{"content": {"parts": ["text only"]}}]})

    with pytest.raises(ProviderError, match="malformed envelope") as excinfo:
        asyncio.run(_client(array_body).generate("prompt", OPENROUTER, PARAMS))
    assert not excinfo.value.retryable
    with pytest.raises(ProviderError, match="No content generated from OpenRouter"):
        asyncio.run(_client(string_choice).generate("prompt", OPENROUTER, PARAMS))
    with pytest.raises(ProviderError, match="No content generated from Gemini"):
        asyncio.run(_client(string_part).generate("prompt", GEMINI, PARAMS))
    with pytest.raises(ProviderError, match="Gemini API error: quota"):
        GeminiResponse.from_json({"error": "quota"}).extract_text()


def test_slow_body_hits_total_deadline():
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, json={"choices": [{"message": {"content": "{}"}}]})

    params = GenerationParams(temperature=0.1, max_output_tokens=64, timeout_seconds=0.05)
    with pytest.raises(GenerationTimeoutError, match="OpenRouter API request timeout"):
        asyncio.run(_client(handler).generate("prompt", OPENROUTER, params))

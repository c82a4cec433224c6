"""Model identifier -> generation backend routing."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from expertrag.config import Settings, get_settings
from expertrag.errors import ConfigurationError
from expertrag.models import Provider, ProviderConfig

GEMINI_FLASH = "gemini-2.0-flash"


@dataclass(frozen=True)
class ModelSpec:
    model: str
    provider: Provider
    display_name: str


MODEL_TABLE: Mapping[str, ModelSpec] = {
    spec.model: spec
    for spec in (
        ModelSpec(GEMINI_FLASH, Provider.GEMINI, "Gemini 2.0 Flash (Google)"),
        ModelSpec("google/gemini-2.5-flash", Provider.OPENROUTER, "Gemini 2.5 Flash (OpenRouter)"),
        ModelSpec("x-ai/grok-3", Provider.OPENROUTER, "Grok 3 (OpenRouter)"),
        ModelSpec("minimax/minimax-01", Provider.OPENROUTER, "MiniMax-01 (OpenRouter)"),
        ModelSpec("microsoft/mai-ds-r1:free", Provider.OPENROUTER, "MAI DS R1 (OpenRouter, free)"),
        ModelSpec("deepseek/deepseek-r1-0528:free", Provider.OPENROUTER, "DeepSeek R1 0528 (OpenRouter, free)"),
    )
}


class ProviderSelector:
    """Pure routing from a model id to a backend and its credential."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def resolve(self, model: str | None = None) -> ProviderConfig:
        model = model or self._settings.default_model
        spec = MODEL_TABLE.get(model)
        # OpenRouter accepts arbitrary vendor/model slugs
        provider = spec.provider if spec else Provider.OPENROUTER

        if provider is Provider.GEMINI:
            api_key = self._settings.gemini_api_key
            if not api_key:
                raise ConfigurationError("Gemini API key not configured")
        else:
            api_key = self._settings.openrouter_api_key
            if not api_key:
                raise ConfigurationError("OpenRouter API key not configured")
        return ProviderConfig(provider=provider, model=model, api_key=api_key)

    @staticmethod
    def available_models() -> list[ModelSpec]:
        return list(MODEL_TABLE.values())

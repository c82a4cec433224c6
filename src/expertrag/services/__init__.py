"""Service layer orchestrations for expertrag."""

from .context import ContextAssembler, ContextConfig
from .generation import EndpointConfig, GenerationBackend, HttpGenerationClient, adapter_for
from .pipeline import PipelineConfig, PromptBuilder, PromptBuilderConfig, StructuredGenerator
from .providers import ProviderSelector
from .resilience import RetryPolicy, execute_with_retry, extract_json

__all__ = [
    "ContextAssembler",
    "ContextConfig",
    "EndpointConfig",
    "GenerationBackend",
    "HttpGenerationClient",
    "adapter_for",
    "PipelineConfig",
    "PromptBuilder",
    "PromptBuilderConfig",
    "ProviderSelector",
    "RetryPolicy",
    "StructuredGenerator",
    "execute_with_retry",
    "extract_json",
]

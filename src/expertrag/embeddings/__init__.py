"""Embedding services."""

from .service import EmbeddingBackend, EmbeddingConfig, HashEmbeddingBackend, OpenAIEmbeddingClient

__all__ = [
    "EmbeddingBackend",
    "EmbeddingConfig",
    "HashEmbeddingBackend",
    "OpenAIEmbeddingClient",
]

"""Retrieval components."""

from .service import QdrantSearchClient, SearchConfig, VectorSearcher

__all__ = ["QdrantSearchClient", "SearchConfig", "VectorSearcher"]

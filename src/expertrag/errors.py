"""Error taxonomy shared by the embedding, search and generation layers."""

from __future__ import annotations

from typing import Iterable, Sequence

# Markers that identify a transient failure from the message text alone. The
# embedding and search clients see SDK / transport messages, the generation
# orchestrator sees provider messages carrying the HTTP status.
SERVICE_TRANSIENT_MARKERS: tuple[str, ...] = (
    "rate limit",
    "timeout",
    "timed out",
    "502",
    "503",
    "504",
    "connection",
    "network",
)
GENERATION_TRANSIENT_MARKERS: tuple[str, ...] = ("429", "502", "503", "504", "timeout", "timed out")


def is_transient_message(message: str, markers: Iterable[str] = SERVICE_TRANSIENT_MARKERS) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in markers)


class ExpertRagError(Exception):
    """Base exception for expertrag."""


class InvalidInputError(ExpertRagError, ValueError):
    """Caller supplied unusable input (empty text, bad arguments)."""

    code = "INVALID_INPUT"


class ConfigurationError(InvalidInputError):
    """Required configuration or credential is missing."""

    code = "CONFIGURATION_ERROR"


class ServiceError(ExpertRagError):
    """Failure reported by, or while talking to, an external service."""

    def __init__(self, message: str, code: str = "SERVICE_ERROR", retryable: bool = False) -> None:
        super().__init__(message)
        self.code = code
        self.retryable = retryable


class TransientServiceError(ServiceError):
    """Rate limit, 5xx, timeout or connection failure."""

    def __init__(self, message: str, code: str = "TRANSIENT_SERVICE_ERROR") -> None:
        super().__init__(message, code=code, retryable=True)


class PermanentServiceError(ServiceError):
    """Non-retryable service failure (auth, bad request, malformed envelope)."""

    def __init__(self, message: str, code: str = "PERMANENT_SERVICE_ERROR") -> None:
        super().__init__(message, code=code, retryable=False)


class EmbeddingError(ServiceError):
    """Embedding generation failed."""


class VectorSearchError(ServiceError):
    """Vector index operation failed."""


class CollectionNotFoundError(VectorSearchError):
    """The requested collection does not exist in the vector index."""

    def __init__(self, collection_name: str) -> None:
        super().__init__(f"Collection '{collection_name}' not found", code="COLLECTION_NOT_FOUND")
        self.collection_name = collection_name


class ProviderError(ServiceError):
    """Generation backend returned a non-2xx status or an unusable envelope."""

    def __init__(self, message: str, http_status: int = 500) -> None:
        super().__init__(
            message,
            code="PROVIDER_ERROR",
            retryable=is_transient_message(message, GENERATION_TRANSIENT_MARKERS),
        )
        self.http_status = http_status


class GenerationTimeoutError(ProviderError):
    """Generation call exceeded its deadline."""

    def __init__(self, message: str) -> None:
        super().__init__(message, http_status=408)


class ResponseParseError(ExpertRagError):
    """Generated text could not be turned into a JSON object."""


class ResponseValidationError(ExpertRagError):
    """Parsed output did not conform to the expected schema."""

    def __init__(self, message: str, errors: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.errors = list(errors)


class GenerationFailedError(ExpertRagError):
    """Terminal generation failure after classification and retries."""

    def __init__(self, message: str, *, attempts: int, last_error: BaseException | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class RagAnalysisError(ExpertRagError):
    """Context assembly failed; wraps the embedding or search failure."""

    EMBEDDING_FAILED = "EMBEDDING_FAILED"
    VECTOR_SEARCH_FAILED = "VECTOR_SEARCH_FAILED"
    ANALYSIS_FAILED = "ANALYSIS_FAILED"

    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


__all__ = [
    "CollectionNotFoundError",
    "ConfigurationError",
    "EmbeddingError",
    "ExpertRagError",
    "GENERATION_TRANSIENT_MARKERS",
    "GenerationFailedError",
    "GenerationTimeoutError",
    "InvalidInputError",
    "PermanentServiceError",
    "ProviderError",
    "RagAnalysisError",
    "ResponseParseError",
    "ResponseValidationError",
    "SERVICE_TRANSIENT_MARKERS",
    "ServiceError",
    "TransientServiceError",
    "VectorSearchError",
    "is_transient_message",
]

"""Turn unreliable free-text generation into validated structured results.

The orchestrator calls a generation closure, recovers a JSON object from the
raw text, validates it against a pydantic schema and retries with backoff when
the failure is one a fresh sample could fix:

* transport errors whose message carries 429/502/503/504 or a timeout,
* output that is not parseable JSON,
* JSON that does not conform to the schema.

Anything else (auth failures, bad requests, missing configuration) fails on
the first attempt so that genuine errors are not hidden behind a retry loop.
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Literal, Sequence, TypeVar, Union

from pydantic import BaseModel, TypeAdapter, ValidationError

from expertrag.config import Settings
from expertrag.errors import (
    GENERATION_TRANSIENT_MARKERS,
    GenerationFailedError,
    InvalidInputError,
    ResponseParseError,
    ResponseValidationError,
    TransientServiceError,
    is_transient_message,
)
from expertrag.metrics.observability import PipelineMetrics, get_logger
from expertrag.models import GenerationAttempt

M = TypeVar("M")
ApiCall = Callable[[], Awaitable[str]]
Sleep = Callable[[float], Awaitable[None]]
Schema = Union[type[BaseModel], TypeAdapter]

_LOGGER = get_logger("resilience")

_FENCE_OPEN = re.compile(r"^\s*```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```\s*$")
_FENCE_ANY = re.compile(r"```(?:json)?\s*|\s*```", re.IGNORECASE)
# Skip "//" preceded by ':' or a quote so URLs inside strings survive.
_LINE_COMMENT = re.compile(r"(?<![:\"'])//[^\n]*")
_BLOCK_COMMENT = re.compile(r"/\*[\s\S]*?\*/")
_FENCED_OBJECT = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```", re.IGNORECASE)


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff shape for :func:`execute_with_retry`."""

    max_attempts: int = 3
    base_delay: float = 1.0
    backoff: Literal["linear", "exponential"] = "linear"
    max_delay: float = 5.0

    def delay_for(self, attempt: int) -> float:
        if self.backoff == "exponential":
            return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return self.base_delay * attempt

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        backoff: Literal["linear", "exponential"] = "linear",
    ) -> "RetryPolicy":
        return cls(
            max_attempts=settings.generation_max_attempts,
            base_delay=settings.generation_retry_base_seconds,
            backoff=backoff,
        )


@dataclass(frozen=True)
class RetryOutcome(Generic[M]):
    result: M
    attempts: int
    history: Sequence[GenerationAttempt]


def _strip_fences(text: str) -> str:
    return _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", text)).strip()


def _cleaned_candidate(text: str) -> str | None:
    stripped = _strip_fences(text)
    start, end = stripped.find("{"), stripped.rfind("}")
    if start == -1 or end <= start:
        return None
    candidate = _FENCE_ANY.sub("", stripped[start : end + 1])
    candidate = _BLOCK_COMMENT.sub("", candidate)
    candidate = _LINE_COMMENT.sub("", candidate)
    return candidate.strip()


def _fenced_candidate(text: str) -> str | None:
    match = _FENCED_OBJECT.search(text)
    return match.group(1).strip() if match else None


def extract_json(raw_text: str) -> dict[str, Any]:
    """Recover a JSON object from model output.

    Tries, in order: the text as-is, a cleaned slice between the first ``{``
    and the last ``}`` with fences and comments removed, and the body of a
    fenced ```json block. Raises :class:`ResponseParseError` if none yields an
    object.
    """

    failures: list[str] = []
    strategies = (
        ("direct", lambda text: text),
        ("cleanup", _cleaned_candidate),
        ("fenced", _fenced_candidate),
    )
    for name, strategy in strategies:
        candidate = strategy(raw_text)
        if candidate is None:
            failures.append(f"{name}: no JSON object found")
            continue
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError as exc:
            failures.append(f"{name}: {exc.msg}")
            continue
        if not isinstance(parsed, dict):
            failures.append(f"{name}: parsed {type(parsed).__name__}, expected object")
            continue
        return parsed

    preview = raw_text[:200] + ("..." if len(raw_text) > 200 else "")
    raise ResponseParseError(
        f"No valid JSON found in response after all parsing attempts ({'; '.join(failures)}). "
        f"Response preview: {preview}"
    )


def validate_response(data: Any, schema: Schema) -> Any:
    try:
        if isinstance(schema, TypeAdapter):
            return schema.validate_python(data)
        return schema.model_validate(data)
    except ValidationError as exc:
        errors = [
            f"{'.'.join(str(part) for part in error['loc']) or '<root>'}: {error['msg']}"
            for error in exc.errors()
        ]
        raise ResponseValidationError(f"Validation failed: {', '.join(errors)}", errors) from exc


def is_retryable_error(error: BaseException) -> bool:
    if isinstance(error, (ResponseParseError, ResponseValidationError, TransientServiceError)):
        return True
    if isinstance(error, InvalidInputError):
        return False
    return is_transient_message(str(error), GENERATION_TRANSIENT_MARKERS)


def _plural(count: int) -> str:
    return "attempt" if count == 1 else "attempts"


async def execute_with_retry(
    api_call: ApiCall,
    schema: Schema,
    *,
    policy: RetryPolicy | None = None,
    sleep: Sleep = asyncio.sleep,
    label: str = "AI analysis",
) -> RetryOutcome:
    """Call ``api_call`` until its output validates against ``schema``.

    Each attempt gets a fresh call (and therefore a fresh per-call timeout).
    Cancellation is never caught, so a cancelled caller stops the loop at the
    current suspension point.
    """

    policy = policy or RetryPolicy()
    history: list[GenerationAttempt] = []
    last_error: Exception | None = None
    attempts = 0

    for attempt in range(1, policy.max_attempts + 1):
        attempts = attempt
        raw_text: str | None = None
        try:
            raw_text = await api_call()
            result = validate_response(extract_json(raw_text), schema)
        except Exception as exc:
            last_error = exc
            retryable = is_retryable_error(exc)
            history.append(GenerationAttempt(attempt=attempt, raw_text=raw_text, error=str(exc)))
            _LOGGER.warning(
                "generation.attempt_failed",
                label=label,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                error_type=type(exc).__name__,
                error=str(exc)[:500],
                retryable=retryable,
            )
            if not retryable or attempt == policy.max_attempts:
                break
            delay = policy.delay_for(attempt)
            PipelineMetrics.record_retry("generation")
            await sleep(delay)
            continue

        history.append(GenerationAttempt(attempt=attempt, raw_text=raw_text))
        if attempt > 1:
            _LOGGER.info("generation.recovered", label=label, attempts=attempt)
        return RetryOutcome(result=result, attempts=attempt, history=tuple(history))

    message = f"{label} failed after {attempts} {_plural(attempts)}: {last_error}"
    _LOGGER.error("generation.failed", label=label, attempts=attempts, error=str(last_error)[:500])
    raise GenerationFailedError(message, attempts=attempts, last_error=last_error) from last_error

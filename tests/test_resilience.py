from __future__ import annotations

import asyncio

import pytest
from pydantic import BaseModel, Field

from expertrag.errors import (
    ConfigurationError,
    GenerationFailedError,
    ProviderError,
    ResponseParseError,
    ResponseValidationError,
    TransientServiceError,
)
from expertrag.services.resilience import (
    RetryPolicy,
    execute_with_retry,
    extract_json,
    is_retryable_error,
    validate_response,
)


class Reply(BaseModel):
    message: str = Field(..., min_length=1)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ScriptedCall:
    """Returns or raises the scripted outcomes in order, repeating the last one."""

    def __init__(self, *outcomes) -> None:
        self._outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self) -> str:
        outcome = self._outcomes[min(self.calls, len(self._outcomes) - 1)]
        self.calls += 1
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _run(call, *, policy: RetryPolicy | None = None, sleep: RecordingSleep | None = None):
    return asyncio.run(execute_with_retry(call, Reply, policy=policy, sleep=sleep or RecordingSleep()))


def test_fenced_json_is_parsed_without_retry():
    call = ScriptedCall('```json\n{"message":"hi"}\n```')
    sleep = RecordingSleep()

    outcome = _run(call, sleep=sleep)

    assert outcome.result == Reply(message="hi")
    assert outcome.attempts == 1
    assert call.calls == 1
    assert sleep.delays == []


def test_fenced_and_bare_json_validate_identically():
    bare = _run(ScriptedCall('{"message": "same"}'))
    fenced = _run(ScriptedCall('```json\n{"message": "same"}\n```'))
    assert bare.result == fenced.result


def test_transient_errors_are_retried_until_success():
    call = ScriptedCall(
        TransientServiceError("502 Bad Gateway"),
        TransientServiceError("502 Bad Gateway"),
        '{"message": "recovered"}',
    )
    sleep = RecordingSleep()

    outcome = _run(call, policy=RetryPolicy(max_attempts=3), sleep=sleep)

    assert outcome.result.message == "recovered"
    assert outcome.attempts == 3
    assert sleep.delays == [1.0, 2.0]
    assert [attempt.succeeded for attempt in outcome.history] == [False, False, True]


def test_unparseable_output_exhausts_attempts():
    call = ScriptedCall("not json")

    with pytest.raises(GenerationFailedError) as excinfo:
        _run(call, policy=RetryPolicy(max_attempts=3))

    assert "3 attempts" in str(excinfo.value)
    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.last_error, ResponseParseError)
    assert isinstance(excinfo.value.__cause__, ResponseParseError)
    assert call.calls == 3


def test_status_503_is_retried_to_max_attempts():
    call = ScriptedCall(ProviderError("OpenRouter API error: 503 Service Unavailable: busy", 503))
    sleep = RecordingSleep()

    with pytest.raises(GenerationFailedError, match="after 3 attempts"):
        _run(call, policy=RetryPolicy(max_attempts=3), sleep=sleep)

    assert call.calls == 3
    assert len(sleep.delays) == 2


def test_unrelated_error_fails_on_first_attempt():
    call = ScriptedCall(ProviderError("Gemini API error: 401 Unauthorized: unauthorized", 401))
    sleep = RecordingSleep()

    with pytest.raises(GenerationFailedError) as excinfo:
        _run(call, sleep=sleep)

    assert call.calls == 1
    assert sleep.delays == []
    assert excinfo.value.attempts == 1
    assert "unauthorized" in str(excinfo.value)


def test_validation_exhaustion_reports_last_failure_detail():
    call = ScriptedCall('{"message": ""}', '{"other": 1}')

    with pytest.raises(GenerationFailedError) as excinfo:
        _run(call, policy=RetryPolicy(max_attempts=2))

    message = str(excinfo.value)
    assert "2 attempts" in message
    assert "message: Field required" in message
    assert isinstance(excinfo.value.last_error, ResponseValidationError)


def test_exponential_policy_caps_delay():
    call = ScriptedCall(TransientServiceError("request timed out"))
    sleep = RecordingSleep()
    policy = RetryPolicy(max_attempts=5, base_delay=2.0, backoff="exponential", max_delay=5.0)

    with pytest.raises(GenerationFailedError):
        _run(call, policy=policy, sleep=sleep)

    assert sleep.delays == [2.0, 4.0, 5.0, 5.0]


def test_cancellation_stops_the_loop():
    sleep_calls: list[float] = []

    async def cancelling_sleep(delay: float) -> None:
        sleep_calls.append(delay)
        raise asyncio.CancelledError()

    call = ScriptedCall("not json")

    async def scenario():
        await execute_with_retry(call, Reply, sleep=cancelling_sleep)

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(scenario())
    assert call.calls == 1
    assert sleep_calls == [1.0]


def test_extract_json_strips_comments_and_surrounding_prose():
    raw = 'Here is the analysis:\n{\n  "message": "see https://example.com", // inline note\n  /* block */ "extra": 1\n}\nThanks!'
    assert extract_json(raw) == {"message": "see https://example.com", "extra": 1}


def test_extract_json_falls_back_to_fenced_block():
    raw = 'Options {a} and {b}\n```json\n{"message": "fenced"}\n```\ntrailing }'
    assert extract_json(raw) == {"message": "fenced"}


def test_extract_json_rejects_non_object():
    with pytest.raises(ResponseParseError, match="Response preview"):
        extract_json("[1, 2, 3]")


def test_validate_response_joins_field_paths():
    class Nested(BaseModel):
        reply: Reply

    with pytest.raises(ResponseValidationError) as excinfo:
        validate_response({"reply": {}}, Nested)
    assert excinfo.value.errors == ["reply.message: Field required"]


def test_retry_classification():
    assert is_retryable_error(ResponseParseError("bad"))
    assert is_retryable_error(RuntimeError("HTTP 429 Too Many Requests"))
    assert is_retryable_error(RuntimeError("upstream timed out"))
    assert not is_retryable_error(RuntimeError("unauthorized"))
    assert not is_retryable_error(ConfigurationError("Gemini API key not configured"))

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import anthropic
import httpx
import openai

from ephemera.core.errors.classification import ErrorCategory, is_rate_limit_error, is_retryable
from ephemera.core.errors.provider_errors import (
    CategorizedError,
    MalformedToolCallError,
    RunCancelledError,
    StreamInterruptedError,
    classify_error,
    create_classified_error,
    extract_retry_after,
)
from ephemera.core.errors.user_messages import ErrorContext, get_suggested_action, get_user_error_message, is_auth_error
from ephemera.core.infra.breaker_manager import CircuitOpenError

URL = "https://llm.example.test/v1/messages"


def _response(status: int, headers: dict[str, str] | None = None) -> httpx.Response:
    return httpx.Response(status, headers=headers or {}, request=httpx.Request("POST", URL))


class _GeminiError(Exception):
    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def test_retryable_categories() -> None:
    assert is_retryable(ErrorCategory.TRANSIENT)
    assert is_retryable(ErrorCategory.RATE_LIMITED)
    assert is_retryable(ErrorCategory.AMBIGUOUS)
    assert not is_retryable(ErrorCategory.DETERMINISTIC)
    assert is_rate_limit_error(ErrorCategory.RATE_LIMITED)
    assert not is_rate_limit_error(ErrorCategory.TRANSIENT)


def test_openai_sdk_errors() -> None:
    rate_limited = openai.RateLimitError("slow down", response=_response(429), body=None)
    server = openai.InternalServerError("boom", response=_response(503), body=None)
    bad_request = openai.BadRequestError("bad", response=_response(400), body=None)
    auth = openai.AuthenticationError("nope", response=_response(401), body=None)
    connection = openai.APIConnectionError(request=httpx.Request("POST", URL))

    assert classify_error("openai", rate_limited) is ErrorCategory.RATE_LIMITED
    assert classify_error("openai", server) is ErrorCategory.TRANSIENT
    assert classify_error("openai", connection) is ErrorCategory.TRANSIENT
    assert classify_error("openai", bad_request) is ErrorCategory.DETERMINISTIC
    assert classify_error("openai", auth) is ErrorCategory.DETERMINISTIC
    assert classify_error("openai", ValueError("odd")) is ErrorCategory.AMBIGUOUS


def test_anthropic_sdk_errors() -> None:
    overloaded = anthropic.InternalServerError("overloaded", response=_response(529), body=None)
    rate_limited = anthropic.RateLimitError("slow down", response=_response(429), body=None)
    not_found = anthropic.NotFoundError("no model", response=_response(404), body=None)

    assert classify_error("anthropic", overloaded) is ErrorCategory.TRANSIENT
    assert classify_error("anthropic", rate_limited) is ErrorCategory.RATE_LIMITED
    assert classify_error("anthropic", not_found) is ErrorCategory.DETERMINISTIC


def test_gemini_errors() -> None:
    assert classify_error("gemini", _GeminiError("finishReason MALFORMED_FUNCTION_CALL")) is ErrorCategory.TRANSIENT
    assert classify_error("gemini", _GeminiError("empty response with finishReason STOP")) is ErrorCategory.AMBIGUOUS
    assert classify_error("gemini", _GeminiError("quota", status=429)) is ErrorCategory.RATE_LIMITED
    assert classify_error("gemini", _GeminiError("unavailable", status=503)) is ErrorCategory.TRANSIENT
    assert classify_error("gemini", _GeminiError("bad key", status=403)) is ErrorCategory.DETERMINISTIC


def test_vllm_errors() -> None:
    request = httpx.Request("POST", URL)
    unavailable = httpx.HTTPStatusError("503", request=request, response=_response(503))
    bad_request = httpx.HTTPStatusError("400", request=request, response=_response(400))

    assert classify_error("vllm", unavailable) is ErrorCategory.TRANSIENT
    assert classify_error("vllm", bad_request) is ErrorCategory.DETERMINISTIC
    assert classify_error("vllm", httpx.ConnectError("refused", request=request)) is ErrorCategory.TRANSIENT
    assert classify_error("vllm", httpx.ReadTimeout("slow", request=request)) is ErrorCategory.TRANSIENT
    assert classify_error("vllm", ValueError("odd")) is ErrorCategory.AMBIGUOUS


def test_unknown_provider_is_ambiguous() -> None:
    assert classify_error("mystery", RuntimeError("?")) is ErrorCategory.AMBIGUOUS


def test_errors_carrying_their_own_category_win() -> None:
    assert classify_error("openai", CategorizedError("fatal", ErrorCategory.DETERMINISTIC)) is ErrorCategory.DETERMINISTIC
    assert classify_error("vllm", MalformedToolCallError("vllm", "get_file", "bad json")) is ErrorCategory.TRANSIENT
    assert classify_error("anthropic", CircuitOpenError("anthropic")) is ErrorCategory.DETERMINISTIC
    assert classify_error("anthropic", RunCancelledError()) is ErrorCategory.DETERMINISTIC
    interrupted = StreamInterruptedError(RuntimeError("reset"), "partial")
    assert classify_error("anthropic", interrupted) is ErrorCategory.DETERMINISTIC


def test_extract_retry_after_variants() -> None:
    seconds = openai.RateLimitError("x", response=_response(429, {"retry-after": "7"}), body=None)
    millis = openai.RateLimitError("x", response=_response(429, {"retry-after-ms": "1500"}), body=None)
    huge = openai.RateLimitError("x", response=_response(429, {"retry-after": "9999"}), body=None)
    future = format_datetime(datetime.now(timezone.utc) + timedelta(seconds=60), usegmt=True)
    dated = openai.RateLimitError("x", response=_response(429, {"retry-after": future}), body=None)

    assert extract_retry_after(seconds) == 7.0
    assert extract_retry_after(millis) == 1.5
    assert extract_retry_after(huge) == 300.0
    assert 50.0 < (extract_retry_after(dated) or 0.0) <= 60.0
    assert extract_retry_after(RuntimeError("no headers")) is None


def test_create_classified_error_collects_details() -> None:
    error = anthropic.RateLimitError("slow down", response=_response(429, {"retry-after": "3"}), body=None)

    classified = create_classified_error("anthropic", error)

    assert classified.category is ErrorCategory.RATE_LIMITED
    assert classified.retryable is True
    assert classified.http_status == 429
    assert classified.retry_after == 3.0
    payload = classified.to_dict()
    assert payload["category"] == "rate-limited"
    assert payload["provider"] == "anthropic"


def test_user_messages_never_echo_provider_text() -> None:
    ctx = ErrorContext(model_name="claude-test", provider_name="anthropic", retry_after=7)

    assert get_user_error_message(ErrorCategory.RATE_LIMITED, ctx) == "claude-test is rate limited. Retrying in 7s..."
    assert (
        get_user_error_message(ErrorCategory.RATE_LIMITED, ErrorContext("claude-test", "anthropic"))
        == "claude-test is rate limited. Please wait and try again."
    )
    assert get_user_error_message(ErrorCategory.TRANSIENT, ctx) == "claude-test is temporarily unavailable. Retrying..."
    assert get_user_error_message(ErrorCategory.DETERMINISTIC, ctx) == "Request failed. Please try a different approach."
    auth_ctx = ErrorContext("claude-test", "anthropic", is_auth_error=True)
    assert get_user_error_message(ErrorCategory.DETERMINISTIC, auth_ctx) == (
        "anthropic API key is invalid. Check AI agent configuration in admin settings."
    )
    assert get_user_error_message(ErrorCategory.AMBIGUOUS, ctx) == "Something went wrong. Please try again."


def test_suggested_actions_and_auth_detection() -> None:
    assert get_suggested_action(ErrorCategory.RATE_LIMITED) == "retry"
    assert get_suggested_action(ErrorCategory.TRANSIENT) == "switch-model"
    assert get_suggested_action(ErrorCategory.DETERMINISTIC) is None
    assert get_suggested_action(ErrorCategory.DETERMINISTIC, auth_error=True) == "check-config"
    assert get_suggested_action(ErrorCategory.AMBIGUOUS) == "retry"

    auth = openai.AuthenticationError("nope", response=_response(401), body=None)
    assert is_auth_error(auth) is True
    assert is_auth_error(_GeminiError("forbidden", status=403)) is True
    assert is_auth_error(RuntimeError("other")) is False
    assert is_auth_error(None) is False

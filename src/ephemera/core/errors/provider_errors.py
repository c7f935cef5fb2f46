from __future__ import annotations

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Mapping

import anthropic
import httpx
import openai

from .classification import ClassifiedError, ErrorCategory

MAX_RETRY_AFTER_S = 300.0


class CategorizedError(RuntimeError):
    """Error that already knows its retry category; classification uses it as-is."""

    category: ErrorCategory = ErrorCategory.AMBIGUOUS

    def __init__(self, message: str, category: ErrorCategory | None = None, provider_name: str | None = None) -> None:
        super().__init__(message)
        if category is not None:
            self.category = category
        self.provider_name = provider_name


class MalformedToolCallError(CategorizedError):
    category = ErrorCategory.TRANSIENT

    def __init__(self, provider_name: str, tool_name: str, detail: str) -> None:
        super().__init__(
            f"{provider_name} returned malformed arguments for tool '{tool_name}': {detail}",
            provider_name=provider_name,
        )
        self.tool_name = tool_name


class StreamInterruptedError(CategorizedError):
    # The host has already seen part of the turn, so replaying it is not safe.
    category = ErrorCategory.DETERMINISTIC

    def __init__(self, original: BaseException, partial_text: str) -> None:
        super().__init__(str(original))
        self.original = original
        self.partial_text = partial_text


class RunCancelledError(CategorizedError):
    category = ErrorCategory.DETERMINISTIC

    def __init__(self, message: str = "Operation cancelled by user") -> None:
        super().__init__(message)


def _headers_of(error: BaseException) -> Mapping[str, str] | None:
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if headers is None:
        headers = getattr(error, "headers", None)
    return headers if isinstance(headers, Mapping) or hasattr(headers, "get") else None


def _parse_retry_after(raw: str) -> float | None:
    raw = raw.strip()
    if not raw:
        return None
    try:
        seconds = float(raw)
    except ValueError:
        try:
            when = parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        seconds = (when - datetime.now(timezone.utc)).total_seconds()
    return max(0.0, seconds)


def extract_retry_after(error: BaseException, cap_s: float = MAX_RETRY_AFTER_S) -> float | None:
    headers = _headers_of(error)
    if headers is None:
        return None
    raw_ms = headers.get("retry-after-ms")
    if raw_ms:
        try:
            return min(cap_s, max(0.0, float(raw_ms) / 1000.0))
        except ValueError:
            pass
    raw = headers.get("retry-after")
    if not raw:
        return None
    seconds = _parse_retry_after(str(raw))
    if seconds is None:
        return None
    return min(cap_s, seconds)


def extract_http_status(error: BaseException) -> int | None:
    for attr in ("status_code", "status", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def _status_category(status: int | None) -> ErrorCategory | None:
    if status is None:
        return None
    if status == 429:
        return ErrorCategory.RATE_LIMITED
    if status >= 500:
        return ErrorCategory.TRANSIENT
    if status in (408, 409):
        return ErrorCategory.TRANSIENT
    if 400 <= status < 500:
        return ErrorCategory.DETERMINISTIC
    return None


def _classify_sdk(module: Any, error: BaseException) -> ErrorCategory:
    if isinstance(error, module.RateLimitError):
        return ErrorCategory.RATE_LIMITED
    if isinstance(error, (module.InternalServerError, module.APIConnectionError, module.ConflictError)):
        return ErrorCategory.TRANSIENT
    if isinstance(
        error,
        (
            module.BadRequestError,
            module.AuthenticationError,
            module.PermissionDeniedError,
            module.NotFoundError,
            module.UnprocessableEntityError,
        ),
    ):
        return ErrorCategory.DETERMINISTIC
    if isinstance(error, module.APIStatusError) and error.status_code >= 500:
        return ErrorCategory.TRANSIENT
    return ErrorCategory.AMBIGUOUS


def classify_openai_error(error: BaseException) -> ErrorCategory:
    return _classify_sdk(openai, error)


def classify_anthropic_error(error: BaseException) -> ErrorCategory:
    return _classify_sdk(anthropic, error)


def classify_gemini_error(error: BaseException) -> ErrorCategory:
    message = str(error)
    if "MALFORMED_FUNCTION_CALL" in message:
        return ErrorCategory.TRANSIENT
    if "empty response" in message.lower() and "STOP" in message:
        return ErrorCategory.AMBIGUOUS
    status = extract_http_status(error)
    if status == 429:
        return ErrorCategory.RATE_LIMITED
    if status is not None and status >= 500:
        return ErrorCategory.TRANSIENT
    if status in (400, 401, 403):
        return ErrorCategory.DETERMINISTIC
    return ErrorCategory.AMBIGUOUS


def classify_vllm_error(error: BaseException) -> ErrorCategory:
    if isinstance(error, httpx.HTTPStatusError):
        return _status_category(error.response.status_code) or ErrorCategory.AMBIGUOUS
    if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return ErrorCategory.TRANSIENT
    return ErrorCategory.AMBIGUOUS


_CLASSIFIERS: dict[str, Callable[[BaseException], ErrorCategory]] = {
    "openai": classify_openai_error,
    "anthropic": classify_anthropic_error,
    "gemini": classify_gemini_error,
    "vllm": classify_vllm_error,
}


def classify_error(provider_name: str, error: BaseException) -> ErrorCategory:
    explicit = getattr(error, "category", None)
    if isinstance(explicit, ErrorCategory):
        return explicit
    classifier = _CLASSIFIERS.get(provider_name.casefold())
    if classifier is None:
        return ErrorCategory.AMBIGUOUS
    return classifier(error)


def create_classified_error(provider_name: str, error: BaseException) -> ClassifiedError:
    category = classify_error(provider_name, error)
    return ClassifiedError(
        category=category,
        original=error,
        provider_name=provider_name,
        http_status=extract_http_status(error),
        finish_reason=getattr(error, "finish_reason", None),
        retry_after=extract_retry_after(error),
    )

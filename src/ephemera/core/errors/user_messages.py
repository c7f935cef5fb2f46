from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from .classification import ErrorCategory

SuggestedAction = Literal["retry", "switch-model", "check-config"]

_AUTH_ERROR_NAMES = frozenset({"AuthenticationError", "PermissionDeniedError"})
_AUTH_STATUS_CODES = frozenset({401, 403})


@dataclass(frozen=True)
class ErrorContext:
    model_name: str
    provider_name: str
    retry_after: float | None = None
    is_auth_error: bool = False


def _format_seconds(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:.1f}"


def get_user_error_message(category: ErrorCategory, ctx: ErrorContext) -> str:
    if category is ErrorCategory.RATE_LIMITED:
        if ctx.retry_after:
            return f"{ctx.model_name} is rate limited. Retrying in {_format_seconds(ctx.retry_after)}s..."
        return f"{ctx.model_name} is rate limited. Please wait and try again."
    if category is ErrorCategory.TRANSIENT:
        return f"{ctx.model_name} is temporarily unavailable. Retrying..."
    if category is ErrorCategory.DETERMINISTIC:
        if ctx.is_auth_error:
            return f"{ctx.provider_name} API key is invalid. Check AI agent configuration in admin settings."
        return "Request failed. Please try a different approach."
    return "Something went wrong. Please try again."


def get_suggested_action(category: ErrorCategory, auth_error: bool = False) -> SuggestedAction | None:
    if category is ErrorCategory.RATE_LIMITED:
        return "retry"
    if category is ErrorCategory.TRANSIENT:
        return "switch-model"
    if category is ErrorCategory.DETERMINISTIC:
        return "check-config" if auth_error else None
    return "retry"


def is_auth_error(error: BaseException | None) -> bool:
    if error is None:
        return False
    if type(error).__name__ in _AUTH_ERROR_NAMES:
        return True
    for attr in ("status_code", "status"):
        if getattr(error, attr, None) in _AUTH_STATUS_CODES:
            return True
    response = getattr(error, "response", None)
    return getattr(response, "status_code", None) in _AUTH_STATUS_CODES

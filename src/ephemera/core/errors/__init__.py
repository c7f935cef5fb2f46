from .classification import ClassifiedError, ErrorCategory, is_rate_limit_error, is_retryable
from .provider_errors import (
    CategorizedError,
    MalformedToolCallError,
    RunCancelledError,
    StreamInterruptedError,
    classify_error,
    create_classified_error,
    extract_retry_after,
)
from .retry_budget import RetryBudget
from .user_messages import ErrorContext, get_suggested_action, get_user_error_message, is_auth_error

__all__ = [
    "CategorizedError",
    "ClassifiedError",
    "ErrorCategory",
    "ErrorContext",
    "MalformedToolCallError",
    "RetryBudget",
    "RunCancelledError",
    "StreamInterruptedError",
    "classify_error",
    "create_classified_error",
    "extract_retry_after",
    "get_suggested_action",
    "get_user_error_message",
    "is_auth_error",
    "is_rate_limit_error",
    "is_retryable",
]

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    TRANSIENT = "transient"
    RATE_LIMITED = "rate-limited"
    DETERMINISTIC = "deterministic"
    AMBIGUOUS = "ambiguous"


_RETRYABLE = frozenset({ErrorCategory.TRANSIENT, ErrorCategory.RATE_LIMITED, ErrorCategory.AMBIGUOUS})


def is_retryable(category: ErrorCategory) -> bool:
    return category in _RETRYABLE


def is_rate_limit_error(category: ErrorCategory) -> bool:
    return category is ErrorCategory.RATE_LIMITED


@dataclass(frozen=True)
class ClassifiedError:
    category: ErrorCategory
    original: BaseException
    provider_name: str
    http_status: int | None = None
    finish_reason: str | None = None
    retry_after: float | None = None

    @property
    def retryable(self) -> bool:
        return is_retryable(self.category)

    @property
    def message(self) -> str:
        return str(self.original)

    def to_dict(self) -> dict[str, object]:
        return {
            "category": self.category.value,
            "retryable": self.retryable,
            "provider": self.provider_name,
            "http_status": self.http_status,
            "finish_reason": self.finish_reason,
            "retry_after": self.retry_after,
            "message": self.message,
        }

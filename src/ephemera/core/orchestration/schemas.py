from __future__ import annotations

from dataclasses import asdict, dataclass, field

from ephemera.core.errors.classification import ClassifiedError


@dataclass(frozen=True)
class OrchestrationMetrics:
    iterations: int = 0
    tool_calls: int = 0
    duration_ms: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class OrchestrationResult:
    success: bool
    response: str | None = None
    error: str | None = None
    cancelled: bool = False
    classified_error: ClassifiedError | None = None
    metrics: OrchestrationMetrics = field(default_factory=OrchestrationMetrics)

    def to_dict(self) -> dict[str, object]:
        return {
            "success": self.success,
            "response": self.response,
            "error": self.error,
            "cancelled": self.cancelled,
            "classified_error": self.classified_error.to_dict() if self.classified_error else None,
            "metrics": asdict(self.metrics),
        }

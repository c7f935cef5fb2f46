from __future__ import annotations

import dataclasses
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Iterator, Optional


@dataclass(frozen=True)
class RunLogContext:
    """Identifies the agent run a log record belongs to."""

    run_id: Optional[str] = None
    build_uuid: Optional[str] = None
    correlation_id: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None

    def fields(self) -> dict[str, str]:
        return {key: value for key, value in dataclasses.asdict(self).items() if value is not None}


_current: ContextVar[RunLogContext] = ContextVar("ephemera_log_context", default=RunLogContext())


def current_log_context() -> RunLogContext:
    return _current.get()


@contextmanager
def log_context(
    run_id: str | None = None,
    build_uuid: str | None = None,
    correlation_id: str | None = None,
    provider: str | None = None,
    model: str | None = None,
) -> Iterator[RunLogContext]:
    """Layer run fields over the enclosing context for the duration of the block.

    ``None`` keeps whatever the outer block set, so the orchestrator can add the
    provider without losing the run id bound by the agent service.
    """
    updates = {
        key: value
        for key, value in (
            ("run_id", run_id),
            ("build_uuid", build_uuid),
            ("correlation_id", correlation_id),
            ("provider", provider),
            ("model", model),
        )
        if value is not None
    }
    token = _current.set(dataclasses.replace(_current.get(), **updates))
    try:
        yield _current.get()
    finally:
        _current.reset(token)

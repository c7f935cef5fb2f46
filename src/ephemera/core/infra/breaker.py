from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


Transition = tuple[CircuitState, CircuitState]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class CircuitBreaker:
    """Consecutive-failure breaker for one provider.

    closed -> open after ``failure_threshold`` handled failures in a row;
    open -> half_open once ``cooldown_s`` has elapsed; a half-open trial
    closes the circuit on success and reopens it on failure.
    """

    provider: str
    failure_threshold: int = 5
    cooldown_s: float = 30.0
    half_open_max_trials: int = 1
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: datetime | None = None
    last_failure: datetime | None = None
    last_error: str | None = None
    half_open_trials_used: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    def retry_at(self) -> datetime | None:
        if self.state is not CircuitState.OPEN or self.opened_at is None:
            return None
        return self.opened_at + timedelta(seconds=max(0.0, self.cooldown_s))

    def allow_request(self, now: datetime | None = None) -> tuple[bool, Transition | None]:
        current = now or _utc_now()
        with self._lock:
            transition: Transition | None = None
            if self.state is CircuitState.OPEN:
                reopen_at = self.retry_at()
                if reopen_at is None or current < reopen_at:
                    return False, None
                self.state = CircuitState.HALF_OPEN
                self.half_open_trials_used = 0
                transition = (CircuitState.OPEN, CircuitState.HALF_OPEN)

            if self.state is CircuitState.HALF_OPEN:
                if self.half_open_trials_used >= max(1, self.half_open_max_trials):
                    return False, transition
                self.half_open_trials_used += 1
            return True, transition

    def release_trial(self) -> None:
        with self._lock:
            if self.state is CircuitState.HALF_OPEN and self.half_open_trials_used > 0:
                self.half_open_trials_used -= 1

    def record_success(self) -> Transition | None:
        with self._lock:
            previous = self.state
            self.state = CircuitState.CLOSED
            self.consecutive_failures = 0
            self.opened_at = None
            self.last_error = None
            self.half_open_trials_used = 0
            return (previous, self.state) if previous is not self.state else None

    def record_failure(self, error: str, now: datetime | None = None) -> Transition | None:
        current = now or _utc_now()
        with self._lock:
            previous = self.state
            self.last_error = error
            self.last_failure = current
            self.consecutive_failures += 1

            tripped = previous is CircuitState.HALF_OPEN or self.consecutive_failures >= max(1, self.failure_threshold)
            if tripped:
                self.state = CircuitState.OPEN
                self.opened_at = current
                self.half_open_trials_used = 0
            return (previous, self.state) if previous is not self.state else None

    def to_dict(self) -> dict[str, object]:
        return {
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "opened_at_iso": _to_iso(self.opened_at),
            "retry_at_iso": _to_iso(self.retry_at()),
            "last_failure_iso": _to_iso(self.last_failure),
            "last_error": self.last_error,
        }

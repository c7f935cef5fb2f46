from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime
from typing import Awaitable, Callable, TypeVar

from ephemera.core.config.settings import ResilienceSettings
from ephemera.core.errors.classification import ErrorCategory
from ephemera.core.errors.provider_errors import CategorizedError, RunCancelledError, StreamInterruptedError

from .breaker import CircuitBreaker, CircuitState, Transition

T = TypeVar("T")


class CircuitOpenError(CategorizedError):
    category = ErrorCategory.DETERMINISTIC

    def __init__(self, provider: str, last_error: str | None = None) -> None:
        self.provider = provider
        self.last_error = last_error
        suffix = f": {last_error}" if last_error else ""
        super().__init__(f"circuit_open:{provider}{suffix}", provider_name=provider)


def _root_cause(error: BaseException) -> BaseException:
    if isinstance(error, StreamInterruptedError):
        return error.original
    return error


class BreakerManager:
    """Process-wide table of per-provider circuit breakers."""

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_s: float = 30.0,
        half_open_max_trials: int = 1,
        enabled: bool = True,
        clock: Callable[[], datetime] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.failure_threshold = max(1, failure_threshold)
        self.cooldown_s = cooldown_s
        self.half_open_max_trials = max(1, half_open_max_trials)
        self.enabled = enabled
        self.clock = clock
        self.logger = logger or logging.getLogger("ephemera.breaker")
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: ResilienceSettings,
        clock: Callable[[], datetime] | None = None,
        logger: logging.Logger | None = None,
    ) -> "BreakerManager":
        return cls(
            failure_threshold=settings.breaker_failure_threshold,
            cooldown_s=float(settings.breaker_open_seconds),
            half_open_max_trials=settings.breaker_half_open_max_trials,
            enabled=settings.breakers_enabled,
            clock=clock,
            logger=logger,
        )

    def get(self, provider: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(provider)
            if breaker is None:
                breaker = CircuitBreaker(
                    provider=provider,
                    failure_threshold=self.failure_threshold,
                    cooldown_s=self.cooldown_s,
                    half_open_max_trials=self.half_open_max_trials,
                )
                self._breakers[provider] = breaker
            return breaker

    def reset(self) -> None:
        with self._lock:
            self._breakers.clear()

    def snapshot(self) -> dict[str, dict[str, object]]:
        with self._lock:
            breakers = dict(self._breakers)
        return {name: breaker.to_dict() for name, breaker in breakers.items()}

    def _now(self) -> datetime | None:
        return self.clock() if self.clock is not None else None

    async def wrap(
        self,
        provider: str,
        fn: Callable[[], Awaitable[T]],
        should_handle: Callable[[BaseException], bool] | None = None,
    ) -> T:
        """Run ``fn`` behind the provider's breaker.

        Only failures accepted by ``should_handle`` count against the circuit;
        anything else is treated as a healthy response from the provider.
        """
        if not self.enabled:
            return await fn()

        breaker = self.get(provider)
        allowed, transition = breaker.allow_request(self._now())
        if transition is not None:
            self._record_transition(breaker, transition, "cooldown elapsed")
        if not allowed:
            self.logger.warning(
                "circuit_rejected",
                extra={"extra_fields": {"provider": provider, "state": breaker.state.value}},
            )
            raise CircuitOpenError(provider, breaker.last_error)

        try:
            result = await fn()
        except (asyncio.CancelledError, RunCancelledError):
            breaker.release_trial()
            raise
        except Exception as exc:
            cause = _root_cause(exc)
            if should_handle is None or should_handle(cause):
                transition = breaker.record_failure(str(cause), self._now())
                if transition is not None:
                    self._record_transition(breaker, transition, str(cause))
                else:
                    self.logger.debug(
                        "circuit_failure_recorded",
                        extra={
                            "extra_fields": {
                                "provider": provider,
                                "consecutive_failures": breaker.consecutive_failures,
                                "error": str(cause),
                            }
                        },
                    )
            else:
                transition = breaker.record_success()
                if transition is not None:
                    self._record_transition(breaker, transition, "unhandled error treated as healthy")
            raise

        transition = breaker.record_success()
        if transition is not None:
            self._record_transition(breaker, transition, "request succeeded")
        return result

    def _record_transition(self, breaker: CircuitBreaker, transition: Transition, reason: str) -> None:
        from_state, to_state = transition
        level = logging.ERROR if to_state is CircuitState.OPEN else logging.INFO
        self.logger.log(
            level,
            "circuit_transition",
            extra={
                "extra_fields": {
                    "provider": breaker.provider,
                    "from_state": from_state.value,
                    "to_state": to_state.value,
                    "reason": reason,
                    "consecutive_failures": breaker.consecutive_failures,
                }
            },
        )


_default_manager: BreakerManager | None = None
_default_lock = threading.Lock()


def get_breaker_manager() -> BreakerManager:
    global _default_manager
    with _default_lock:
        if _default_manager is None:
            _default_manager = BreakerManager()
        return _default_manager


def configure_breaker_manager(settings: ResilienceSettings) -> BreakerManager:
    global _default_manager
    with _default_lock:
        _default_manager = BreakerManager.from_settings(settings)
        return _default_manager


def get_provider_circuit_breaker(provider: str) -> CircuitBreaker:
    return get_breaker_manager().get(provider)


def reset_all_circuit_breakers() -> None:
    get_breaker_manager().reset()

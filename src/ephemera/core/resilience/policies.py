from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from ephemera.core.config.settings import ResilienceSettings
from ephemera.core.errors.classification import is_retryable
from ephemera.core.errors.provider_errors import classify_error, extract_retry_after
from ephemera.core.errors.retry_budget import RetryBudget
from ephemera.core.infra.breaker_manager import BreakerManager, get_breaker_manager

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


class RetryPolicy:
    """Retry around the provider's circuit breaker, bounded by a per-run budget.

    A failure is retried only when its category is retryable, the run's budget
    still has a unit left and this call has not reached its attempt cap. The
    wait between attempts is the provider's retry-after hint when it sends one.
    """

    def __init__(
        self,
        provider_name: str,
        budget: RetryBudget,
        breaker_manager: BreakerManager | None = None,
        max_attempts_per_call: int = 3,
        max_retry_after_s: float = 300.0,
        fallback_backoff_base_s: float = 0.0,
        fallback_backoff_max_s: float = 10.0,
        sleep: Sleep | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.provider_name = provider_name
        self.budget = budget
        self.breaker_manager = breaker_manager or get_breaker_manager()
        self.max_attempts_per_call = max(1, max_attempts_per_call)
        self.max_retry_after_s = max_retry_after_s
        self.fallback_backoff_base_s = fallback_backoff_base_s
        self.fallback_backoff_max_s = fallback_backoff_max_s
        self.sleep = sleep or asyncio.sleep
        self.logger = logger or logging.getLogger("ephemera.resilience")

    def should_handle(self, error: BaseException) -> bool:
        return is_retryable(classify_error(self.provider_name, error))

    def backoff_for(self, error: BaseException, attempt: int) -> float:
        retry_after = extract_retry_after(error, cap_s=self.max_retry_after_s)
        if retry_after is not None and retry_after > 0:
            return retry_after
        if self.fallback_backoff_base_s <= 0:
            return 0.0
        return min(self.fallback_backoff_max_s, self.fallback_backoff_base_s * (2 ** (attempt - 1)))

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.breaker_manager.wrap(self.provider_name, fn, should_handle=self.should_handle)
            except Exception as exc:
                if not self.should_handle(exc):
                    raise
                if attempt >= self.max_attempts_per_call or not self.budget.can_retry():
                    self.logger.warning(
                        "provider_retry_exhausted",
                        extra={
                            "extra_fields": {
                                "provider": self.provider_name,
                                "attempt": attempt,
                                "budget_remaining": self.budget.remaining,
                                "error": str(exc),
                            }
                        },
                    )
                    raise
                self.budget.consume()
                delay = self.backoff_for(exc, attempt)
                self.logger.warning(
                    "provider_retry",
                    extra={
                        "extra_fields": {
                            "provider": self.provider_name,
                            "attempt": attempt,
                            "delay_s": delay,
                            "budget_remaining": self.budget.remaining,
                            "error": str(exc),
                        }
                    },
                )
                if delay > 0:
                    await self.sleep(delay)


def create_provider_policy(
    provider_name: str,
    budget: RetryBudget,
    settings: ResilienceSettings | None = None,
    breaker_manager: BreakerManager | None = None,
    sleep: Sleep | None = None,
    logger: logging.Logger | None = None,
) -> RetryPolicy:
    settings = settings or ResilienceSettings()
    return RetryPolicy(
        provider_name,
        budget,
        breaker_manager=breaker_manager,
        max_attempts_per_call=settings.max_attempts_per_call,
        max_retry_after_s=float(settings.max_retry_after_s),
        fallback_backoff_base_s=settings.fallback_backoff_base_s,
        fallback_backoff_max_s=settings.fallback_backoff_max_s,
        sleep=sleep,
        logger=logger,
    )

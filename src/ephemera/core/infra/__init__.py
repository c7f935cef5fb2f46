from .breaker import CircuitBreaker, CircuitState
from .breaker_manager import (
    BreakerManager,
    CircuitOpenError,
    configure_breaker_manager,
    get_breaker_manager,
    get_provider_circuit_breaker,
    reset_all_circuit_breakers,
)

__all__ = [
    "BreakerManager",
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "configure_breaker_manager",
    "get_breaker_manager",
    "get_provider_circuit_breaker",
    "reset_all_circuit_breakers",
]

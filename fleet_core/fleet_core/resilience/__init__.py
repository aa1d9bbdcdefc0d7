"""Failure isolation for calls to external and tenant-scoped dependencies."""

from fleet_core.resilience.circuit_breaker import (
    BreakerEvent,
    BreakerOptions,
    CircuitBreakerRegistry,
    CircuitState,
    breaker_key,
    external_call,
    get_registry,
)

__all__ = [
    "BreakerEvent",
    "BreakerOptions",
    "CircuitBreakerRegistry",
    "CircuitState",
    "breaker_key",
    "external_call",
    "get_registry",
]

"""
Resilience patterns for payment provider calls.

Circuit breakers prevent cascade failures when providers fail.
"""

from billing_core.resilience.circuit_breakers import (
    ProviderCallPolicy,
    ProviderCircuitOpenError,
    ProviderTimeoutError,
    get_provider_breaker,
    reset_all_breakers,
)

__all__ = [
    "ProviderCallPolicy",
    "ProviderCircuitOpenError",
    "ProviderTimeoutError",
    "get_provider_breaker",
    "reset_all_breakers",
]

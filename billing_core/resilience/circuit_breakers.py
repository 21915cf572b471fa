"""
Circuit breakers and call policy for payment provider APIs.

Prevents cascade failures when Stripe or Flutterwave experience outages.

Circuit breaker states:
- CLOSED: Normal operation, requests pass through
- OPEN: Failure threshold exceeded, requests fail immediately
- HALF_OPEN: Testing if service recovered, limited requests allowed

Every outbound provider call goes through ProviderCallPolicy:
- per-call timeout (provider SDKs are synchronous and run in a worker thread)
- optional retry with exponential backoff (off unless max_attempts > 1)
- one circuit breaker per provider
"""

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

from pybreaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerListener
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from billing_core.config import ProviderPolicyConfig
from billing_core.observability.metrics import track_provider_call

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProviderCircuitOpenError(Exception):
    """Circuit breaker open for a payment provider."""

    pass


class ProviderTimeoutError(Exception):
    """Provider call exceeded the configured timeout."""

    pass


def _on_circuit_open(breaker: CircuitBreaker) -> None:
    logger.error(
        f"Circuit breaker OPENED: {breaker.name}",
        extra={
            "breaker_name": breaker.name,
            "fail_count": breaker.fail_counter,
            "fail_max": breaker.fail_max,
            "state": "OPEN",
        },
    )


def _on_circuit_close(breaker: CircuitBreaker) -> None:
    logger.info(
        f"Circuit breaker CLOSED: {breaker.name} (service recovered)",
        extra={"breaker_name": breaker.name, "state": "CLOSED"},
    )


def _on_circuit_half_open(breaker: CircuitBreaker) -> None:
    logger.warning(
        f"Circuit breaker HALF-OPEN: {breaker.name} (testing recovery)",
        extra={"breaker_name": breaker.name, "state": "HALF_OPEN"},
    )


class _StateListener(CircuitBreakerListener):
    """Routes breaker state changes to the callbacks above."""

    def state_change(self, cb, old_state, new_state):
        name = new_state.name if new_state is not None else ""
        if name == "open":
            _on_circuit_open(cb)
        elif name == "closed":
            _on_circuit_close(cb)
        elif name == "half-open":
            _on_circuit_half_open(cb)


# One breaker per provider name, created on first use
_breakers: dict[str, CircuitBreaker] = {}


def get_provider_breaker(
    provider: str,
    policy: ProviderPolicyConfig,
    exclude: tuple[type[Exception], ...] = (),
) -> CircuitBreaker:
    """
    Get the circuit breaker for a payment provider.

    Args:
        provider: Provider name (stripe, flutterwave)
        policy: Breaker thresholds
        exclude: Exception types that do not count as provider failures
            (card declines, invalid requests)

    Returns:
        CircuitBreaker: Shared breaker for this provider
    """
    breaker = _breakers.get(provider)
    if breaker is None:
        breaker = CircuitBreaker(
            fail_max=policy.breaker_fail_max,
            reset_timeout=policy.breaker_reset_seconds,
            exclude=list(exclude),
            name=provider,
            listeners=[_StateListener()],
        )
        _breakers[provider] = breaker
    return breaker


def reset_all_breakers() -> None:
    """
    Reset all circuit breakers to CLOSED state.

    Use for testing or manual recovery. Breakers are rebuilt from the current
    policy on next use.
    """
    for breaker in _breakers.values():
        breaker.close()
    _breakers.clear()
    logger.info("All circuit breakers reset to CLOSED state")


class ProviderCallPolicy:
    """
    Timeout, retry and circuit breaker wrapper for one provider.

    Usage:
        policy = ProviderCallPolicy("stripe", settings.provider_policy)
        customer = await policy.call(
            "create_customer", stripe.Customer.create, email=email
        )
    """

    def __init__(
        self,
        provider: str,
        config: ProviderPolicyConfig,
        retry_on: tuple[type[Exception], ...] = (),
        exclude: tuple[type[Exception], ...] = (),
    ):
        """
        Args:
            provider: Provider name, used for breaker and metric labels
            config: Timeout/retry/breaker settings
            retry_on: Transient exception types worth retrying (timeouts always are)
            exclude: Client-side exception types the breaker ignores
        """
        self.provider = provider
        self.config = config
        self.retry_on = retry_on + (ProviderTimeoutError,)
        self.breaker = get_provider_breaker(provider, config, exclude)

    async def call(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Run a synchronous provider call under the policy.

        Raises:
            ProviderCircuitOpenError: If the provider's circuit is open
            ProviderTimeoutError: If every attempt timed out
            Exception: Whatever the provider call raised on the last attempt
        """
        start = time.perf_counter()
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.max_attempts),
                wait=wait_exponential(
                    multiplier=1,
                    min=self.config.retry_min_wait_seconds,
                    max=self.config.retry_max_wait_seconds,
                ),
                retry=retry_if_exception_type(self.retry_on),
                reraise=True,
            ):
                with attempt:
                    result = await self._call_once(operation, func, *args, **kwargs)
        except Exception:
            track_provider_call(
                self.provider, operation, success=False, duration_seconds=time.perf_counter() - start
            )
            raise

        track_provider_call(
            self.provider, operation, success=True, duration_seconds=time.perf_counter() - start
        )
        return result

    async def _call_once(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.breaker.call, func, *args, **kwargs),
                timeout=self.config.timeout_seconds,
            )
        except CircuitBreakerError as e:
            logger.warning(
                f"{self.provider} circuit breaker OPEN - failing fast",
                extra={"provider": self.provider, "operation": operation},
            )
            raise ProviderCircuitOpenError(
                f"{self.provider} unavailable (circuit breaker open). "
                f"Retry after {self.config.breaker_reset_seconds} seconds."
            ) from e
        except asyncio.TimeoutError as e:
            logger.warning(
                f"{self.provider} call timed out",
                extra={
                    "provider": self.provider,
                    "operation": operation,
                    "timeout_seconds": self.config.timeout_seconds,
                },
            )
            raise ProviderTimeoutError(
                f"{self.provider} {operation} timed out after {self.config.timeout_seconds}s"
            ) from e

"""
Payment provider adapter interface.

Every provider (Stripe, Flutterwave) implements the same six operations and
reports outcomes as ProviderResult values. Adapters never raise past this
boundary: SDK errors, HTTP errors, timeouts and open circuits are all turned
into failed results, so the billing service only has one error path to handle.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

from billing_core.errors import ErrorKind
from billing_core.models.billing import (
    CheckoutSession,
    ProviderResult,
    ProviderSubscription,
    ProviderType,
    WebhookEvent,
)
from billing_core.resilience.circuit_breakers import (
    ProviderCallPolicy,
    ProviderCircuitOpenError,
    ProviderTimeoutError,
)

logger = logging.getLogger(__name__)


class PaymentProvider(ABC):
    """
    Abstract payment provider adapter.

    Subclasses set ``type`` and ``name`` and implement every operation.
    """

    type: ProviderType
    name: str

    def __init__(self, policy: ProviderCallPolicy):
        self.policy = policy

    @abstractmethod
    async def create_customer(
        self, email: str, name: str | None, organization_id: str
    ) -> ProviderResult[str]:
        """
        Create the provider-side customer.

        Returns:
            ProviderResult[str]: Provider-native customer id
        """

    @abstractmethod
    async def create_subscription(
        self,
        customer_id: str,
        plan_id: str,
        payment_method_id: str | None = None,
        trial_days: int = 0,
    ) -> ProviderResult[ProviderSubscription]:
        """
        Subscribe a provider customer to a provider plan/price.

        Args:
            customer_id: Provider-native customer id
            plan_id: Provider-native price/plan id
            payment_method_id: Default payment method (if the provider supports it)
            trial_days: Trial length, 0 for none
        """

    @abstractmethod
    async def create_checkout_session(
        self,
        customer_id: str,
        plan_id: str,
        success_url: str,
        cancel_url: str,
        trial_days: int = 0,
        metadata: dict[str, str] | None = None,
        customer_email: str | None = None,
    ) -> ProviderResult[CheckoutSession]:
        """Create a hosted checkout page for the plan."""

    @abstractmethod
    async def cancel_subscription(
        self, provider_id: str, immediately: bool = False
    ) -> ProviderResult[ProviderSubscription]:
        """
        Cancel now, or flag the subscription to cancel at period end.

        Only ``status`` and ``cancel_at_period_end`` of the result are relied upon.
        """

    @abstractmethod
    async def resume_subscription(self, provider_id: str) -> ProviderResult[ProviderSubscription]:
        """Undo a scheduled cancellation."""

    @abstractmethod
    async def construct_webhook_event(
        self, payload: bytes | str, signature: str | None
    ) -> ProviderResult[WebhookEvent]:
        """
        Verify the signature and parse the webhook body.

        A signature mismatch fails with ErrorKind.AUTHENTICATION, an unparsable
        body with ErrorKind.VALIDATION.
        """

    def close(self) -> None:
        """Release client resources (no-op for SDK-backed adapters)."""

    # ------------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------------

    async def _call(self, operation: str, func, *args: Any, **kwargs: Any) -> Any:
        """Run a synchronous SDK/HTTP call through the timeout/retry/breaker policy."""
        return await self.policy.call(operation, func, *args, **kwargs)

    def _failure(self, operation: str, error: Exception) -> ProviderResult:
        """Convert an exception raised during ``operation`` into a failed result."""
        if isinstance(error, ProviderCircuitOpenError):
            message, code = str(error), "circuit_open"
        elif isinstance(error, ProviderTimeoutError):
            message, code = str(error), "timeout"
        else:
            message, code = self._describe_error(error)

        logger.error(
            f"{self.name} {operation} failed",
            extra={"provider": self.type.value, "operation": operation, "error": message, "code": code},
        )
        return ProviderResult.failure(message, kind=ErrorKind.UPSTREAM, code=code)

    def _describe_error(self, error: Exception) -> tuple[str, str | None]:
        """Provider-specific (message, code) for an exception."""
        return str(error) or error.__class__.__name__, None

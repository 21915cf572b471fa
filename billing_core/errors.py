"""
Billing error taxonomy.

Every error raised across the service boundary carries an ErrorKind so the HTTP
layer (and any other caller) can decide how to respond without string matching.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Category of a billing failure."""

    CONFIGURATION = "configuration"
    NOT_FOUND = "not_found"
    PRECONDITION = "precondition"
    CONFLICT = "conflict"
    UPSTREAM = "upstream"
    AUTHENTICATION = "authentication"
    VALIDATION = "validation"


class BillingError(Exception):
    """Base exception for billing errors."""

    kind: ErrorKind = ErrorKind.PRECONDITION

    def __init__(self, message: str, kind: ErrorKind | None = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind


class ProviderNotConfiguredError(BillingError):
    """Requested payment provider was never registered."""

    kind = ErrorKind.CONFIGURATION

    def __init__(self, provider: str):
        super().__init__(f"Payment provider {provider} not configured")
        self.provider = provider


class PlanNotConfiguredError(BillingError):
    """Plan has no price identifier for the requested provider."""

    kind = ErrorKind.CONFIGURATION


class NotFoundError(BillingError):
    """Organization, plan or subscription does not exist."""

    kind = ErrorKind.NOT_FOUND


class CustomerNotLinkedError(BillingError):
    """Customer has no provider-side record for the requested provider."""

    kind = ErrorKind.PRECONDITION


class ConflictError(BillingError):
    """Operation is not valid for the subscription's current state."""

    kind = ErrorKind.CONFLICT


class ValidationError(BillingError):
    """Caller supplied an invalid argument."""

    kind = ErrorKind.VALIDATION


class UpstreamProviderError(BillingError):
    """Payment provider rejected the request or could not be reached."""

    kind = ErrorKind.UPSTREAM

    def __init__(self, provider: str, message: str, code: str | None = None):
        super().__init__(message)
        self.provider = provider
        self.code = code


class WebhookAuthenticationError(BillingError):
    """Webhook signature is missing or does not match."""

    kind = ErrorKind.AUTHENTICATION


class WebhookPayloadError(BillingError):
    """Webhook body could not be parsed."""

    kind = ErrorKind.VALIDATION

"""
Structured logging with JSON output for production observability.

Features:
- JSON output for log aggregation (ELK, Loki, CloudWatch)
- Request context propagation (organization_id, request_id, trace_id)
- Redaction of provider secrets, webhook signatures and email addresses

Architecture:
- structlog for structured logging
- Context variables for request-scoped data
- Processors for formatting and enrichment
- Multiple output formats (JSON for prod, console for dev)
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar

import structlog
from structlog.types import EventDict, Processor

# Context variables for request-scoped data
# These propagate across async boundaries automatically
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
organization_id_var: ContextVar[str | None] = ContextVar("organization_id", default=None)
trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)


# ============================================================================
# CUSTOM PROCESSORS
# ============================================================================


def add_request_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add request context to log events.

    Injects:
    - request_id: Unique ID for each HTTP request or webhook delivery
    - organization_id: Organization the request acts on (if known)
    - trace_id: Distributed tracing ID (for multi-service correlation)
    """
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id

    organization_id = organization_id_var.get()
    if organization_id:
        event_dict["organization_id"] = organization_id

    trace_id = trace_id_var.get()
    if trace_id:
        event_dict["trace_id"] = trace_id

    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add ISO 8601 timestamp with microsecond precision.

    Format: 2025-01-15T10:30:45.123456Z
    """
    event_dict["timestamp"] = (
        time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime())
        + f".{int((time.time() % 1) * 1000000):06d}Z"
    )
    return event_dict


def add_service_metadata(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add service metadata for log aggregation.

    Configured via LOGGING_SERVICE_NAME, LOGGING_SERVICE_VERSION and
    LOGGING_ENVIRONMENT.
    """
    # Import here to avoid circular dependency
    from billing_core.config import get_settings

    settings = get_settings()
    event_dict["service"] = settings.logging.service_name
    event_dict["version"] = settings.logging.service_version
    event_dict["environment"] = settings.logging.environment
    return event_dict


SENSITIVE_FIELDS = {
    "api_key",
    "secret_key",
    "webhook_secret",
    "password",
    "authorization",
    "signature",
    "stripe_signature",
    "verif_hash",
    "card_number",
    "secret",
    "token",
}


def redact_sensitive_fields(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Redact sensitive fields to prevent PII/credential leakage.

    Redacted fields:
    - provider keys, webhook secrets and signatures: first 8 chars kept
    - email: replaced with domain-only (user@example.com → ***@example.com)
    """
    for key in list(event_dict.keys()):
        if key.lower() in SENSITIVE_FIELDS:
            value = event_dict[key]
            if isinstance(value, str):
                if len(value) > 12:
                    event_dict[key] = f"{value[:8]}***"
                else:
                    event_dict[key] = "***REDACTED***"

        if key.lower() == "email" and isinstance(event_dict[key], str):
            email = event_dict[key]
            if "@" in email:
                domain = email.split("@")[1]
                event_dict[key] = f"***@{domain}"

    return event_dict


def add_exception_info(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add exception_type and exception_message for error grouping."""
    exc_info = event_dict.get("exc_info")
    if exc_info and isinstance(exc_info, tuple) and len(exc_info) == 3:
        exc_type, exc_value, _ = exc_info
        event_dict["exception_type"] = exc_type.__name__ if exc_type else "Unknown"
        event_dict["exception_message"] = str(exc_value) if exc_value else ""

    return event_dict


# ============================================================================
# LOGGER CONFIGURATION
# ============================================================================


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    colorized: bool = False,
) -> None:
    """
    Configure structured logging for production.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Use JSON output (True for production, False for development)
        colorized: Colorize console output (only for development)

    JSON output:
        {
          "timestamp": "2025-01-15T10:30:45.123456Z",
          "level": "info",
          "event": "Webhook event processed",
          "service": "billing-core",
          "request_id": "req_abc123",
          "organization_id": "org_123",
          "provider": "stripe",
          "event_type": "payment_failed"
        }
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_context,
        add_service_metadata,
        redact_sensitive_fields,
        add_timestamp,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        add_exception_info,
    ]

    if json_output:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=colorized),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("Checkout session created", plan="pro", provider="stripe")
    """
    return structlog.get_logger(name)


# ============================================================================
# CONTEXT MANAGERS
# ============================================================================


class RequestContext:
    """
    Context manager for request-scoped logging.

    Generates request_id/trace_id when absent and propagates organization_id.

    Usage:
        with RequestContext(organization_id=org_id):
            logger.info("Processing request")  # request_id auto-injected
    """

    def __init__(
        self,
        organization_id: str | None = None,
        trace_id: str | None = None,
        request_id: str | None = None,
    ):
        self.request_id = request_id or f"req_{uuid.uuid4().hex[:16]}"
        self.organization_id = organization_id
        self.trace_id = trace_id or f"trace_{uuid.uuid4().hex[:16]}"

        self._request_id_token = None
        self._organization_id_token = None
        self._trace_id_token = None

    def __enter__(self):
        self._request_id_token = request_id_var.set(self.request_id)
        # Always set organization_id (even if None) so it is reset on exit
        self._organization_id_token = organization_id_var.set(self.organization_id)
        self._trace_id_token = trace_id_var.set(self.trace_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._request_id_token is not None:
            request_id_var.reset(self._request_id_token)
        if self._organization_id_token is not None:
            organization_id_var.reset(self._organization_id_token)
        if self._trace_id_token is not None:
            trace_id_var.reset(self._trace_id_token)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def set_organization_id(organization_id: str) -> None:
    """Set organization ID for current context."""
    organization_id_var.set(organization_id)


def get_request_id() -> str | None:
    """Get request ID from current context."""
    return request_id_var.get()


def get_organization_id() -> str | None:
    """Get organization ID from current context."""
    return organization_id_var.get()

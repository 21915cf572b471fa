"""
Prometheus metrics for billing observability.

Metrics tracked:
- Webhook deliveries (counter) by provider, event type and outcome
- Provider API calls (counter + latency histogram) by provider and operation
- Subscription state transitions (counter)
- Dunning notifications (counter) by template
- Plan violations detected (counter) by type
- HTTP request latency (histogram) per endpoint

Integration:
- Exposed via /metrics endpoint (Prometheus scraping)
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)

# ============================================================================
# REQUEST METRICS
# ============================================================================

http_request_duration_seconds = Histogram(
    "billing_http_request_duration_seconds",
    "HTTP request latency in seconds",
    labelnames=["method", "endpoint", "status_code"],
    buckets=(0.005, 0.010, 0.025, 0.050, 0.100, 0.250, 0.500, 1.0, 2.5, 5.0, 10.0),
)

http_requests_total = Counter(
    "billing_http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status_code"],
)

# ============================================================================
# PROVIDER METRICS
# ============================================================================

# Provider calls cross the network; buckets extend to the default 20s timeout
provider_call_duration_seconds = Histogram(
    "billing_provider_call_duration_seconds",
    "Payment provider API call latency in seconds",
    labelnames=["provider", "operation"],
    buckets=(0.050, 0.100, 0.250, 0.500, 1.0, 2.5, 5.0, 10.0, 20.0),
)

provider_calls_total = Counter(
    "billing_provider_calls_total",
    "Total payment provider API calls",
    labelnames=["provider", "operation", "outcome"],
)

# ============================================================================
# LIFECYCLE METRICS
# ============================================================================

webhook_events_total = Counter(
    "billing_webhook_events_total",
    "Webhook deliveries by outcome (processed, ignored, duplicate, not_found, rejected)",
    labelnames=["provider", "event_type", "outcome"],
)

subscription_transitions_total = Counter(
    "billing_subscription_transitions_total",
    "Subscription status transitions",
    labelnames=["from_status", "to_status"],
)

dunning_notifications_total = Counter(
    "billing_dunning_notifications_total",
    "Payment-failed notifications sent",
    labelnames=["template"],
)

plan_violations_total = Counter(
    "billing_plan_violations_total",
    "Plan limit violations detected on downgrade",
    labelnames=["violation_type"],
)


def track_request(method: str, endpoint: str, status_code: int, duration_seconds: float) -> None:
    """Record one HTTP request."""
    labels = {"method": method, "endpoint": endpoint, "status_code": str(status_code)}
    http_request_duration_seconds.labels(**labels).observe(duration_seconds)
    http_requests_total.labels(**labels).inc()


def track_provider_call(
    provider: str,
    operation: str,
    success: bool,
    duration_seconds: float,
) -> None:
    """
    Record a payment provider API call.

    Args:
        provider: Provider name (stripe, flutterwave)
        operation: Adapter operation (create_customer, cancel_subscription, ...)
        success: Whether the call returned without raising
        duration_seconds: Wall time including retries
    """
    provider_call_duration_seconds.labels(provider=provider, operation=operation).observe(
        duration_seconds
    )
    provider_calls_total.labels(
        provider=provider,
        operation=operation,
        outcome="success" if success else "error",
    ).inc()


def track_webhook_event(provider: str, event_type: str, outcome: str) -> None:
    webhook_events_total.labels(provider=provider, event_type=event_type, outcome=outcome).inc()


def track_subscription_transition(from_status: str, to_status: str) -> None:
    if from_status != to_status:
        subscription_transitions_total.labels(from_status=from_status, to_status=to_status).inc()


def track_dunning_notification(template: str) -> None:
    dunning_notifications_total.labels(template=template).inc()


def track_plan_violation(violation_type: str) -> None:
    plan_violations_total.labels(violation_type=violation_type).inc()


# ============================================================================
# METRICS ENDPOINT
# ============================================================================


def generate_metrics() -> tuple[bytes, str]:
    """
    Generate Prometheus metrics in exposition format (bytes).

    Returns:
        tuple: (metrics_bytes, content_type)
    """
    metrics_data = generate_latest(REGISTRY)
    return metrics_data, CONTENT_TYPE_LATEST

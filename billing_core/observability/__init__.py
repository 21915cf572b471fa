"""
Observability infrastructure for production monitoring.

Components:
- metrics.py: Prometheus metrics (counters, histograms)
- logging.py: Structured JSON logging with request context
- middleware.py: Request logging and metrics middleware
"""

from billing_core.observability.metrics import (
    track_dunning_notification,
    track_provider_call,
    track_request,
    track_subscription_transition,
    track_webhook_event,
)

__all__ = [
    "track_dunning_notification",
    "track_provider_call",
    "track_request",
    "track_subscription_transition",
    "track_webhook_event",
]

"""
Billing Core - provider-agnostic subscription billing for SaaS organizations.

Key Features:
- Stripe and Flutterwave behind one payment provider interface
- Subscription lifecycle with a guarded state machine
- Idempotent, signature-verified provider webhooks
- Dunning with grace periods and escalating payment-failed notices
- Plan-limit violation detection on downgrade
"""

__version__ = "0.1.0"

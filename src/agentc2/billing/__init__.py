"""Billing: Stripe subscription webhooks."""

from agentc2.billing.stripe_webhooks import (
    StripeEvent,
    StripeWebhookHandler,
    compute_period_dates,
)

__all__ = ["StripeEvent", "StripeWebhookHandler", "compute_period_dates"]

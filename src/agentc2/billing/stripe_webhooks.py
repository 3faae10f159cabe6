"""Stripe webhook handling that keeps organization subscriptions in sync.

Uses raw HTTP requests to avoid requiring the stripe SDK.
"""

from __future__ import annotations

import calendar
import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any

import httpx
from pydantic import BaseModel

from agentc2.config import StripeConfig
from agentc2.events import Event, EventBus, EventType, PriorityLevel
from agentc2.models.records import OrgSubscription, SubscriptionStatus, utcnow
from agentc2.storage.json_store import Database

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300

# Stripe subscription status -> stored status
STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.TRIALING,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "paused": SubscriptionStatus.PAUSED,
}


class StripeEvent(BaseModel):
    """Parsed Stripe webhook event."""

    id: str
    type: str
    data: dict[str, Any]
    created: int = 0


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _from_ts(value: int | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _object_id(value: Any) -> str | None:
    """Stripe expands some references into objects; accept either form."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def compute_period_dates(
    subscription: dict[str, Any], now: datetime | None = None
) -> tuple[datetime, datetime]:
    """Current billing period of a Stripe subscription.

    Newer Stripe API versions dropped ``current_period_start``/``_end``, so
    the period is derived from the billing anchor: the end is advanced a
    month at a time until it lies after ``now``.

    Returns:
        ``(period_start, period_end)`` in UTC
    """
    now = now or utcnow()
    start_date = subscription.get("start_date") or 0
    base_ts = subscription.get("billing_cycle_anchor") or start_date

    end = _from_ts(base_ts) or now
    while end <= now:
        end = _add_months(end, 1)

    start = _from_ts(max(start_date, base_ts)) or now
    return start, end


class StripeWebhookHandler:
    """Verifies and applies Stripe webhook events.

    Args:
        config: Stripe keys
        db: Storage holding ``OrgSubscription`` records
        http: Client for Stripe REST calls (one is created if omitted)
        bus: Receives ``SUBSCRIPTION_UPDATED`` events
    """

    def __init__(
        self,
        config: StripeConfig,
        db: Database,
        http: httpx.AsyncClient | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self.config = config
        self.db = db
        self.http = http
        self.bus = bus
        self._handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.created": self._handle_subscription_upsert,
            "customer.subscription.updated": self._handle_subscription_upsert,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_succeeded": self._handle_payment_succeeded,
            "invoice.payment_failed": self._handle_payment_failed,
        }

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def verify_signature(self, payload: bytes, signature: str, now: float | None = None) -> bool:
        """Verify a ``Stripe-Signature`` header (``t=...,v1=...``)."""
        try:
            elements = dict(item.strip().split("=", 1) for item in signature.split(","))
        except ValueError:
            return False

        timestamp = elements.get("t", "")
        expected_sig = elements.get("v1", "")
        if not timestamp or not expected_sig:
            return False

        try:
            sent_at = int(timestamp)
        except ValueError:
            return False
        current = now if now is not None else time.time()
        if abs(current - sent_at) > SIGNATURE_TOLERANCE_SECONDS:
            logger.warning("Stripe webhook timestamp too old")
            return False

        signed_payload = timestamp.encode("utf-8") + b"." + payload
        computed_sig = hmac.new(
            self.config.webhook_secret.encode("utf-8"),
            signed_payload,
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(computed_sig, expected_sig)

    @staticmethod
    def parse_event(payload: bytes) -> StripeEvent | None:
        try:
            data = json.loads(payload)
            return StripeEvent(
                id=data["id"],
                type=data["type"],
                data=data.get("data", {}).get("object", {}),
                created=data.get("created", 0),
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.error("Failed to parse Stripe event: %s", e)
            return None

    async def handle(
        self, payload: bytes, signature: str | None
    ) -> tuple[int, dict[str, Any]]:
        """Process one webhook delivery.

        Returns:
            ``(http_status, body)``
        """
        if not self.enabled:
            return 503, {"error": "Stripe not configured"}
        if not signature:
            return 400, {"error": "Missing stripe-signature"}
        if not self.verify_signature(payload, signature):
            return 400, {"error": "Invalid signature"}

        event = self.parse_event(payload)
        if event is None:
            return 400, {"error": "Invalid payload"}

        logger.info("Received Stripe event %s (%s)", event.type, event.id)
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.debug("Unhandled Stripe event: %s", event.type)
            return 200, {"received": True}

        try:
            subscription = await handler(event.data)
        except Exception as e:
            logger.error("Error handling Stripe %s: %s", event.type, e, exc_info=True)
            return 500, {"error": str(e) or "Handler failed"}

        if subscription is not None:
            await self._publish(event.type, subscription)
        return 200, {"received": True}

    async def fetch_subscription(self, subscription_id: str) -> dict[str, Any]:
        client = self.http or httpx.AsyncClient()
        try:
            response = await client.get(
                f"{self.config.api_base}/subscriptions/{subscription_id}",
                auth=(self.config.secret_key, ""),
            )
            response.raise_for_status()
            return response.json()
        finally:
            if self.http is None:
                await client.aclose()

    async def _handle_checkout_completed(self, session: dict[str, Any]) -> OrgSubscription | None:
        metadata = session.get("metadata") or {}
        org_id = metadata.get("organizationId")
        plan_id = metadata.get("planId")
        billing_cycle = metadata.get("billingCycle") or "monthly"

        if not org_id or not plan_id:
            logger.error("Checkout session missing metadata: %s", metadata)
            return None

        stripe_sub_id = _object_id(session.get("subscription"))
        if not stripe_sub_id:
            logger.error("No subscription id in checkout session %s", session.get("id"))
            return None

        stripe_sub = await self.fetch_subscription(stripe_sub_id)
        period_start, period_end = compute_period_dates(stripe_sub)

        subscription = self.db.subscriptions.get(org_id) or OrgSubscription(id=org_id)
        subscription.plan_id = plan_id
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.billing_cycle = billing_cycle
        subscription.stripe_subscription_id = stripe_sub_id
        subscription.stripe_customer_id = _object_id(session.get("customer"))
        subscription.credits_used = 0
        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        self.db.subscriptions.save(subscription)

        logger.info("Subscription created for org %s: %s (%s)", org_id, plan_id, billing_cycle)
        return subscription

    async def _handle_subscription_upsert(self, sub: dict[str, Any]) -> OrgSubscription | None:
        metadata = sub.get("metadata") or {}
        org_id = metadata.get("organizationId")
        if not org_id:
            logger.warning("Subscription %s missing organizationId metadata", sub.get("id"))
            return None

        plan_id = metadata.get("planId")
        raw_status = sub.get("status", "")
        status = STATUS_MAP.get(raw_status)
        if status is None:
            logger.warning("Unknown Stripe subscription status %r", raw_status)
            status = SubscriptionStatus.INCOMPLETE
        period_start, period_end = compute_period_dates(sub)

        subscription = self.db.subscriptions.get(org_id)
        if subscription is None:
            if not plan_id:
                return None
            subscription = OrgSubscription(
                id=org_id,
                billing_cycle=metadata.get("billingCycle") or "monthly",
                stripe_customer_id=_object_id(sub.get("customer")),
            )

        subscription.status = status
        subscription.stripe_subscription_id = sub.get("id")
        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        subscription.canceled_at = _from_ts(sub.get("canceled_at"))
        if plan_id:
            subscription.plan_id = plan_id
        self.db.subscriptions.save(subscription)

        logger.info("Subscription %s synced for org %s: %s", sub.get("id"), org_id, status.value)
        return subscription

    async def _handle_subscription_deleted(self, sub: dict[str, Any]) -> OrgSubscription | None:
        org_id = (sub.get("metadata") or {}).get("organizationId")
        if not org_id:
            return None
        subscription = self.db.subscriptions.get(org_id)
        if subscription is None or subscription.stripe_subscription_id != sub.get("id"):
            return None

        subscription.status = SubscriptionStatus.CANCELED
        subscription.canceled_at = utcnow()
        self.db.subscriptions.save(subscription)
        logger.info("Subscription canceled for org %s", org_id)
        return subscription

    def _find_by_customer(self, invoice: dict[str, Any]) -> OrgSubscription | None:
        customer_id = _object_id(invoice.get("customer"))
        if not customer_id:
            return None
        return self.db.subscriptions.find_one(stripe_customer_id=customer_id)

    async def _handle_payment_succeeded(self, invoice: dict[str, Any]) -> OrgSubscription | None:
        # Only renewals start a new credit period
        if invoice.get("billing_reason") != "subscription_cycle":
            return None
        subscription = self._find_by_customer(invoice)
        if subscription is None:
            return None

        now = utcnow()
        months = 12 if subscription.billing_cycle == "annual" else 1
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.credits_used = 0
        subscription.current_period_start = now
        subscription.current_period_end = _add_months(now, months)
        self.db.subscriptions.save(subscription)
        logger.info("Credits reset for org %s: new billing period", subscription.id)
        return subscription

    async def _handle_payment_failed(self, invoice: dict[str, Any]) -> OrgSubscription | None:
        subscription = self._find_by_customer(invoice)
        if subscription is None:
            return None
        subscription.status = SubscriptionStatus.PAST_DUE
        self.db.subscriptions.save(subscription)
        logger.info("Payment failed for org %s: marked past_due", subscription.id)
        return subscription

    async def _publish(self, stripe_event: str, subscription: OrgSubscription) -> None:
        if self.bus is None:
            return
        await self.bus.emit(
            Event(
                type=EventType.SUBSCRIPTION_UPDATED,
                source="stripe",
                data={
                    "organization_id": subscription.id,
                    "status": subscription.status.value,
                    "plan_id": subscription.plan_id,
                    "stripe_event": stripe_event,
                },
                priority=PriorityLevel.CRITICAL,
            )
        )

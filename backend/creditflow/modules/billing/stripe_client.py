"""Stripe webhook parsing.

Signature verification is delegated to the Stripe SDK. Event payloads
are normalized into small dataclasses so the translator does not depend
on where a given Stripe API version puts a field.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import stripe

from creditflow.core.config import settings

logger = logging.getLogger(__name__)


@dataclass
class StripeSubscriptionData:
    """Subscription fields the billing layer reacts to."""
    id: Optional[str]
    customer_id: Optional[str]
    status: str
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool

    @classmethod
    def from_event_object(cls, obj: Mapping[str, Any]) -> "StripeSubscriptionData":
        # Newer API versions report periods per subscription item
        period_source: Mapping[str, Any] = obj
        if obj.get("current_period_start") is None:
            items = (obj.get("items") or {}).get("data") or []
            if items:
                period_source = items[0]
        return cls(
            id=obj.get("id"),
            customer_id=obj.get("customer"),
            status=obj.get("status", ""),
            current_period_start=from_timestamp(period_source.get("current_period_start")),
            current_period_end=from_timestamp(period_source.get("current_period_end")),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end", False)),
        )


@dataclass
class StripeInvoiceData:
    """Invoice fields needed to record a payment."""
    id: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    amount_paid: int
    currency: str
    payment_intent: Optional[str]
    charge: Optional[str]
    description: Optional[str]

    @classmethod
    def from_event_object(cls, obj: Mapping[str, Any]) -> "StripeInvoiceData":
        subscription_id = obj.get("subscription")
        if subscription_id is None:
            details = ((obj.get("parent") or {}).get("subscription_details") or {})
            subscription_id = details.get("subscription")
        return cls(
            id=obj.get("id"),
            customer_id=obj.get("customer"),
            subscription_id=subscription_id,
            amount_paid=int(obj.get("amount_paid") or 0),
            currency=obj.get("currency") or "usd",
            payment_intent=obj.get("payment_intent"),
            charge=obj.get("charge"),
            description=obj.get("description"),
        )


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    """Convert Stripe's unix seconds to an aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def construct_webhook_event(payload: bytes, sig_header: Optional[str]) -> dict[str, Any]:
    """Verify a webhook payload and return the event as a plain dict.

    Without a configured webhook secret the payload is parsed unverified,
    which is only acceptable in development.

    Raises:
        ValueError: If the payload is malformed or the signature is invalid
    """
    if settings.STRIPE_WEBHOOK_SECRET:
        try:
            stripe.Webhook.construct_event(
                payload,
                sig_header or "",
                settings.STRIPE_WEBHOOK_SECRET,
            )
        except stripe.SignatureVerificationError as e:
            raise ValueError(f"Invalid webhook signature: {e}")
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid webhook payload: {e}")
    else:
        logger.warning("STRIPE_WEBHOOK_SECRET not set, accepting unverified webhook payload")

    try:
        event = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid webhook payload: {e}")
    if not isinstance(event, dict):
        raise ValueError("Invalid webhook payload: expected a JSON object")
    return event

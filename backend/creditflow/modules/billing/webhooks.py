"""Payment provider event translation.

Stripe events patch subscription state and record payments. They never
touch the credit ledger: credits are granted by subscription creation
and the renewal job only.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from creditflow.core.logging import log_info, log_warning
from creditflow.core.metrics import PAYMENT_EVENTS_TOTAL
from creditflow.modules.billing.models import PaymentStatus, SubscriptionStatus, utc_now
from creditflow.modules.billing.repository import PaymentRepository, SubscriptionRepository
from creditflow.modules.billing.stripe_client import StripeInvoiceData, StripeSubscriptionData

logger = logging.getLogger(__name__)

# Stripe subscription status vocabulary -> ours
STRIPE_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
    "canceled": SubscriptionStatus.CANCELLED,
    "paused": SubscriptionStatus.PAUSED,
}


def map_stripe_status(stripe_status: str) -> Optional[SubscriptionStatus]:
    return STRIPE_STATUS_MAP.get(stripe_status)


@dataclass
class WebhookResult:
    event_type: str
    handled: bool
    detail: dict = field(default_factory=dict)


class PaymentEventTranslator:
    """Applies Stripe webhook events to local billing state."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.subscription_repo = SubscriptionRepository(session)
        self.payment_repo = PaymentRepository(session)

    async def handle_stripe_webhook(self, event: Mapping[str, Any]) -> WebhookResult:
        """Dispatch one verified Stripe event.

        Unknown event types and events about objects we do not track are
        acknowledged with ``handled=False`` so Stripe stops retrying.
        """
        event_type = event.get("type", "")
        data = (event.get("data") or {}).get("object") or {}

        handlers = {
            "customer.subscription.created": self._handle_subscription_changed,
            "customer.subscription.updated": self._handle_subscription_changed,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_invoice_payment_failed,
        }

        handler = handlers.get(event_type)
        if handler:
            result = await handler(event_type, data)
        else:
            log_info(logger, "Ignoring unhandled Stripe event", event_type=event_type)
            result = WebhookResult(event_type=event_type, handled=False)

        PAYMENT_EVENTS_TOTAL.labels(
            event_type=event_type or "unknown",
            handled=str(result.handled).lower(),
        ).inc()
        return result

    async def _handle_subscription_changed(self, event_type: str, data: Mapping[str, Any]) -> WebhookResult:
        stripe_sub = StripeSubscriptionData.from_event_object(data)
        subscription = await self.subscription_repo.get_by_stripe_subscription_id(stripe_sub.id)
        if not subscription:
            log_warning(
                logger,
                "Stripe subscription event for unknown subscription",
                event_type=event_type,
                stripe_subscription_id=stripe_sub.id,
            )
            return WebhookResult(event_type=event_type, handled=False)

        values: dict[str, Any] = {"cancel_at_period_end": stripe_sub.cancel_at_period_end}
        status = map_stripe_status(stripe_sub.status)
        if status is None:
            log_warning(
                logger,
                "Unrecognised Stripe subscription status",
                stripe_subscription_id=stripe_sub.id,
                stripe_status=stripe_sub.status,
            )
        else:
            values["status"] = status.value
            if status == SubscriptionStatus.CANCELLED and subscription.cancelled_at is None:
                values["cancelled_at"] = utc_now()
        if stripe_sub.current_period_start is not None:
            values["current_period_start"] = stripe_sub.current_period_start
        if stripe_sub.current_period_end is not None:
            values["current_period_end"] = stripe_sub.current_period_end

        await self.subscription_repo.update_subscription(subscription.id, **values)
        log_info(
            logger,
            "Subscription synced from Stripe",
            event_type=event_type,
            subscription_id=str(subscription.id),
            stripe_subscription_id=stripe_sub.id,
            subscription_status=values.get("status"),
        )
        return WebhookResult(
            event_type=event_type,
            handled=True,
            detail={"subscription_id": str(subscription.id)},
        )

    async def _handle_subscription_deleted(self, event_type: str, data: Mapping[str, Any]) -> WebhookResult:
        stripe_sub_id = data.get("id")
        if not stripe_sub_id:
            log_warning(logger, "Stripe deletion without a subscription id")
            return WebhookResult(event_type=event_type, handled=False)

        subscription = await self.subscription_repo.get_by_stripe_subscription_id(stripe_sub_id)
        if not subscription:
            log_warning(
                logger,
                "Stripe deletion for unknown subscription",
                stripe_subscription_id=stripe_sub_id,
            )
            return WebhookResult(event_type=event_type, handled=False)

        await self.subscription_repo.update_subscription(
            subscription.id,
            status=SubscriptionStatus.CANCELLED.value,
            cancelled_at=subscription.cancelled_at or utc_now(),
        )
        log_info(logger, "Subscription cancelled by Stripe", subscription_id=str(subscription.id))
        return WebhookResult(
            event_type=event_type,
            handled=True,
            detail={"subscription_id": str(subscription.id)},
        )

    async def _handle_invoice_paid(self, event_type: str, data: Mapping[str, Any]) -> WebhookResult:
        invoice = StripeInvoiceData.from_event_object(data)

        if not invoice.id:
            log_warning(logger, "Paid invoice without an invoice id")
            return WebhookResult(event_type=event_type, handled=False)

        existing = await self.payment_repo.get_by_stripe_invoice_id(invoice.id)
        if existing:
            # Stripe redelivers events; the invoice id makes this idempotent
            return WebhookResult(
                event_type=event_type,
                handled=True,
                detail={"payment_id": str(existing.id), "duplicate": True},
            )

        subscription = None
        if invoice.subscription_id:
            subscription = await self.subscription_repo.get_by_stripe_subscription_id(invoice.subscription_id)
        if not subscription and invoice.customer_id:
            subscription = await self.subscription_repo.get_by_stripe_customer_id(invoice.customer_id)
        if not subscription:
            log_warning(
                logger,
                "Paid invoice for unknown Stripe customer",
                stripe_invoice_id=invoice.id,
                stripe_customer_id=invoice.customer_id,
            )
            return WebhookResult(event_type=event_type, handled=False)

        member_id = subscription.member_id
        try:
            payment = await self.payment_repo.create_payment(
                member_id=member_id,
                subscription_id=subscription.id,
                amount=invoice.amount_paid,
                currency=invoice.currency,
                status=PaymentStatus.SUCCEEDED.value,
                payment_method="card",
                stripe_payment_intent_id=invoice.payment_intent,
                stripe_charge_id=invoice.charge,
                stripe_invoice_id=invoice.id,
                description=invoice.description or "Subscription payment",
            )
        except IntegrityError:
            # A concurrent redelivery inserted the same invoice first
            await self.session.rollback()
            existing = await self.payment_repo.get_by_stripe_invoice_id(invoice.id)
            if existing is None:
                raise
            return WebhookResult(
                event_type=event_type,
                handled=True,
                detail={"payment_id": str(existing.id), "duplicate": True},
            )
        log_info(
            logger,
            "Payment recorded",
            member_id=str(member_id),
            payment_id=str(payment.id),
            amount=invoice.amount_paid,
            currency=invoice.currency,
        )
        return WebhookResult(
            event_type=event_type,
            handled=True,
            detail={"payment_id": str(payment.id)},
        )

    async def _handle_invoice_payment_failed(self, event_type: str, data: Mapping[str, Any]) -> WebhookResult:
        invoice = StripeInvoiceData.from_event_object(data)

        member_sub = None
        if invoice.customer_id:
            member_sub = await self.subscription_repo.get_by_stripe_customer_id(invoice.customer_id)
        if not member_sub:
            log_warning(
                logger,
                "Failed invoice for unknown Stripe customer",
                stripe_invoice_id=invoice.id,
                stripe_customer_id=invoice.customer_id,
            )
            return WebhookResult(event_type=event_type, handled=False)

        active = await self.subscription_repo.get_active_by_member(member_sub.member_id)
        if not active:
            return WebhookResult(event_type=event_type, handled=False)

        await self.subscription_repo.update_subscription(
            active.id, status=SubscriptionStatus.PAST_DUE.value
        )
        log_warning(
            logger,
            "Subscription past due after failed payment",
            member_id=str(active.member_id),
            subscription_id=str(active.id),
            stripe_invoice_id=invoice.id,
        )
        return WebhookResult(
            event_type=event_type,
            handled=True,
            detail={"subscription_id": str(active.id)},
        )

"""Tests for Stripe webhook translation.

Webhooks patch subscriptions and record payments; they never move
credits.
"""

import json
import uuid
from datetime import datetime, timezone

import pytest

from creditflow.core.config import settings
from creditflow.modules.billing.ledger import CreditLedger
from creditflow.modules.billing.models import SubscriptionStatus
from creditflow.modules.billing.repository import PaymentRepository
from creditflow.modules.billing.service import PlanCatalog, SubscriptionService
from creditflow.modules.billing.stripe_client import (
    StripeInvoiceData,
    StripeSubscriptionData,
    construct_webhook_event,
    from_timestamp,
)
from creditflow.modules.billing.tasks import allocate_for_subscription
from creditflow.modules.billing.webhooks import (
    STRIPE_STATUS_MAP,
    PaymentEventTranslator,
    map_stripe_status,
)

PERIOD_START = 1_767_225_600  # 2026-01-01T00:00:00Z
PERIOD_END = 1_769_904_000  # 2026-02-01T00:00:00Z


async def _noop_scheduler(member_id, subscription_id) -> None:
    return None


async def _stripe_subscription(session, member_id=None):
    catalog = PlanCatalog(session)
    await catalog.ensure_default_plans()
    plan = await catalog.get_plan_by_name("starter")
    return await SubscriptionService(session, _noop_scheduler).create(
        member_id or uuid.uuid4(),
        plan.id,
        stripe_subscription_id="sub_123",
        stripe_customer_id="cus_123",
    )


def _event(event_type: str, obj: dict) -> dict:
    return {"id": f"evt_{uuid.uuid4().hex}", "type": event_type, "data": {"object": obj}}


def _invoice(invoice_id: str = "in_123", **overrides) -> dict:
    invoice = {
        "id": invoice_id,
        "customer": "cus_123",
        "subscription": "sub_123",
        "amount_paid": 2900,
        "currency": "usd",
        "payment_intent": "pi_123",
        "charge": "ch_123",
        "description": None,
    }
    invoice.update(overrides)
    return invoice


class TestStatusMapping:

    @pytest.mark.parametrize(
        "stripe_status,expected",
        [
            ("active", SubscriptionStatus.ACTIVE),
            ("trialing", SubscriptionStatus.TRIALING),
            ("past_due", SubscriptionStatus.PAST_DUE),
            ("unpaid", SubscriptionStatus.PAST_DUE),
            ("canceled", SubscriptionStatus.CANCELLED),
            ("incomplete_expired", SubscriptionStatus.CANCELLED),
            ("paused", SubscriptionStatus.PAUSED),
        ],
    )
    def test_known_statuses(self, stripe_status: str, expected: SubscriptionStatus) -> None:
        assert map_stripe_status(stripe_status) == expected

    def test_unknown_status(self) -> None:
        assert map_stripe_status("something_new") is None

    def test_every_target_is_a_local_status(self) -> None:
        assert set(STRIPE_STATUS_MAP.values()) <= set(SubscriptionStatus)


class TestPayloadParsing:

    def test_timestamps_are_utc(self) -> None:
        assert from_timestamp(PERIOD_START) == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert from_timestamp(None) is None

    def test_periods_read_from_items(self) -> None:
        data = StripeSubscriptionData.from_event_object({
            "id": "sub_1",
            "status": "active",
            "items": {"data": [{"current_period_start": PERIOD_START, "current_period_end": PERIOD_END}]},
        })

        assert data.current_period_start == from_timestamp(PERIOD_START)
        assert data.current_period_end == from_timestamp(PERIOD_END)
        assert data.cancel_at_period_end is False

    def test_invoice_subscription_from_parent(self) -> None:
        data = StripeInvoiceData.from_event_object({
            "id": "in_1",
            "customer": "cus_1",
            "parent": {"subscription_details": {"subscription": "sub_9"}},
        })

        assert data.subscription_id == "sub_9"
        assert data.amount_paid == 0
        assert data.currency == "usd"

    def test_unverified_payload_without_secret(self, monkeypatch) -> None:
        monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "")
        payload = json.dumps(_event("invoice.paid", _invoice())).encode()

        event = construct_webhook_event(payload, None)

        assert event["type"] == "invoice.paid"

    def test_malformed_payload(self, monkeypatch) -> None:
        monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "")

        with pytest.raises(ValueError):
            construct_webhook_event(b"not json", None)

    def test_bad_signature(self, monkeypatch) -> None:
        monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_test")
        payload = json.dumps(_event("invoice.paid", _invoice())).encode()

        with pytest.raises(ValueError):
            construct_webhook_event(payload, "t=1,v1=deadbeef")


class TestPaymentEventTranslator:

    @pytest.mark.asyncio
    async def test_unknown_event_ignored(self, session) -> None:
        result = await PaymentEventTranslator(session).handle_stripe_webhook(
            _event("charge.refunded", {"id": "ch_1"})
        )

        assert result.handled is False
        assert result.event_type == "charge.refunded"

    @pytest.mark.asyncio
    async def test_subscription_updated_syncs_status_and_period(self, session) -> None:
        subscription = await _stripe_subscription(session)

        result = await PaymentEventTranslator(session).handle_stripe_webhook(_event(
            "customer.subscription.updated",
            {
                "id": "sub_123",
                "customer": "cus_123",
                "status": "past_due",
                "current_period_start": PERIOD_START,
                "current_period_end": PERIOD_END,
                "cancel_at_period_end": True,
            },
        ))

        assert result.handled is True
        synced = await SubscriptionService(session, _noop_scheduler).get(subscription.id)
        assert synced.status == SubscriptionStatus.PAST_DUE.value
        assert synced.cancel_at_period_end is True
        assert synced.current_period_end.replace(tzinfo=timezone.utc) == from_timestamp(PERIOD_END)

    @pytest.mark.asyncio
    async def test_subscription_update_with_unknown_status_keeps_status(self, session) -> None:
        subscription = await _stripe_subscription(session)

        await PaymentEventTranslator(session).handle_stripe_webhook(_event(
            "customer.subscription.updated",
            {"id": "sub_123", "status": "brand_new_state"},
        ))

        synced = await SubscriptionService(session, _noop_scheduler).get(subscription.id)
        assert synced.status == SubscriptionStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_subscription_event_for_unknown_subscription(self, session) -> None:
        result = await PaymentEventTranslator(session).handle_stripe_webhook(_event(
            "customer.subscription.created",
            {"id": "sub_unknown", "status": "active"},
        ))

        assert result.handled is False

    @pytest.mark.asyncio
    async def test_subscription_deleted_cancels(self, session) -> None:
        subscription = await _stripe_subscription(session)

        result = await PaymentEventTranslator(session).handle_stripe_webhook(
            _event("customer.subscription.deleted", {"id": "sub_123"})
        )

        assert result.handled is True
        cancelled = await SubscriptionService(session, _noop_scheduler).get(subscription.id)
        assert cancelled.status == SubscriptionStatus.CANCELLED.value
        assert cancelled.cancelled_at is not None

    @pytest.mark.asyncio
    async def test_invoice_paid_records_payment_once(self, session) -> None:
        member_id = uuid.uuid4()
        subscription = await _stripe_subscription(session, member_id)
        await allocate_for_subscription(session, member_id, subscription.id)
        translator = PaymentEventTranslator(session)

        first = await translator.handle_stripe_webhook(_event("invoice.paid", _invoice()))
        second = await translator.handle_stripe_webhook(_event("invoice.paid", _invoice()))

        assert first.handled is True
        assert second.detail["duplicate"] is True
        payments = await PaymentRepository(session).get_member_payments(member_id)
        assert len(payments) == 1
        assert payments[0].amount == 2900
        assert payments[0].subscription_id == subscription.id
        assert payments[0].description == "Subscription payment"
        # Paid invoices do not grant credits
        assert (await CreditLedger(session).get_balance(member_id)).balance == 10_000

    @pytest.mark.asyncio
    async def test_deletion_without_id_leaves_local_subscriptions_alone(self, session) -> None:
        catalog = PlanCatalog(session)
        await catalog.ensure_default_plans()
        plan = await catalog.get_plan_by_name("starter")
        local = await SubscriptionService(session, _noop_scheduler).create(uuid.uuid4(), plan.id)

        result = await PaymentEventTranslator(session).handle_stripe_webhook(
            _event("customer.subscription.deleted", {"object": "subscription"})
        )

        assert result.handled is False
        untouched = await SubscriptionService(session, _noop_scheduler).get(local.id)
        assert untouched.status == SubscriptionStatus.ACTIVE.value
        assert untouched.cancelled_at is None

    @pytest.mark.asyncio
    async def test_events_without_ids_match_nothing(self, session) -> None:
        catalog = PlanCatalog(session)
        await catalog.ensure_default_plans()
        plan = await catalog.get_plan_by_name("starter")
        await SubscriptionService(session, _noop_scheduler).create(uuid.uuid4(), plan.id)
        translator = PaymentEventTranslator(session)

        updated = await translator.handle_stripe_webhook(
            _event("customer.subscription.updated", {"status": "canceled"})
        )
        paid = await translator.handle_stripe_webhook(
            _event("invoice.paid", {"customer": None, "amount_paid": 100})
        )

        assert updated.handled is False
        assert paid.handled is False
        assert await translator.subscription_repo.get_by_stripe_subscription_id(None) is None
        assert await translator.payment_repo.get_by_stripe_invoice_id(None) is None

    @pytest.mark.asyncio
    async def test_racing_invoice_redelivery_reports_duplicate(self, session, monkeypatch) -> None:
        member_id = uuid.uuid4()
        await _stripe_subscription(session, member_id)
        translator = PaymentEventTranslator(session)
        first = await translator.handle_stripe_webhook(_event("invoice.paid", _invoice()))

        # The second delivery checks before the first one's insert is visible
        real_lookup = translator.payment_repo.get_by_stripe_invoice_id
        calls = {"n": 0}

        async def stale_lookup(invoice_id):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return await real_lookup(invoice_id)

        monkeypatch.setattr(translator.payment_repo, "get_by_stripe_invoice_id", stale_lookup)
        second = await translator.handle_stripe_webhook(_event("invoice.paid", _invoice()))

        assert second.handled is True
        assert second.detail == {"payment_id": first.detail["payment_id"], "duplicate": True}
        payments = await PaymentRepository(session).get_member_payments(member_id)
        assert len(payments) == 1

    @pytest.mark.asyncio
    async def test_invoice_paid_resolved_by_customer(self, session) -> None:
        member_id = uuid.uuid4()
        await _stripe_subscription(session, member_id)

        result = await PaymentEventTranslator(session).handle_stripe_webhook(
            _event("invoice.paid", _invoice("in_456", subscription=None))
        )

        assert result.handled is True
        payments = await PaymentRepository(session).get_member_payments(member_id)
        assert [p.stripe_invoice_id for p in payments] == ["in_456"]

    @pytest.mark.asyncio
    async def test_invoice_paid_for_unknown_customer(self, session) -> None:
        result = await PaymentEventTranslator(session).handle_stripe_webhook(
            _event("invoice.paid", _invoice(customer="cus_other", subscription="sub_other"))
        )

        assert result.handled is False

    @pytest.mark.asyncio
    async def test_payment_failed_marks_past_due(self, session) -> None:
        subscription = await _stripe_subscription(session)

        result = await PaymentEventTranslator(session).handle_stripe_webhook(
            _event("invoice.payment_failed", _invoice())
        )

        assert result.handled is True
        past_due = await SubscriptionService(session, _noop_scheduler).get(subscription.id)
        assert past_due.status == SubscriptionStatus.PAST_DUE.value

"""HTTP tests for the billing router."""

import json
import uuid

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from creditflow.core.config import settings
from creditflow.core.database import get_session
from creditflow.main import app
from creditflow.modules.billing import service as billing_service

API = settings.API_V1_PREFIX


@pytest_asyncio.fixture
async def client(session_maker, monkeypatch):
    scheduled = []

    async def record_schedule(member_id, subscription_id) -> None:
        scheduled.append((member_id, subscription_id))

    async def override_get_session():
        async with session_maker() as session:
            yield session

    monkeypatch.setattr(billing_service, "enqueue_initial_allocation", record_schedule)
    app.dependency_overrides[get_session] = override_get_session
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        ac.scheduled = scheduled
        yield ac
    app.dependency_overrides.clear()


async def _install_plans(client: AsyncClient) -> dict:
    response = await client.post(f"{API}/billing/plans/defaults")
    assert response.status_code == 200
    return {p["name"]: p for p in response.json()}


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, client) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_metrics_exposed(self, client) -> None:
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "ledger_operations_total" in response.text


class TestPlanEndpoints:

    @pytest.mark.asyncio
    async def test_plans_speak_unlimited(self, client) -> None:
        plans = await _install_plans(client)

        assert plans["starter"]["max_api_integrations"] == 10
        assert plans["enterprise"]["max_projects"] == "unlimited"

        listed = await client.get(f"{API}/billing/plans")
        assert [p["name"] for p in listed.json()] == ["free", "starter", "pro", "enterprise"]

    @pytest.mark.asyncio
    async def test_duplicate_plan_conflicts(self, client) -> None:
        body = {"name": "team", "display_name": "Team", "monthly_credits": 100}

        assert (await client.post(f"{API}/billing/plans", json=body)).status_code == 201
        assert (await client.post(f"{API}/billing/plans", json=body)).status_code == 409

    @pytest.mark.asyncio
    async def test_invalid_limit_rejected(self, client) -> None:
        response = await client.post(f"{API}/billing/plans", json={
            "name": "broken",
            "display_name": "Broken",
            "monthly_credits": 1,
            "max_projects": "lots",
        })

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_plan(self, client) -> None:
        response = await client.get(f"{API}/billing/plans/{uuid.uuid4()}")

        assert response.status_code == 404


class TestSubscriptionEndpoints:

    @pytest.mark.asyncio
    async def test_subscribe_and_cancel(self, client) -> None:
        plans = await _install_plans(client)
        member_id = str(uuid.uuid4())

        created = await client.post(f"{API}/billing/subscriptions", json={
            "member_id": member_id,
            "plan_id": plans["starter"]["id"],
        })
        assert created.status_code == 201
        subscription = created.json()
        assert subscription["status"] == "active"
        assert len(client.scheduled) == 1

        active = await client.get(f"{API}/billing/subscriptions/active", params={"member_id": member_id})
        assert active.json()["id"] == subscription["id"]

        cancelled = await client.post(f"{API}/billing/subscriptions/{subscription['id']}/cancel")
        assert cancelled.json()["status"] == "active"
        assert cancelled.json()["cancel_at_period_end"] is True

        now = await client.post(
            f"{API}/billing/subscriptions/{subscription['id']}/cancel",
            json={"immediate": True},
        )
        assert now.json()["status"] == "cancelled"

        history = await client.get(f"{API}/billing/subscriptions", params={"member_id": member_id})
        assert [s["id"] for s in history.json()] == [subscription["id"]]

    @pytest.mark.asyncio
    async def test_subscribe_to_unknown_plan(self, client) -> None:
        response = await client.post(f"{API}/billing/subscriptions", json={
            "member_id": str(uuid.uuid4()),
            "plan_id": str(uuid.uuid4()),
        })

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_status_update_of_unknown_subscription(self, client) -> None:
        response = await client.patch(
            f"{API}/billing/subscriptions/{uuid.uuid4()}/status",
            json={"status": "paused"},
        )

        assert response.status_code == 404


class TestCreditEndpoints:

    @pytest.mark.asyncio
    async def test_allocate_deduct_and_reconcile(self, client) -> None:
        member_id = str(uuid.uuid4())

        allocated = await client.post(f"{API}/billing/credits/allocate", json={
            "member_id": member_id,
            "amount": 500,
            "type": "purchase",
            "description": "Credit pack",
        })
        assert allocated.status_code == 200
        assert allocated.json()["new_balance"] == 500

        deducted = await client.post(f"{API}/billing/credits/deduct", json={
            "member_id": member_id,
            "amount": 120,
            "description": "Chat completion",
            "chat_id": "chat-42",
        })
        assert deducted.json()["new_balance"] == 380

        balance = (await client.get(f"{API}/billing/credits/{member_id}")).json()
        assert balance["balance"] == 380
        assert balance["lifetime_earned"] == 500
        assert balance["lifetime_spent"] == 120

        history = (await client.get(f"{API}/billing/credits/{member_id}/transactions")).json()
        assert history["total"] == 2
        assert [t["amount"] for t in history["transactions"]] == [-120, 500]

        report = (await client.get(f"{API}/billing/credits/{member_id}/reconcile")).json()
        assert report["is_consistent"] is True
        assert report["transaction_sum"] == 380

    @pytest.mark.asyncio
    async def test_insufficient_credits_is_actionable(self, client) -> None:
        member_id = str(uuid.uuid4())
        await client.post(f"{API}/billing/credits/allocate", json={
            "member_id": member_id, "amount": 10, "description": "bonus",
        })

        response = await client.post(f"{API}/billing/credits/deduct", json={
            "member_id": member_id, "amount": 25, "description": "too much",
        })

        assert response.status_code == 402
        detail = response.json()["detail"]
        assert detail["required"] == 25
        assert detail["available"] == 10

    @pytest.mark.asyncio
    async def test_balance_of_unknown_member_is_zero(self, client) -> None:
        response = await client.get(f"{API}/billing/credits/{uuid.uuid4()}")

        assert response.status_code == 200
        assert response.json()["balance"] == 0

    @pytest.mark.asyncio
    async def test_deduction_type_cannot_be_allocated(self, client) -> None:
        response = await client.post(f"{API}/billing/credits/allocate", json={
            "member_id": str(uuid.uuid4()),
            "amount": 10,
            "type": "usage_deduction",
            "description": "sneaky",
        })

        assert response.status_code == 422


class TestUsageEndpoints:

    @pytest.mark.asyncio
    async def test_usage_recorded_even_when_refused(self, client) -> None:
        member_id = str(uuid.uuid4())
        await client.post(f"{API}/billing/credits/allocate", json={
            "member_id": member_id, "amount": 10, "description": "bonus",
        })

        charged = await client.post(f"{API}/billing/usage", json={
            "member_id": member_id, "resource_type": "api_call", "quantity": 1, "credit_cost": 4,
        })
        refused = await client.post(f"{API}/billing/usage", json={
            "member_id": member_id, "resource_type": "api_call", "quantity": 1, "credit_cost": 40,
        })

        assert charged.status_code == 201
        assert charged.json()["new_balance"] == 6
        assert refused.status_code == 402

        stats = (await client.get(f"{API}/billing/usage/{member_id}/stats")).json()
        assert stats["total_records"] == 2
        assert stats["total_credits_spent"] == 4


class TestStripeWebhookEndpoint:

    @pytest.mark.asyncio
    async def test_unverified_event_accepted_without_secret(self, client, monkeypatch) -> None:
        monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "")
        payload = {"id": "evt_1", "type": "customer.created", "data": {"object": {"id": "cus_1"}}}

        response = await client.post(
            f"{API}/billing/webhooks/stripe",
            content=json.dumps(payload),
            headers={"content-type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json() == {"received": True, "event_type": "customer.created", "handled": False}

    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, client, monkeypatch) -> None:
        monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_test")

        response = await client.post(
            f"{API}/billing/webhooks/stripe",
            content=b"{}",
            headers={"stripe-signature": "t=1,v1=bad"},
        )

        assert response.status_code == 400

"""HTTP tests for the integrations router."""

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
    async def skip_schedule(member_id, subscription_id) -> None:
        return None

    async def override_get_session():
        async with session_maker() as session:
            yield session

    monkeypatch.setattr(billing_service, "enqueue_initial_allocation", skip_schedule)
    app.dependency_overrides[get_session] = override_get_session
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _subscribe(client: AsyncClient, plan_name: str) -> str:
    plans = (await client.post(f"{API}/billing/plans/defaults")).json()
    if not plans:
        plans = (await client.get(f"{API}/billing/plans")).json()
    plan_id = next(p["id"] for p in plans if p["name"] == plan_name)
    member_id = str(uuid.uuid4())
    response = await client.post(f"{API}/billing/subscriptions", json={
        "member_id": member_id, "plan_id": plan_id,
    })
    assert response.status_code == 201
    return member_id


def _rest_body(name: str) -> dict:
    return {
        "name": name,
        "config": {
            "provider": "rest_api",
            "base_url": "https://api.example.com",
            "auth_type": "api_key",
            "api_key": "k-live",
        },
    }


class TestIntegrationEndpoints:

    @pytest.mark.asyncio
    async def test_create_masks_secrets(self, client) -> None:
        member_id = await _subscribe(client, "starter")

        response = await client.post(
            f"{API}/integrations", params={"member_id": member_id}, json=_rest_body("orders")
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "testing"
        assert body["config"]["api_key"] == "***"

        listed = await client.get(f"{API}/integrations", params={"member_id": member_id})
        assert listed.json()["total"] == 1

    @pytest.mark.asyncio
    async def test_no_subscription_forbidden(self, client) -> None:
        response = await client.post(
            f"{API}/integrations", params={"member_id": str(uuid.uuid4())}, json=_rest_body("x")
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_limit_reached_reports_limit(self, client) -> None:
        member_id = await _subscribe(client, "free")
        for name in ("a", "b"):
            await client.post(f"{API}/integrations", params={"member_id": member_id}, json=_rest_body(name))

        response = await client.post(
            f"{API}/integrations", params={"member_id": member_id}, json=_rest_body("c")
        )

        assert response.status_code == 403
        detail = response.json()["detail"]
        assert detail["limit"] == 2
        assert "2" in detail["message"]

    @pytest.mark.asyncio
    async def test_unknown_provider_rejected(self, client) -> None:
        member_id = await _subscribe(client, "starter")

        response = await client.post(f"{API}/integrations", params={"member_id": member_id}, json={
            "name": "ftp", "config": {"provider": "ftp"},
        })

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_missing_integration(self, client) -> None:
        response = await client.get(
            f"{API}/integrations/{uuid.uuid4()}", params={"member_id": str(uuid.uuid4())}
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_unsupported_provider_execute_is_bad_gateway(self, client) -> None:
        member_id = await _subscribe(client, "starter")
        created = await client.post(f"{API}/integrations", params={"member_id": member_id}, json={
            "name": "warehouse",
            "config": {"provider": "postgres", "host": "db.internal", "password": "pw"},
        })
        integration_id = created.json()["id"]

        response = await client.post(
            f"{API}/integrations/{integration_id}/execute",
            params={"member_id": member_id},
            json={"query_type": "sql_select", "query": "select 1"},
        )

        assert response.status_code == 502
        assert response.json()["detail"]["message"] == "Provider postgres is not supported yet"

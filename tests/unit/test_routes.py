"""Unit tests for the webhook administration API."""

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

SCOPE = {"tenant_id": "tenant_1", "organization_id": "org_1"}


@pytest_asyncio.fixture
async def app(engine) -> FastAPI:
    """Create test FastAPI application."""
    from serenity_core.webhooks.routes import get_engine, router

    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_engine] = lambda: engine
    return app


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def webhook_body(**overrides):
    body = {
        "name": "Orders endpoint",
        "target_url": "https://hooks.example.com/orders",
        "events": {"subscribed": ["order.created"]},
    }
    body.update(overrides)
    return body


async def create(client, **overrides):
    response = await client.post("/webhooks", params=SCOPE, json=webhook_body(**overrides))
    assert response.status_code == 201, response.text
    return response.json()


class TestWebhookRoutes:
    """Tests for /webhooks endpoints."""

    @pytest.mark.asyncio
    async def test_create_returns_secret_once(self, client):
        created = await create(client)

        assert created["id"].startswith("whk_")
        assert len(created["secret"]) == 64
        assert "secret" not in created["authentication"]["hmac"]

        fetched = await client.get(f"/webhooks/{created['id']}")
        assert fetched.status_code == 200
        assert "secret" not in fetched.json()
        assert "secret" not in fetched.json()["authentication"]["hmac"]

    @pytest.mark.asyncio
    async def test_create_with_nested_sections(self, client):
        created = await create(
            client,
            authentication={"method": "bearer", "credentials": {"token": "tok"}},
            retry={"max_retries": 5},
            rate_limit={"enabled": True, "per_minute": 60},
        )

        assert created["authentication"]["method"] == "bearer"
        assert "token" not in created["authentication"]["credentials"]
        assert created["retry"]["max_retries"] == 5
        assert created["retry"]["initial_delay_ms"] == 1000
        assert created["rate_limit"]["per_minute"] == 60

    @pytest.mark.asyncio
    async def test_create_invalid_event_type(self, client):
        response = await client.post(
            "/webhooks",
            params=SCOPE,
            json=webhook_body(events={"subscribed": ["Bad Event"]}),
        )

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["code"] == "VALIDATION_ERROR"
        assert "invalid event type: Bad Event" in detail["errors"]

    @pytest.mark.asyncio
    async def test_create_rejects_out_of_range_values(self, client):
        response = await client.post(
            "/webhooks",
            params=SCOPE,
            json=webhook_body(retry={"max_retries": 50}),
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_list_and_filter(self, client):
        first = await create(client)
        await create(client, name="Second")
        await client.patch(f"/webhooks/{first['id']}", json={"state": "paused"})

        everything = await client.get("/webhooks", params=SCOPE)
        paused = await client.get("/webhooks", params={**SCOPE, "state": "paused"})

        assert len(everything.json()) == 2
        assert [w["id"] for w in paused.json()] == [first["id"]]

    @pytest.mark.asyncio
    async def test_get_unknown(self, client):
        response = await client.get("/webhooks/whk_missing")

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "SUBSCRIPTION_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_update(self, client):
        created = await create(client)

        response = await client.patch(
            f"/webhooks/{created['id']}",
            params={"updated_by": "admin"},
            json={"description": "Primary endpoint", "retry": {"max_retries": 1}},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["description"] == "Primary endpoint"
        assert body["retry"]["max_retries"] == 1
        assert body["retry"]["initial_delay_ms"] == 1000
        assert body["updated_by"] == "admin"

    @pytest.mark.asyncio
    async def test_delete(self, client):
        created = await create(client)

        assert (await client.delete(f"/webhooks/{created['id']}")).status_code == 204
        assert (await client.get(f"/webhooks/{created['id']}")).status_code == 404

    @pytest.mark.asyncio
    async def test_dispatch_event_and_history(self, client, handler):
        created = await create(client)

        response = await client.post(
            "/webhooks/events",
            json={**SCOPE, "type": "order.created", "data": {"order_id": 7}},
        )

        assert response.status_code == 200
        results = response.json()
        assert len(results) == 1
        assert results[0]["success"] is True
        assert handler.calls == 1

        history = await client.get(f"/webhooks/{created['id']}/deliveries")
        assert history.status_code == 200
        assert history.json()[0]["delivery_id"] == results[0]["delivery_id"]

    @pytest.mark.asyncio
    async def test_suspend_resume_and_test(self, client, handler):
        created = await create(client)
        webhook_id = created["id"]

        suspended = await client.post(
            f"/webhooks/{webhook_id}/suspend",
            json={"reason": "maintenance", "duration_seconds": 600},
        )
        assert suspended.json()["status"]["suspension"]["suspended"] is True

        blocked = await client.post(f"/webhooks/{webhook_id}/test")
        assert blocked.status_code == 409
        assert blocked.json()["detail"]["code"] == "WEBHOOK_UNAVAILABLE"

        resumed = await client.post(f"/webhooks/{webhook_id}/resume")
        assert resumed.json()["status"]["suspension"]["suspended"] is False

        tested = await client.post(f"/webhooks/{webhook_id}/test")
        assert tested.status_code == 200
        assert tested.json()["success"] is True
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_rate_limited_test_sets_retry_after(self, client):
        created = await create(client, rate_limit={"enabled": True, "per_minute": 1})

        assert (await client.post(f"/webhooks/{created['id']}/test")).status_code == 200
        limited = await client.post(f"/webhooks/{created['id']}/test")

        assert limited.status_code == 429
        assert limited.headers["Retry-After"] == "61"

    @pytest.mark.asyncio
    async def test_process_queue(self, client, handler, clock):
        created = await create(client)
        handler.status_code = 500
        await client.post("/webhooks/events", json={**SCOPE, "type": "order.created"})

        handler.status_code = 200
        clock.advance(seconds=2)
        response = await client.post(f"/webhooks/{created['id']}/queue/process")

        assert response.json() == {"attempted": 1, "queue_size": 0}

    @pytest.mark.asyncio
    async def test_statistics(self, client):
        await create(client)
        await create(client, authentication={"method": "none"})

        response = await client.get("/webhooks/statistics", params=SCOPE)

        assert response.status_code == 200
        stats = response.json()
        assert stats["overview"]["total"] == 2
        assert stats["deliveries"]["success_rate"] == 1.0

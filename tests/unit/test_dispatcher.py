"""Unit tests for event dispatch and the background sweeper."""

import asyncio
from datetime import timedelta

import httpx
import pytest


def config(**overrides):
    data = {
        "tenant_id": "tenant_1",
        "organization_id": "org_1",
        "name": "Orders endpoint",
        "target_url": "https://hooks.example.com/orders",
        "events": {"subscribed": ["order.created"]},
        "authentication": {"method": "none"},
    }
    data.update(overrides)
    return data


def event_dict(**overrides):
    data = {
        "id": "evt_1",
        "type": "order.created",
        "tenant_id": "tenant_1",
        "organization_id": "org_1",
        "data": {"order_id": 7},
    }
    data.update(overrides)
    return data


class TestWebhookDispatcher:
    """Tests for WebhookDispatcher."""

    @pytest.mark.asyncio
    async def test_fans_out_to_matching(self, engine, handler):
        first = await engine.registry.register(config())
        second = await engine.registry.register(config(target_url="https://other.example.com/hook"))
        await engine.registry.register(config(events={"subscribed": ["invoice.paid"]}))

        results = await engine.dispatch(event_dict())

        assert {r.subscription_id for r in results} == {first.id, second.id}
        assert all(r.success for r in results)
        assert sorted(str(r.url) for r in handler.requests) == [
            "https://hooks.example.com/orders",
            "https://other.example.com/hook",
        ]
        assert engine.dispatcher.in_flight == 0

    @pytest.mark.asyncio
    async def test_no_match(self, engine, handler):
        await engine.registry.register(config())

        assert await engine.dispatch(event_dict(type="invoice.paid")) == []
        assert await engine.dispatch(event_dict(tenant_id="tenant_2")) == []
        assert handler.calls == 0

    @pytest.mark.asyncio
    async def test_failures_are_isolated(self, store, settings, clock):
        from serenity_core.webhooks.engine import WebhookEngine

        def endpoint(request: httpx.Request) -> httpx.Response:
            if request.url.host == "down.example.com":
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200)

        engine = WebhookEngine(
            store,
            settings=settings,
            clock=clock,
            transport=httpx.MockTransport(endpoint),
            random_fn=lambda: 0.5,
        )
        healthy = await engine.registry.register(config())
        down = await engine.registry.register(config(target_url="https://down.example.com/hook"))
        limited = await engine.registry.register(
            config(rate_limit={"enabled": True, "per_minute": 1})
        )
        await engine.dispatch(event_dict(id="evt_0"))

        results = {r.subscription_id: r for r in await engine.dispatch(event_dict())}
        await engine.stop()

        assert results[healthy.id].success is True
        assert results[down.id].success is False
        assert "connection refused" in results[down.id].error
        assert results[limited.id].success is False
        assert "Rate limit" in results[limited.id].error

    @pytest.mark.asyncio
    async def test_dispatch_nowait_and_drain(self, engine, handler):
        await engine.registry.register(config())

        task = engine.dispatcher.dispatch_nowait(event_dict())
        await engine.dispatcher.drain(timeout=5)

        assert task.done()
        assert len(task.result()) == 1
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_delivery(self, store, settings, clock):
        from serenity_core.webhooks.engine import WebhookEngine

        release = asyncio.Event()
        delivered = []

        async def endpoint(request: httpx.Request) -> httpx.Response:
            await release.wait()
            delivered.append(request)
            return httpx.Response(200)

        engine = WebhookEngine(
            store,
            settings=settings,
            clock=clock,
            transport=httpx.MockTransport(endpoint),
        )
        subscription = await engine.registry.register(config())

        caller = asyncio.create_task(engine.dispatch(event_dict()))
        await asyncio.sleep(0.05)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        release.set()
        await engine.dispatcher.drain(timeout=5)
        stored = await store.get(subscription.id)
        await engine.stop()

        assert len(delivered) == 1
        assert stored.statistics.successful_deliveries == 1


class TestWebhookSweeper:
    """Tests for WebhookSweeper maintenance steps."""

    @pytest.mark.asyncio
    async def test_resumes_expired_suspensions(self, engine, store, clock):
        subscription = await engine.registry.register(config())
        await engine.registry.suspend(subscription.id, "cooldown", timedelta(minutes=5))

        assert await engine.sweeper.resume_suspended() == 0
        clock.advance(minutes=6)
        assert await engine.sweeper.resume_suspended() == 1

        assert (await store.get(subscription.id)).status.suspension.suspended is False

    @pytest.mark.asyncio
    async def test_reclaims_stale_processing_flag(self, engine, store, clock):
        subscription = await engine.registry.register(config())
        async with store.lock(subscription.id):
            current = await store.get(subscription.id)
            current.queue.processing = True
            current.queue.processing_started_at = clock()
            await store.save(current)

        assert await engine.sweeper.reclaim_stale_processing() == 0
        clock.advance(minutes=10)
        assert await engine.sweeper.reclaim_stale_processing() == 1

        assert (await store.get(subscription.id)).queue.processing is False

    @pytest.mark.asyncio
    async def test_refreshes_stale_health(self, engine, store):
        from serenity_core.webhooks.base import HealthStatus

        subscription = await engine.registry.register(config())

        assert await engine.sweeper.refresh_stale_health() == 1
        assert await engine.sweeper.refresh_stale_health() == 0
        assert (await store.get(subscription.id)).status.health.status == HealthStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_run_once_drains_queues(self, engine, handler, store, clock):
        handler.status_code = 500
        subscription = await engine.registry.register(config())
        await engine.dispatch(event_dict())
        assert (await store.get(subscription.id)).queue_size == 1

        handler.status_code = 200
        clock.advance(seconds=2)
        summary = await engine.sweeper.run_once()

        assert summary["queues_processed"] == 1
        assert summary["queues_failed"] == 0
        assert handler.calls == 2
        assert (await store.get(subscription.id)).queue_size == 0

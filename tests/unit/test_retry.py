"""Unit tests for retry backoff and the retry queue."""

from datetime import timedelta

import pytest


class TestComputeBackoff:
    """Tests for exponential backoff."""

    def _config(self, **overrides):
        from serenity_core.webhooks.base import JitterConfig, RetryConfig

        config = RetryConfig(jitter=JitterConfig(enabled=False), **overrides)
        return config

    @pytest.mark.parametrize(
        "attempt,expected",
        [(1, 1000), (2, 2000), (5, 16000), (6, 30000), (10, 30000)],
    )
    def test_exponential_growth_capped(self, attempt, expected):
        from serenity_core.webhooks.retry import compute_backoff_ms

        config = self._config(initial_delay_ms=1000, backoff_multiplier=2.0, max_delay_ms=30000)

        assert compute_backoff_ms(config, attempt) == expected

    def test_jitter_bounds(self):
        from serenity_core.webhooks.base import RetryConfig
        from serenity_core.webhooks.retry import compute_backoff_ms

        config = RetryConfig(initial_delay_ms=1000)
        config.jitter.factor = 0.1

        assert compute_backoff_ms(config, 1, random_fn=lambda: 0.0) == pytest.approx(900)
        assert compute_backoff_ms(config, 1, random_fn=lambda: 0.5) == pytest.approx(1000)
        assert compute_backoff_ms(config, 1, random_fn=lambda: 0.999999) == pytest.approx(1100, rel=1e-4)


def make_event(event_id="evt_1"):
    from serenity_core.webhooks.base import WebhookEvent

    return WebhookEvent(
        id=event_id,
        type="order.created",
        tenant_id="tenant_1",
        organization_id="org_1",
        data={"order_id": 7},
    )


class TestRetryQueue:
    """Tests for RetryQueue."""

    def test_new_event_enqueued_with_backoff(self, clock, make_subscription):
        from serenity_core.webhooks.retry import RetryQueue

        queue = RetryQueue(clock=clock, random_fn=lambda: 0.5)
        subscription = make_subscription()

        entry = queue.enqueue(subscription, make_event())

        assert entry.attempt_count == 1
        assert entry.next_attempt == clock() + timedelta(milliseconds=1000)
        assert entry.payload == {"order_id": 7}
        assert subscription.queue_size == 1

    def test_existing_entry_rescheduled(self, clock, make_subscription):
        from serenity_core.webhooks.retry import RetryQueue

        queue = RetryQueue(clock=clock, random_fn=lambda: 0.5)
        subscription = make_subscription(retry={"max_retries": 3})
        event = make_event()

        queue.enqueue(subscription, event)
        entry = queue.enqueue(subscription, event)

        assert entry.attempt_count == 2
        assert entry.next_attempt == clock() + timedelta(milliseconds=2000)
        assert subscription.queue_size == 1

    def test_exhausted_entry_dropped(self, clock, make_subscription):
        from serenity_core.webhooks.retry import RetryQueue

        queue = RetryQueue(clock=clock, random_fn=lambda: 0.5)
        subscription = make_subscription(retry={"max_retries": 2})
        event = make_event()

        queue.enqueue(subscription, event)
        queue.enqueue(subscription, event)
        dropped = queue.enqueue(subscription, event)

        assert dropped is None
        assert subscription.queue_size == 0

    def test_trim_keeps_newest(self, clock, make_subscription):
        from serenity_core.webhooks.retry import RetryQueue

        queue = RetryQueue(clock=clock, random_fn=lambda: 0.5)
        subscription = make_subscription(queue={"max_queue_size": 3})

        for i in range(5):
            queue.enqueue(subscription, make_event(f"evt_{i}"))

        assert [e.event_id for e in subscription.queue.pending] == ["evt_2", "evt_3", "evt_4"]

    def test_ready_entries(self, clock, make_subscription):
        from serenity_core.webhooks.retry import RetryQueue

        queue = RetryQueue(clock=clock, random_fn=lambda: 0.5)
        subscription = make_subscription()
        queue.enqueue(subscription, make_event())

        assert queue.ready_entries(subscription) == []
        clock.advance(seconds=1)
        assert [e.event_id for e in queue.ready_entries(subscription)] == ["evt_1"]


class TestQueueProcessor:
    """Tests for QueueProcessor."""

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, engine):
        from serenity_core.webhooks.base import SubscriptionNotFound

        with pytest.raises(SubscriptionNotFound):
            await engine.queue_processor.process_ready("whk_missing")

    @pytest.mark.asyncio
    async def test_skips_queue_already_processing(self, engine, store, clock, make_subscription):
        subscription = await engine.registry.register(make_subscription())
        async with store.lock(subscription.id):
            current = await store.get(subscription.id)
            engine.retry_queue.enqueue(current, make_event())
            current.queue.processing = True
            current.queue.processing_started_at = clock()
            await store.save(current)

        clock.advance(seconds=5)

        assert await engine.queue_processor.process_ready(subscription.id) == 0

    @pytest.mark.asyncio
    async def test_redelivers_ready_entries(self, engine, store, clock, handler, make_subscription):
        subscription = await engine.registry.register(make_subscription())
        async with store.lock(subscription.id):
            current = await store.get(subscription.id)
            engine.retry_queue.enqueue(current, make_event())
            await store.save(current)

        clock.advance(seconds=2)
        attempted = await engine.queue_processor.process_ready(subscription.id)

        stored = await store.get(subscription.id)
        assert attempted == 1
        assert handler.calls == 1
        assert handler.requests[0].headers["X-Webhook-Attempt"] == "2"
        assert stored.queue_size == 0
        assert stored.queue.processing is False
        assert stored.queue.last_processed == clock()
        assert stored.statistics.total_retries == 1

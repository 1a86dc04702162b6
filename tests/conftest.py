"""Shared pytest fixtures for testing."""

from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Callable, Dict, List

import fakeredis
import httpx
import pytest
import pytest_asyncio

from serenity_core.config import Settings
from serenity_core.webhooks.base import Subscription
from serenity_core.webhooks.store import InMemorySubscriptionStore, RedisSubscriptionStore


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingHandler:
    """MockTransport handler that records requests and replies with a fixed status."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"ok": self.status_code < 300})

    @property
    def calls(self) -> int:
        return len(self.requests)


# =============================================================================
# Core Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment."""
    return Settings(
        _env_file=None,
        storage_backend="memory",
        log_format="console",
        sweep_interval_seconds=60,
    )


@pytest.fixture
def store() -> InMemorySubscriptionStore:
    return InMemorySubscriptionStore()


@pytest.fixture
def make_subscription() -> Callable[..., Subscription]:
    """Factory for valid subscriptions built from plain config dicts."""

    def _make(**overrides: Any) -> Subscription:
        data: Dict[str, Any] = {
            "tenant_id": "tenant_1",
            "organization_id": "org_1",
            "name": "Orders endpoint",
            "target_url": "https://hooks.example.com/orders",
            "events": {"subscribed": ["order.created"]},
            "authentication": {"method": "none"},
        }
        data.update(overrides)
        return Subscription.from_dict(data)

    return _make


# =============================================================================
# Engine Fixtures
# =============================================================================


@pytest.fixture
def handler() -> RecordingHandler:
    return RecordingHandler()


@pytest_asyncio.fixture
async def engine(store, settings, clock, handler) -> AsyncGenerator:
    """Engine wired to an in-memory store, a fake clock and a mock endpoint."""
    from serenity_core.webhooks.engine import WebhookEngine

    engine = WebhookEngine(
        store,
        settings=settings,
        clock=clock,
        transport=httpx.MockTransport(handler),
        random_fn=lambda: 0.5,
    )
    yield engine
    await engine.stop()


# =============================================================================
# Redis Fixtures
# =============================================================================


@pytest.fixture
def redis_client() -> fakeredis.FakeAsyncRedis:
    """In-process Redis with its own server so tests never share keys."""
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest_asyncio.fixture
async def redis_store(redis_client) -> AsyncGenerator[RedisSubscriptionStore, None]:
    store = RedisSubscriptionStore(
        key_prefix="test:webhooks:",
        blocking_timeout=5.0,
        client=redis_client,
    )
    yield store
    await store.close()


@pytest_asyncio.fixture
async def redis_engine(redis_store, settings, clock, handler) -> AsyncGenerator:
    """Engine wired to the Redis store."""
    from serenity_core.webhooks.engine import WebhookEngine

    engine = WebhookEngine(
        redis_store,
        settings=settings,
        clock=clock,
        transport=httpx.MockTransport(handler),
        random_fn=lambda: 0.5,
    )
    yield engine
    await engine.stop()

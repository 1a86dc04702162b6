"""
Subscription Storage
====================

Persistence for subscriptions and the per-subscription lock that serializes
updates to their runtime state (statistics, circuit breaker, retry queue,
rate limit counters).

Two backends are provided:

- ``InMemorySubscriptionStore`` for a single process and for tests
- ``RedisSubscriptionStore`` for horizontally scaled workers; documents live in
  a Redis hash and the lock is a Redis lock, so counters and breaker state are
  shared across processes
"""

from __future__ import annotations

import asyncio
import copy
import json
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

import redis.asyncio as redis
import structlog
from redis.exceptions import LockError

from .base import Subscription, WebhookUnavailable

logger = structlog.get_logger(__name__)


class SubscriptionStore(ABC):
    """
    Base class for subscription stores.

    Usage:
        async with store.lock(subscription_id):
            subscription = await store.get(subscription_id)
            ...mutate...
            await store.save(subscription)
    """

    @abstractmethod
    async def get(self, subscription_id: str) -> Optional[Subscription]:
        """Load a subscription by id"""
        pass

    @abstractmethod
    async def save(self, subscription: Subscription) -> None:
        """Persist a subscription"""
        pass

    @abstractmethod
    async def delete(self, subscription_id: str) -> bool:
        """Remove a subscription"""
        pass

    @abstractmethod
    async def list(
        self,
        tenant_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> List[Subscription]:
        """List subscriptions, optionally scoped to a tenant/organization"""
        pass

    @abstractmethod
    def lock(self, subscription_id: str, wait_forever: bool = False):
        """Async context manager holding the subscription's single-writer lock.

        Acquisition gives up after the backend's blocking timeout unless
        ``wait_forever`` is set. Writers recording work that already happened
        must wait.
        """
        pass

    async def close(self) -> None:
        """Release backend resources"""
        return None

    @staticmethod
    def _matches_scope(
        subscription: Subscription,
        tenant_id: Optional[str],
        organization_id: Optional[str],
    ) -> bool:
        if tenant_id is not None and subscription.tenant_id != tenant_id:
            return False
        if organization_id is not None and subscription.organization_id != organization_id:
            return False
        return True


class InMemorySubscriptionStore(SubscriptionStore):
    """In-memory store for development and tests.

    Warning: This does not work across multiple instances!
    Use RedisSubscriptionStore in production.
    """

    def __init__(self):
        self._documents: Dict[str, Subscription] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def get(self, subscription_id: str) -> Optional[Subscription]:
        subscription = self._documents.get(subscription_id)
        return copy.deepcopy(subscription) if subscription else None

    async def save(self, subscription: Subscription) -> None:
        self._documents[subscription.id] = copy.deepcopy(subscription)

    async def delete(self, subscription_id: str) -> bool:
        self._locks.pop(subscription_id, None)
        return self._documents.pop(subscription_id, None) is not None

    async def list(
        self,
        tenant_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> List[Subscription]:
        return [
            copy.deepcopy(s)
            for s in self._documents.values()
            if self._matches_scope(s, tenant_id, organization_id)
        ]

    @asynccontextmanager
    async def lock(self, subscription_id: str, wait_forever: bool = False) -> AsyncIterator[None]:
        lock = self._locks.setdefault(subscription_id, asyncio.Lock())
        async with lock:
            yield


class RedisSubscriptionStore(SubscriptionStore):
    """Redis-backed store shared by every worker.

    Subscriptions are JSON documents in one hash. Each subscription has its
    own Redis lock so state updates are atomic across processes.

    Example:
        store = RedisSubscriptionStore(redis_url="redis://localhost:6379/0")
        await store.connect()
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        key_prefix: str = "webhooks:",
        lock_timeout: float = 30.0,
        blocking_timeout: float = 10.0,
        client: Optional[redis.Redis] = None,
    ):
        self._redis_url = redis_url
        self._key_prefix = key_prefix
        self._lock_timeout = lock_timeout
        self._blocking_timeout = blocking_timeout
        self._redis: Optional[redis.Redis] = client

    @property
    def _hash_key(self) -> str:
        return f"{self._key_prefix}subscriptions"

    def _lock_key(self, subscription_id: str) -> str:
        return f"{self._key_prefix}lock:{subscription_id}"

    async def connect(self) -> None:
        """Open the Redis connection"""
        if self._redis is None:
            self._redis = redis.from_url(self._redis_url, decode_responses=True)
            logger.info("subscription_store_connected", url=self._redis_url)

    @property
    def client(self) -> redis.Redis:
        if self._redis is None:
            raise RuntimeError("Store not connected")
        return self._redis

    async def get(self, subscription_id: str) -> Optional[Subscription]:
        raw = await self.client.hget(self._hash_key, subscription_id)
        if raw is None:
            return None
        return Subscription.from_dict(json.loads(raw))

    async def save(self, subscription: Subscription) -> None:
        await self.client.hset(
            self._hash_key,
            subscription.id,
            json.dumps(subscription.to_dict(include_secrets=True)),
        )

    async def delete(self, subscription_id: str) -> bool:
        removed = await self.client.hdel(self._hash_key, subscription_id)
        return bool(removed)

    async def list(
        self,
        tenant_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> List[Subscription]:
        documents = await self.client.hgetall(self._hash_key)
        subscriptions = []
        for subscription_id, raw in documents.items():
            try:
                subscription = Subscription.from_dict(json.loads(raw))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(
                    "subscription_decode_failed",
                    subscription_id=subscription_id,
                    error=str(e),
                )
                continue
            if self._matches_scope(subscription, tenant_id, organization_id):
                subscriptions.append(subscription)
        return subscriptions

    @asynccontextmanager
    async def lock(self, subscription_id: str, wait_forever: bool = False) -> AsyncIterator[None]:
        lock = self.client.lock(
            self._lock_key(subscription_id),
            timeout=self._lock_timeout,
            blocking_timeout=None if wait_forever else self._blocking_timeout,
        )
        acquired = await lock.acquire()
        if not acquired:
            raise WebhookUnavailable(
                f"Subscription {subscription_id} is locked by another worker",
                reason="locked",
            )
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                logger.warning("subscription_lock_expired", subscription_id=subscription_id)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.close()
            self._redis = None


def create_store(settings) -> SubscriptionStore:
    """Build the store selected by ``settings.storage_backend``."""
    if settings.storage_backend == "redis":
        return RedisSubscriptionStore(
            redis_url=settings.redis_url,
            key_prefix=settings.redis_key_prefix,
            lock_timeout=settings.lock_timeout_seconds,
            blocking_timeout=settings.lock_blocking_timeout_seconds,
        )
    return InMemorySubscriptionStore()

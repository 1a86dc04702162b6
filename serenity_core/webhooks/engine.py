"""Wiring for the webhook delivery engine."""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
import structlog

from serenity_core.config import Settings, get_settings

from .base import DeliveryResult, WebhookEvent
from .circuit import SubscriptionCircuitBreaker
from .delivery import DeliveryExecutor
from .dispatcher import WebhookDispatcher
from .health import HealthTracker
from .ratelimit import SubscriptionRateLimiter
from .registry import SubscriptionRegistry
from .retry import QueueProcessor, RetryQueue
from .signing import AuthProvider, ClientCredentialsTokenProvider
from .store import RedisSubscriptionStore, SubscriptionStore, create_store
from .transform import PayloadTransformer, ScriptRunner
from .worker import WebhookSweeper

logger = structlog.get_logger(__name__)


class WebhookEngine:
    """
    Owns every engine component and their lifecycle.

    Usage:
        engine = WebhookEngine.from_settings()
        await engine.start()
        results = await engine.dispatch({"type": "payment.succeeded", ...})
        await engine.stop()
    """

    def __init__(
        self,
        store: SubscriptionStore,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        script_runner: Optional[ScriptRunner] = None,
        random_fn: Optional[Callable[[], float]] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store

        breaker = SubscriptionCircuitBreaker(clock=clock)
        self.tracker = HealthTracker(
            circuit_breaker=breaker,
            clock=clock,
            history_limit=self.settings.delivery_history_limit,
            auto_suspend_threshold=self.settings.auto_suspend_threshold,
            auto_suspend_seconds=self.settings.auto_suspend_seconds,
        )
        retry_kwargs = {"random_fn": random_fn} if random_fn else {}
        self.retry_queue = RetryQueue(clock=clock, **retry_kwargs)
        self.token_provider = ClientCredentialsTokenProvider(
            transport=transport,
            refresh_margin_seconds=self.settings.oauth2_token_refresh_margin_seconds,
            clock=clock,
        )

        self.registry = SubscriptionRegistry(
            store,
            tracker=self.tracker,
            clock=clock,
            default_max_queue_size=self.settings.default_max_queue_size,
        )
        self.executor = DeliveryExecutor(
            store,
            auth_provider=AuthProvider(token_provider=self.token_provider),
            transformer=PayloadTransformer(script_runner=script_runner),
            rate_limiter=SubscriptionRateLimiter(clock=clock),
            tracker=self.tracker,
            retry_queue=self.retry_queue,
            clock=clock,
            transport=transport,
            max_concurrent_deliveries=self.settings.max_concurrent_deliveries,
            user_agent=self.settings.user_agent,
        )
        self.dispatcher = WebhookDispatcher(self.registry, self.executor)
        self.queue_processor = QueueProcessor(
            store,
            self.executor,
            retry_queue=self.retry_queue,
            clock=clock,
            stale_after_seconds=self.settings.queue_processing_stale_seconds,
        )
        self.sweeper = WebhookSweeper(
            store,
            self.queue_processor,
            tracker=self.tracker,
            interval_seconds=self.settings.sweep_interval_seconds,
            health_stale_seconds=self.settings.health_stale_seconds,
            processing_stale_seconds=self.settings.queue_processing_stale_seconds,
            clock=clock,
        )

        # Cached tokens are tied to the old credentials
        self.registry.on_security_change(
            lambda subscription, changed, actor: self.token_provider.invalidate(subscription.id)
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs: Any) -> "WebhookEngine":
        settings = settings or get_settings()
        return cls(create_store(settings), settings=settings, **kwargs)

    async def start(self, run_sweeper: bool = True) -> None:
        if isinstance(self.store, RedisSubscriptionStore):
            await self.store.connect()
        await self.executor.start()
        if run_sweeper:
            await self.sweeper.start()
        logger.info("webhook_engine_started", storage=self.settings.storage_backend)

    async def stop(self) -> None:
        await self.sweeper.stop()
        await self.dispatcher.drain(timeout=30)
        await self.executor.stop()
        await self.token_provider.close()
        await self.store.close()
        logger.info("webhook_engine_stopped")

    async def dispatch(self, event: Union[WebhookEvent, Dict[str, Any]]) -> List[DeliveryResult]:
        return await self.dispatcher.dispatch(event)

    async def test(self, subscription_id: str) -> DeliveryResult:
        return await self.executor.test(subscription_id)

    async def process_queue(self, subscription_id: str) -> int:
        return await self.queue_processor.process_ready(subscription_id)

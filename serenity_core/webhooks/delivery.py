"""
Delivery Executor
=================

Performs one HTTP delivery attempt for a subscription and folds the outcome
back into its persisted state.

A delivery runs in three phases:

1. Gate (under the subscription lock): auto-resume, circuit breaker,
   availability and rate limit checks. Rate limit consumption is persisted.
2. Attempt (no lock held): transform, serialize, compress, sign and send.
   The subscription's timeout is enforced locally.
3. Record (under the subscription lock): statistics, health, circuit breaker,
   auto-suspension and retry queue.

Author: Platform Engineering Team
Version: 1.0.0
"""

from __future__ import annotations

import asyncio
import gzip
import ssl
import time
import zlib
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import structlog

from .base import (
    DEFAULT_USER_AGENT,
    TEST_EVENT_TYPE,
    CircuitState,
    CompressionAlgorithm,
    ConfigurationError,
    DeliveryAttempt,
    DeliveryFailure,
    DeliveryResult,
    RateLimitExceeded,
    Subscription,
    SubscriptionNotFound,
    SubscriptionState,
    TestEndpoint,
    TestResult,
    TlsVersion,
    WebhookEvent,
    WebhookUnavailable,
    generate_id,
    utcnow,
)
from .circuit import SubscriptionCircuitBreaker
from .health import HealthTracker
from .ratelimit import SubscriptionRateLimiter
from .retry import RetryQueue
from .signing import AuthProvider
from .store import SubscriptionStore
from .transform import PayloadTransformer

logger = structlog.get_logger(__name__)


def build_ssl_context(reject_unauthorized: bool, min_version: TlsVersion) -> ssl.SSLContext:
    """SSL context honouring a subscription's TLS policy."""
    context = ssl.create_default_context()
    if not reject_unauthorized:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    context.minimum_version = (
        ssl.TLSVersion.TLSv1_3 if min_version == TlsVersion.TLS_1_3 else ssl.TLSVersion.TLSv1_2
    )
    return context


def compress_body(body: bytes, algorithm: CompressionAlgorithm) -> bytes:
    if algorithm == CompressionAlgorithm.DEFLATE:
        return zlib.compress(body)
    return gzip.compress(body)


class DeliveryExecutor:
    """
    Delivers events to subscription endpoints.

    Features:
    - Async HTTP delivery with per-subscription timeouts and TLS policy
    - Authentication and payload transformation per subscription
    - Statistics, health and circuit breaker updates on every attempt
    - Retry queue hand-off for retryable failures

    Usage:
        executor = DeliveryExecutor(store)
        await executor.start()
        result = await executor.deliver(subscription_id, event)
    """

    def __init__(
        self,
        store: SubscriptionStore,
        auth_provider: Optional[AuthProvider] = None,
        transformer: Optional[PayloadTransformer] = None,
        rate_limiter: Optional[SubscriptionRateLimiter] = None,
        tracker: Optional[HealthTracker] = None,
        retry_queue: Optional[RetryQueue] = None,
        clock: Optional[Callable[[], datetime]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_concurrent_deliveries: int = 100,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self.store = store
        self._clock = clock or utcnow
        self.auth_provider = auth_provider or AuthProvider()
        self.transformer = transformer or PayloadTransformer()
        self.rate_limiter = rate_limiter or SubscriptionRateLimiter(clock=self._clock)
        self.tracker = tracker or HealthTracker(clock=self._clock)
        self.retry_queue = retry_queue or RetryQueue(clock=self._clock)
        self.user_agent = user_agent

        self._transport = transport
        self._clients: Dict[Tuple[bool, str], httpx.AsyncClient] = {}
        self._delivery_semaphore = asyncio.Semaphore(max_concurrent_deliveries)

        # Callbacks
        self._on_delivery_success: List[Callable[[Subscription, DeliveryAttempt], Any]] = []
        self._on_delivery_failure: List[Callable[[Subscription, DeliveryAttempt], Any]] = []

    @property
    def circuit_breaker(self) -> SubscriptionCircuitBreaker:
        return self.tracker.circuit_breaker

    async def start(self) -> None:
        logger.info("delivery_executor_started")

    async def stop(self) -> None:
        """Close pooled HTTP clients."""
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()
        logger.info("delivery_executor_stopped")

    def on_delivery_success(self, callback: Callable[[Subscription, DeliveryAttempt], Any]) -> None:
        self._on_delivery_success.append(callback)

    def on_delivery_failure(self, callback: Callable[[Subscription, DeliveryAttempt], Any]) -> None:
        self._on_delivery_failure.append(callback)

    # =========================================================================
    # Delivery
    # =========================================================================

    async def deliver(
        self,
        subscription_id: str,
        event: WebhookEvent,
        from_queue: bool = False,
        enqueue_on_failure: bool = True,
    ) -> DeliveryResult:
        """
        Deliver one event to one subscription.

        Args:
            subscription_id: Target subscription
            event: The event to deliver
            from_queue: True when re-driven by the queue processor
            enqueue_on_failure: Hand retryable failures to the retry queue

        Returns:
            DeliveryResult for the attempt. HTTP and network failures are
            reported here, never raised.

        Raises:
            SubscriptionNotFound: Unknown subscription
            WebhookUnavailable: Inactive, suspended or breaker open
            RateLimitExceeded: A rate limit window is saturated
        """
        snapshot, attempt_number = await self._acquire_slot(subscription_id, event, from_queue)

        async with self._delivery_semaphore:
            attempt = await self._attempt(snapshot, event, attempt_number)

        subscription = await self._record(subscription_id, event, attempt, from_queue, enqueue_on_failure)
        await self._notify(subscription or snapshot, attempt)

        return DeliveryResult(
            subscription_id=subscription_id,
            success=attempt.success,
            status_code=attempt.status_code,
            response_time_ms=attempt.response_time_ms,
            error=attempt.error,
            delivery_id=attempt.delivery_id,
            attempt_number=attempt.attempt_number,
        )

    async def _acquire_slot(
        self,
        subscription_id: str,
        event: WebhookEvent,
        from_queue: bool,
    ) -> Tuple[Subscription, int]:
        async with self.store.lock(subscription_id):
            subscription = await self.store.get(subscription_id)
            if subscription is None:
                raise SubscriptionNotFound(f"Subscription {subscription_id} not found")

            self.tracker.resume_if_due(subscription)
            self.rate_limiter.refresh(subscription)
            breaker_allows = self.circuit_breaker.can_attempt(subscription)

            reason = self._unavailable_reason(subscription, breaker_allows)
            if reason is not None:
                await self.store.save(subscription)
                logger.info(
                    "delivery_skipped",
                    subscription_id=subscription_id,
                    event_id=event.id,
                    reason=reason,
                )
                raise WebhookUnavailable(
                    f"Subscription {subscription_id} cannot deliver: {reason}",
                    reason=reason,
                )

            try:
                self.rate_limiter.check_and_consume(subscription)
                self.circuit_breaker.begin_attempt(subscription)
            finally:
                await self.store.save(subscription)

            entry = subscription.queue.find(event.id) if from_queue else None
            attempt_number = entry.attempt_count + 1 if entry else 1
            return subscription, attempt_number

    @staticmethod
    def _unavailable_reason(subscription: Subscription, breaker_allows: bool) -> Optional[str]:
        if subscription.status.suspension.suspended:
            return "suspended"
        if subscription.status.state != SubscriptionState.ACTIVE:
            return subscription.status.state.value
        if not breaker_allows:
            if subscription.circuit_breaker.state == CircuitState.HALF_OPEN:
                return "circuit_half_open"
            return "circuit_open"
        return None

    async def _attempt(
        self,
        subscription: Subscription,
        event: WebhookEvent,
        attempt_number: int,
    ) -> DeliveryAttempt:
        """Build and send the HTTP request, classifying the outcome."""
        attempt = DeliveryAttempt(
            event_id=event.id,
            event_type=event.type,
            attempt_number=attempt_number,
            success=False,
            timestamp=self._clock(),
        )
        log = logger.bind(
            subscription_id=subscription.id,
            event_id=event.id,
            event_type=event.type,
            attempt=attempt_number,
        )

        try:
            body, headers, auth = await self._build_request(subscription, event, attempt)
        except ConfigurationError as e:
            attempt.error = e.message
            attempt.retryable = False
            log.error("delivery_misconfigured", error=e.message)
            return attempt
        except DeliveryFailure as e:
            attempt.error = e.message
            attempt.status_code = e.response_status
            log.warning("delivery_failed", error=e.message)
            return attempt

        request_config = subscription.request
        timeout = request_config.timeout_ms / 1000
        client = self._get_client(subscription)

        start_time = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                client.request(
                    request_config.method.value,
                    subscription.target_url,
                    content=body,
                    headers=headers,
                    auth=auth,
                    timeout=timeout,
                ),
                timeout=timeout,
            )
            attempt.status_code = response.status_code
            attempt.success = 200 <= response.status_code < 300
            if not attempt.success:
                attempt.error = f"HTTP {response.status_code}"
                attempt.retryable = response.status_code in subscription.retry.retryable_status_codes
        except (asyncio.TimeoutError, httpx.TimeoutException):
            attempt.error = f"Request timeout after {request_config.timeout_ms}ms"
        except httpx.HTTPError as e:
            attempt.error = str(e) or type(e).__name__
        finally:
            attempt.response_time_ms = (time.perf_counter() - start_time) * 1000

        if attempt.success:
            log.info(
                "delivery_succeeded",
                status_code=attempt.status_code,
                response_time_ms=round(attempt.response_time_ms, 2),
            )
        else:
            log.warning(
                "delivery_failed",
                status_code=attempt.status_code,
                error=attempt.error,
                retryable=attempt.retryable,
            )
        return attempt

    async def _build_request(
        self,
        subscription: Subscription,
        event: WebhookEvent,
        attempt: DeliveryAttempt,
    ) -> Tuple[bytes, Dict[str, str], Optional[Tuple[str, str]]]:
        payload = await self.transformer.transform(subscription, event.data)
        rendered = self.transformer.render(subscription, payload)

        max_size = subscription.request.max_payload_size
        if rendered.size > max_size:
            raise ConfigurationError(
                f"Payload size {rendered.size} exceeds maximum {max_size} bytes"
            )

        headers = {"User-Agent": self.user_agent}
        headers.update(subscription.request.headers)
        headers["Content-Type"] = rendered.content_type
        headers.update({
            "X-Webhook-Id": attempt.delivery_id,
            "X-Webhook-Event": event.type,
            "X-Webhook-Event-Id": event.id,
            "X-Webhook-Attempt": str(attempt.attempt_number),
        })

        augmentation = await self.auth_provider.sign(subscription, rendered.body)
        headers.update(augmentation.headers)

        body = rendered.body
        compression = subscription.request.compression
        if compression.enabled:
            body = compress_body(body, compression.algorithm)
            headers["Content-Encoding"] = compression.algorithm.value

        return body, headers, augmentation.auth

    def _get_client(self, subscription: Subscription) -> httpx.AsyncClient:
        """Pooled client per TLS policy."""
        tls = subscription.request.tls
        verify = tls.reject_unauthorized and subscription.validation.validate_ssl
        key = (verify, tls.min_version.value)

        client = self._clients.get(key)
        if client is None:
            client = httpx.AsyncClient(
                verify=build_ssl_context(verify, tls.min_version),
                follow_redirects=False,
                transport=self._transport,
            )
            self._clients[key] = client
        return client

    async def _record(
        self,
        subscription_id: str,
        event: WebhookEvent,
        attempt: DeliveryAttempt,
        from_queue: bool,
        enqueue_on_failure: bool,
    ) -> Optional[Subscription]:
        async with self.store.lock(subscription_id, wait_forever=True):
            subscription = await self.store.get(subscription_id)
            if subscription is None:
                logger.warning(
                    "delivery_outcome_dropped",
                    subscription_id=subscription_id,
                    event_id=event.id,
                    reason="subscription deleted",
                )
                return None

            self.tracker.record(subscription, attempt)
            if from_queue:
                subscription.statistics.total_retries += 1

            if attempt.success:
                subscription.queue.remove(event.id)
            elif (
                enqueue_on_failure
                and attempt.retryable
                and subscription.retry.enabled
                and subscription.retry.max_retries > 0
            ):
                self.retry_queue.enqueue(subscription, event)
            elif subscription.queue.remove(event.id):
                logger.info(
                    "delivery_abandoned",
                    subscription_id=subscription_id,
                    event_id=event.id,
                    error=attempt.error,
                )

            subscription.updated_at = self._clock()
            await self.store.save(subscription)
            return subscription

    async def _notify(self, subscription: Subscription, attempt: DeliveryAttempt) -> None:
        callbacks = self._on_delivery_success if attempt.success else self._on_delivery_failure
        for callback in callbacks:
            try:
                result = callback(subscription, attempt)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(
                    "delivery_callback_error",
                    subscription_id=subscription.id,
                    error=str(e),
                )

    # =========================================================================
    # Test delivery
    # =========================================================================

    async def test(self, subscription_id: str) -> DeliveryResult:
        """
        Send a synthetic ``webhook.test`` event through the full pipeline.

        The outcome is stored under ``validation.test_endpoint``. Gate errors
        (unavailable, rate limited) are recorded and re-raised.
        """
        subscription = await self.store.get(subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(f"Subscription {subscription_id} not found")

        event = WebhookEvent(
            id=generate_id("test_"),
            type=TEST_EVENT_TYPE,
            tenant_id=subscription.tenant_id,
            organization_id=subscription.organization_id,
            data={
                "webhook_id": subscription_id,
                "timestamp": self._clock().isoformat(),
                "message": "This is a test webhook delivery",
            },
        )

        try:
            result = await self.deliver(subscription_id, event, enqueue_on_failure=False)
        except (WebhookUnavailable, RateLimitExceeded) as e:
            await self._store_test_result(subscription_id, TestResult(success=False, error=e.message))
            raise

        await self._store_test_result(
            subscription_id,
            TestResult(
                success=result.success,
                status_code=result.status_code,
                response_time_ms=result.response_time_ms,
                error=result.error,
            ),
        )
        logger.info(
            "webhook_tested",
            subscription_id=subscription_id,
            success=result.success,
            status_code=result.status_code,
        )
        return result

    async def _store_test_result(self, subscription_id: str, test_result: TestResult) -> None:
        async with self.store.lock(subscription_id, wait_forever=True):
            subscription = await self.store.get(subscription_id)
            if subscription is None:
                return
            subscription.validation.test_endpoint = TestEndpoint(
                last_tested=self._clock(),
                test_result=test_result,
            )
            await self.store.save(subscription)

"""
Retry Queue
===========

Bounded per-subscription queue of failed deliveries with exponential backoff
and jitter, plus the processor that re-drives ready entries through the
delivery executor.

Backoff:
    delay = min(initial_delay * multiplier ** (attempt - 1), max_delay)
    delay += (random() - 0.5) * 2 * delay * jitter_factor   # when jitter is on

Author: Platform Engineering Team
Version: 1.0.0
"""

from __future__ import annotations

import random
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, List, Optional

import structlog

from .base import (
    QueueEntry,
    RetryConfig,
    RetryExhausted,
    Subscription,
    SubscriptionNotFound,
    WebhookError,
    WebhookEvent,
    utcnow,
)

if TYPE_CHECKING:
    from .delivery import DeliveryExecutor
    from .store import SubscriptionStore

logger = structlog.get_logger(__name__)


def compute_backoff_ms(
    config: RetryConfig,
    attempt: int,
    random_fn: Callable[[], float] = random.random,
) -> float:
    """
    Delay before retry number ``attempt`` (1-based), in milliseconds.

    Args:
        config: The subscription's retry policy
        attempt: Attempt count of the queue entry
        random_fn: Uniform [0, 1) source used for jitter
    """
    delay = config.initial_delay_ms * (config.backoff_multiplier ** (attempt - 1))
    delay = min(delay, config.max_delay_ms)

    if config.jitter.enabled:
        delay += (random_fn() - 0.5) * 2 * delay * config.jitter.factor

    return max(0.0, delay)


class RetryQueue:
    """
    Enqueue/trim logic for ``subscription.queue``.

    The caller holds the subscription lock and persists the subscription.
    """

    def __init__(
        self,
        clock: Optional[Callable[[], datetime]] = None,
        random_fn: Callable[[], float] = random.random,
    ):
        self._clock = clock or utcnow
        self._random = random_fn

    def next_attempt_time(self, subscription: Subscription, attempt: int) -> datetime:
        delay_ms = compute_backoff_ms(subscription.retry, attempt, self._random)
        return self._clock() + timedelta(milliseconds=delay_ms)

    def enqueue(self, subscription: Subscription, event: WebhookEvent) -> Optional[QueueEntry]:
        """
        Schedule a failed event for another attempt.

        An existing entry for the event has its attempt count bumped and is
        rescheduled while within ``max_retries``; past that it is dropped.
        New events get an entry with ``attempt_count = 1``.

        Returns:
            The scheduled entry, or None if the event was dropped
        """
        queue = subscription.queue
        retry = subscription.retry
        entry = queue.find(event.id)

        if entry is not None:
            entry.attempt_count += 1
            if entry.attempt_count <= retry.max_retries:
                entry.next_attempt = self.next_attempt_time(subscription, entry.attempt_count)
                logger.info(
                    "delivery_rescheduled",
                    subscription_id=subscription.id,
                    event_id=event.id,
                    attempt_count=entry.attempt_count,
                    next_attempt=entry.next_attempt.isoformat(),
                )
                return entry

            queue.remove(event.id)
            exhausted = RetryExhausted(
                f"Event {event.id} dropped after {entry.attempt_count - 1} retries",
                event_id=event.id,
                attempts=entry.attempt_count,
            )
            logger.warning(
                "retry_exhausted",
                subscription_id=subscription.id,
                event_id=event.id,
                event_type=event.type,
                attempts=exhausted.attempts,
                code=exhausted.code,
            )
            return None

        entry = QueueEntry(
            event_id=event.id,
            event_type=event.type,
            payload=event.data,
            attempt_count=1,
            next_attempt=self.next_attempt_time(subscription, 1),
            added_at=self._clock(),
            tenant_id=event.tenant_id,
            organization_id=event.organization_id,
        )
        queue.pending.append(entry)
        self._trim(subscription)
        logger.info(
            "delivery_enqueued",
            subscription_id=subscription.id,
            event_id=event.id,
            next_attempt=entry.next_attempt.isoformat(),
            queue_size=len(queue.pending),
        )
        return entry

    def _trim(self, subscription: Subscription) -> None:
        """Drop the oldest entries beyond ``max_queue_size``."""
        queue = subscription.queue
        overflow = len(queue.pending) - queue.max_queue_size
        if overflow > 0:
            dropped = queue.pending[:overflow]
            del queue.pending[:overflow]
            logger.warning(
                "queue_trimmed",
                subscription_id=subscription.id,
                dropped=[e.event_id for e in dropped],
            )

    def ready_entries(self, subscription: Subscription, now: Optional[datetime] = None) -> List[QueueEntry]:
        now = now or self._clock()
        return [
            e for e in subscription.queue.pending
            if e.next_attempt is None or e.next_attempt <= now
        ]


class QueueProcessor:
    """
    Drains ready queue entries for one subscription at a time.

    The persisted ``queue.processing`` flag makes re-entrant drains for the
    same subscription no-ops, across workers as well as within one process.
    """

    def __init__(
        self,
        store: "SubscriptionStore",
        executor: "DeliveryExecutor",
        retry_queue: Optional[RetryQueue] = None,
        clock: Optional[Callable[[], datetime]] = None,
        stale_after_seconds: int = 300,
    ):
        self.store = store
        self.executor = executor
        self._clock = clock or utcnow
        self.retry_queue = retry_queue or RetryQueue(clock=self._clock)
        self.stale_after = timedelta(seconds=stale_after_seconds)

    async def process_ready(
        self,
        subscription_id: str,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Re-attempt every entry whose ``next_attempt`` has passed.

        Returns:
            Number of entries attempted
        """
        now = now or self._clock()

        async with self.store.lock(subscription_id):
            subscription = await self.store.get(subscription_id)
            if subscription is None:
                raise SubscriptionNotFound(f"Subscription {subscription_id} not found")
            if subscription.queue.processing and not self._is_stale(subscription):
                logger.debug("queue_already_processing", subscription_id=subscription_id)
                return 0

            ready = self.retry_queue.ready_entries(subscription, now)
            if not ready:
                return 0

            subscription.queue.processing = True
            subscription.queue.processing_started_at = self._clock()
            await self.store.save(subscription)

        attempted = 0
        try:
            for entry in ready:
                event = WebhookEvent(
                    id=entry.event_id,
                    type=entry.event_type,
                    tenant_id=entry.tenant_id or subscription.tenant_id,
                    organization_id=entry.organization_id or subscription.organization_id,
                    data=entry.payload,
                )
                attempted += 1
                try:
                    await self.executor.deliver(subscription_id, event, from_queue=True)
                except WebhookError as e:
                    logger.error(
                        "queued_delivery_failed",
                        subscription_id=subscription_id,
                        event_id=entry.event_id,
                        error=e.message,
                        code=e.code,
                    )
        finally:
            async with self.store.lock(subscription_id):
                subscription = await self.store.get(subscription_id)
                if subscription is not None:
                    subscription.queue.processing = False
                    subscription.queue.processing_started_at = None
                    subscription.queue.last_processed = self._clock()
                    await self.store.save(subscription)

        logger.info(
            "queue_processed",
            subscription_id=subscription_id,
            attempted=attempted,
        )
        return attempted

    def _is_stale(self, subscription: Subscription) -> bool:
        started = subscription.queue.processing_started_at
        return started is None or self._clock() - started > self.stale_after

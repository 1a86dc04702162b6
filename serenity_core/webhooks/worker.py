"""Background sweeper for webhook maintenance.

Runs on a fixed interval:
- auto-resumes subscriptions whose suspension has expired
- reclaims queue ``processing`` flags left behind by crashed workers
- refreshes health snapshots that have not been checked recently
- drains every non-empty retry queue concurrently
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog

from .base import Subscription, WebhookError, utcnow
from .health import HealthTracker
from .retry import QueueProcessor
from .store import SubscriptionStore

logger = structlog.get_logger(__name__)


class WebhookSweeper:
    """
    Periodic maintenance worker.

    Features:
    - Idempotent sweeps, safe to run from several processes
    - Queues drained concurrently, one drain per subscription at a time
    - Graceful shutdown
    """

    def __init__(
        self,
        store: SubscriptionStore,
        queue_processor: QueueProcessor,
        tracker: Optional[HealthTracker] = None,
        interval_seconds: float = 5.0,
        health_stale_seconds: int = 3600,
        processing_stale_seconds: int = 300,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.queue_processor = queue_processor
        self._clock = clock or utcnow
        self.tracker = tracker or HealthTracker(clock=self._clock)
        self.interval_seconds = interval_seconds
        self.health_stale = timedelta(seconds=health_stale_seconds)
        self.processing_stale = timedelta(seconds=processing_stale_seconds)

        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the sweep loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("webhook_sweeper_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Stop the sweep loop gracefully."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("webhook_sweeper_stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("webhook_sweep_failed", error=str(e), exc_info=True)
            await asyncio.sleep(self.interval_seconds)

    async def run_once(self) -> Dict[str, Any]:
        """Run every maintenance step once and return a summary."""
        summary = {
            "resumed": await self.resume_suspended(),
            "reclaimed": await self.reclaim_stale_processing(),
            "health_refreshed": await self.refresh_stale_health(),
        }
        summary.update(await self.process_all_queues())
        logger.debug("webhook_sweep_completed", **summary)
        return summary

    async def _update_each(
        self,
        predicate: Callable[[Subscription], bool],
        mutate: Callable[[Subscription], bool],
    ) -> int:
        """Apply ``mutate`` under lock to every subscription matching ``predicate``."""
        updated = 0
        for candidate in await self.store.list():
            if not predicate(candidate):
                continue
            try:
                async with self.store.lock(candidate.id):
                    subscription = await self.store.get(candidate.id)
                    if subscription is None or not predicate(subscription):
                        continue
                    if mutate(subscription):
                        await self.store.save(subscription)
                        updated += 1
            except WebhookError as e:
                logger.warning("sweep_step_skipped", subscription_id=candidate.id, error=e.message)
        return updated

    async def resume_suspended(self) -> int:
        """Auto-resume suspensions whose ``suspended_until`` has passed."""
        now = self._clock()

        def due(s: Subscription) -> bool:
            suspension = s.status.suspension
            return (
                suspension.suspended
                and suspension.auto_resume
                and suspension.suspended_until is not None
                and suspension.suspended_until <= now
            )

        resumed = await self._update_each(due, self.tracker.resume_if_due)
        if resumed:
            logger.info("webhooks_auto_resumed", count=resumed)
        return resumed

    async def reclaim_stale_processing(self) -> int:
        """Clear queue processing flags older than the stale cutoff."""
        now = self._clock()

        def stale(s: Subscription) -> bool:
            started = s.queue.processing_started_at
            return s.queue.processing and (started is None or now - started > self.processing_stale)

        def reclaim(s: Subscription) -> bool:
            logger.warning("queue_processing_reclaimed", subscription_id=s.id)
            s.queue.processing = False
            s.queue.processing_started_at = None
            return True

        return await self._update_each(stale, reclaim)

    async def refresh_stale_health(self) -> int:
        """Recompute health for snapshots not checked within the staleness window."""

        def stale(s: Subscription) -> bool:
            return self.tracker.is_stale(s, self.health_stale)

        def refresh(s: Subscription) -> bool:
            self.tracker.update_health(s)
            return True

        return await self._update_each(stale, refresh)

    async def process_all_queues(self) -> Dict[str, int]:
        """Drain ready entries of every idle, non-empty queue concurrently."""
        now = self._clock()
        candidates: List[Subscription] = [
            s for s in await self.store.list()
            if s.queue.pending and not s.queue.processing
        ]
        if not candidates:
            return {"queues_processed": 0, "queues_failed": 0}

        results = await asyncio.gather(
            *(self.queue_processor.process_ready(s.id, now) for s in candidates),
            return_exceptions=True,
        )
        failed = 0
        for subscription, result in zip(candidates, results):
            if isinstance(result, Exception):
                failed += 1
                logger.error(
                    "queue_processing_failed",
                    subscription_id=subscription.id,
                    error=str(result),
                )

        processed = len(results) - failed
        logger.info("queues_processed", processed=processed, failed=failed)
        return {"queues_processed": processed, "queues_failed": failed}

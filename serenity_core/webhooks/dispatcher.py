"""Event dispatch to matching webhook subscriptions."""

import asyncio
from typing import Any, Dict, List, Optional, Set, Union

import structlog

from .base import DeliveryResult, WebhookError, WebhookEvent
from .delivery import DeliveryExecutor
from .registry import SubscriptionRegistry

logger = structlog.get_logger(__name__)


class WebhookDispatcher:
    """
    Fans an event out to every subscription that wants it.

    Deliveries run as independent tasks. One subscription's failure never
    affects another, and a caller that stops waiting (cancellation) does not
    cancel deliveries already in flight.
    """

    def __init__(self, registry: SubscriptionRegistry, executor: DeliveryExecutor):
        self.registry = registry
        self.executor = executor
        self._in_flight: Set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def dispatch(self, event: Union[WebhookEvent, Dict[str, Any]]) -> List[DeliveryResult]:
        """
        Deliver an event to all matching subscriptions.

        Args:
            event: A WebhookEvent or a dict with id, type, tenant_id,
                organization_id and data

        Returns:
            One DeliveryResult per matching subscription
        """
        if isinstance(event, dict):
            event = WebhookEvent.from_dict(event)

        subscriptions = await self.registry.find_matching(
            event.tenant_id,
            event.organization_id,
            event.type,
            event.data,
        )
        if not subscriptions:
            logger.debug("no_matching_subscriptions", event_id=event.id, event_type=event.type)
            return []

        tasks = [self._spawn(self._deliver_one(s.id, event)) for s in subscriptions]
        results = await asyncio.shield(asyncio.gather(*tasks))

        logger.info(
            "event_dispatched",
            event_id=event.id,
            event_type=event.type,
            subscription_count=len(results),
            success_count=sum(1 for r in results if r.success),
        )
        return list(results)

    def dispatch_nowait(self, event: Union[WebhookEvent, Dict[str, Any]]) -> asyncio.Task:
        """Schedule a dispatch in the background and return its task."""
        return self._spawn(self.dispatch(event))

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight deliveries to finish."""
        if self._in_flight:
            await asyncio.wait(set(self._in_flight), timeout=timeout)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def _deliver_one(self, subscription_id: str, event: WebhookEvent) -> DeliveryResult:
        try:
            return await self.executor.deliver(subscription_id, event)
        except WebhookError as e:
            logger.info(
                "delivery_not_attempted",
                subscription_id=subscription_id,
                event_id=event.id,
                code=e.code,
                error=e.message,
            )
            return DeliveryResult(
                subscription_id=subscription_id,
                success=False,
                error=e.message,
            )
        except Exception as e:
            logger.exception(
                "delivery_error",
                subscription_id=subscription_id,
                event_id=event.id,
            )
            return DeliveryResult(
                subscription_id=subscription_id,
                success=False,
                error=f"Delivery error: {e}",
            )

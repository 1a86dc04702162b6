"""
Health & Statistics Tracker
===========================

Folds delivery outcomes into a subscription's rolling statistics, delivery
history and health snapshot, feeds the failure streak into the circuit
breaker, and suspends endpoints that keep failing.

Health classification:
- unhealthy: 5+ consecutive failures or error rate above 50%
- degraded: 3+ consecutive failures or error rate above 25%
- healthy: otherwise

Author: Platform Engineering Team
Version: 1.0.0
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, List, Optional

import structlog

from .base import (
    DeliveryAttempt,
    DeliveryRecord,
    EventStats,
    HealthStatus,
    LastDelivery,
    Subscription,
    Suspension,
    utcnow,
)
from .circuit import SubscriptionCircuitBreaker

logger = structlog.get_logger(__name__)


UNHEALTHY_STREAK = 5
UNHEALTHY_ERROR_RATE = 0.5
DEGRADED_STREAK = 3
DEGRADED_ERROR_RATE = 0.25


def classify_health(consecutive_failures: int, error_rate: float) -> HealthStatus:
    if consecutive_failures >= UNHEALTHY_STREAK or error_rate > UNHEALTHY_ERROR_RATE:
        return HealthStatus.UNHEALTHY
    if consecutive_failures >= DEGRADED_STREAK or error_rate > DEGRADED_ERROR_RATE:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


class HealthTracker:
    """
    Records delivery outcomes on a subscription.

    The caller holds the subscription lock and persists the subscription.
    """

    def __init__(
        self,
        circuit_breaker: Optional[SubscriptionCircuitBreaker] = None,
        clock: Optional[Callable[[], datetime]] = None,
        history_limit: int = 100,
        auto_suspend_threshold: int = 10,
        auto_suspend_seconds: int = 3600,
    ):
        self._clock = clock or utcnow
        self.circuit_breaker = circuit_breaker or SubscriptionCircuitBreaker(clock=self._clock)
        self.history_limit = history_limit
        self.auto_suspend_threshold = auto_suspend_threshold
        self.auto_suspend_seconds = auto_suspend_seconds

    def record(self, subscription: Subscription, attempt: DeliveryAttempt) -> None:
        """Apply one delivery attempt to statistics, history, health and breaker."""
        stats = subscription.statistics
        health = subscription.status.health
        now = attempt.timestamp or self._clock()

        stats.total_deliveries += 1
        if attempt.success:
            stats.successful_deliveries += 1
            health.consecutive_failures = 0
        else:
            stats.failed_deliveries += 1
            health.consecutive_failures += 1

        # Incremental mean
        n = stats.total_deliveries
        stats.average_response_time_ms = (
            stats.average_response_time_ms * (n - 1) + (attempt.response_time_ms or 0.0)
        ) / n
        stats.success_rate = stats.successful_deliveries / n

        event_stats = stats.event_stats.setdefault(attempt.event_type, EventStats())
        event_stats.count += 1
        if attempt.success:
            event_stats.successes += 1
        else:
            event_stats.failures += 1

        previous = subscription.status.last_delivery
        subscription.status.last_delivery = LastDelivery(
            attempted_at=now,
            succeeded_at=now if attempt.success else previous.succeeded_at,
            failed_at=now if not attempt.success else previous.failed_at,
            status_code=attempt.status_code,
            response_time_ms=attempt.response_time_ms,
            error=attempt.error,
        )

        self._append_history(subscription, attempt, now)
        self.update_health(subscription)
        self.circuit_breaker.record_outcome(
            subscription,
            attempt.success,
            health.consecutive_failures,
        )

        if (
            not attempt.success
            and health.consecutive_failures >= self.auto_suspend_threshold
            and not subscription.status.suspension.suspended
        ):
            self.suspend(
                subscription,
                reason=f"Auto-suspended after {health.consecutive_failures} consecutive failures",
                duration=timedelta(seconds=self.auto_suspend_seconds),
            )

    def _append_history(
        self,
        subscription: Subscription,
        attempt: DeliveryAttempt,
        now: datetime,
    ) -> None:
        history: List[DeliveryRecord] = subscription.delivery_history
        history.append(
            DeliveryRecord(
                delivery_id=attempt.delivery_id,
                event_id=attempt.event_id,
                event_type=attempt.event_type,
                delivered_at=now,
                attempt_number=attempt.attempt_number,
                success=attempt.success,
                status_code=attempt.status_code,
                response_time_ms=attempt.response_time_ms,
                error=attempt.error,
            )
        )
        if len(history) > self.history_limit:
            del history[: len(history) - self.history_limit]

    def update_health(self, subscription: Subscription) -> HealthStatus:
        """Recompute the health snapshot from the current counters."""
        stats = subscription.statistics
        health = subscription.status.health
        error_rate = (
            stats.failed_deliveries / stats.total_deliveries
            if stats.total_deliveries
            else 0.0
        )
        previous = health.status
        health.error_rate = error_rate
        health.status = classify_health(health.consecutive_failures, error_rate)
        health.last_checked = self._clock()

        if previous != health.status and previous != HealthStatus.UNKNOWN:
            logger.info(
                "health_status_change",
                subscription_id=subscription.id,
                from_status=previous.value,
                to_status=health.status.value,
                consecutive_failures=health.consecutive_failures,
                error_rate=round(error_rate, 4),
            )
        return health.status

    def is_stale(self, subscription: Subscription, max_age: timedelta) -> bool:
        last_checked = subscription.status.health.last_checked
        return last_checked is None or self._clock() - last_checked > max_age

    # Suspension

    def suspend(
        self,
        subscription: Subscription,
        reason: str,
        duration: Optional[timedelta] = None,
        auto_resume: bool = True,
    ) -> None:
        """Suspend deliveries, optionally until ``now + duration``."""
        now = self._clock()
        subscription.status.suspension = Suspension(
            suspended=True,
            suspended_at=now,
            suspended_until=now + duration if duration else None,
            reason=reason,
            auto_resume=auto_resume,
        )
        logger.warning(
            "webhook_suspended",
            subscription_id=subscription.id,
            reason=reason,
            until=(
                subscription.status.suspension.suspended_until.isoformat()
                if subscription.status.suspension.suspended_until
                else None
            ),
        )

    def resume(self, subscription: Subscription) -> None:
        """Lift a suspension; an open breaker moves to half-open."""
        subscription.status.suspension = Suspension()
        self.circuit_breaker.half_open(subscription)
        logger.info("webhook_resumed", subscription_id=subscription.id)

    def resume_if_due(self, subscription: Subscription) -> bool:
        """Auto-resume when ``suspended_until`` has passed. Returns True if resumed."""
        suspension = subscription.status.suspension
        if (
            suspension.suspended
            and suspension.auto_resume
            and suspension.suspended_until is not None
            and self._clock() >= suspension.suspended_until
        ):
            self.resume(subscription)
            return True
        return False

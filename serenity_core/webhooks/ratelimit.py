"""
Subscription Rate Limiter
=========================

Fixed-window counters per subscription for the second, minute, hour and day
periods. Counters and their reset timestamps live on the subscription record,
so they are persisted together and shared by every worker using the same store.

Author: Platform Engineering Team
Version: 1.0.0
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import structlog

from .base import (
    RateLimitExceeded,
    RateLimitPeriod,
    Subscription,
    WindowUsage,
    utcnow,
)

logger = structlog.get_logger(__name__)


_FIXED_WINDOWS = {
    RateLimitPeriod.SECOND: timedelta(seconds=1),
    RateLimitPeriod.MINUTE: timedelta(seconds=60),
    RateLimitPeriod.HOUR: timedelta(seconds=3600),
}


def next_reset(period: RateLimitPeriod, now: datetime) -> datetime:
    """Reset time of a window opened at ``now``.

    The day window ends at the next local midnight, returned in UTC.
    """
    if period == RateLimitPeriod.DAY:
        local = now.astimezone()
        midnight = (local + timedelta(days=1)).replace(
            hour=0, minute=0, second=0, microsecond=0
        )
        return midnight.astimezone(timezone.utc)
    return now + _FIXED_WINDOWS[period]


class SubscriptionRateLimiter:
    """
    Per-window rate limiting for webhook deliveries.

    The caller must hold the subscription lock and persist the subscription
    afterwards; this class only mutates ``subscription.rate_limit``.

    Usage:
        limiter = SubscriptionRateLimiter()
        limiter.check_and_consume(subscription)  # raises RateLimitExceeded
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or utcnow

    def _usage(self, subscription: Subscription, period: RateLimitPeriod) -> WindowUsage:
        usage = subscription.rate_limit.usage.get(period.value)
        if usage is None:
            usage = WindowUsage()
            subscription.rate_limit.usage[period.value] = usage
        return usage

    def _roll_windows(self, subscription: Subscription, now: datetime) -> None:
        """Reset every configured window whose reset time has passed."""
        config = subscription.rate_limit
        for period in RateLimitPeriod:
            if not config.limit_for(period):
                continue
            usage = self._usage(subscription, period)
            if usage.reset_at is None or now >= usage.reset_at:
                usage.count = 0
                usage.reset_at = next_reset(period, now)

    def _saturated(self, subscription: Subscription) -> Optional[RateLimitPeriod]:
        config = subscription.rate_limit
        for period in RateLimitPeriod:
            limit = config.limit_for(period)
            if limit and self._usage(subscription, period).count >= limit:
                return period
        return None

    def refresh(self, subscription: Subscription) -> bool:
        """Roll expired windows and clear the exceeded flag when none is saturated.

        Returns the resulting ``exceeded`` flag.
        """
        config = subscription.rate_limit
        if not config.enabled:
            config.exceeded = False
            return False

        self._roll_windows(subscription, self._clock())
        if config.exceeded and self._saturated(subscription) is None:
            config.exceeded = False
            logger.info("rate_limit_cleared", subscription_id=subscription.id)
        return config.exceeded

    def check_and_consume(self, subscription: Subscription) -> None:
        """
        Consume one delivery slot from every configured window.

        Windows are checked in order (second, minute, hour, day). When a window
        is at its ceiling the subscription is flagged as exceeded and the call
        fails without touching any counter.

        Raises:
            RateLimitExceeded: If any window is saturated
        """
        config = subscription.rate_limit
        if not config.enabled:
            return

        now = self._clock()
        self._roll_windows(subscription, now)

        periods = [p for p in RateLimitPeriod if config.limit_for(p)]
        for period in periods:
            limit = config.limit_for(period)
            usage = self._usage(subscription, period)
            if usage.count >= limit:
                config.exceeded = True
                retry_after = max(0.0, (usage.reset_at - now).total_seconds())
                logger.warning(
                    "rate_limit_exceeded",
                    subscription_id=subscription.id,
                    period=period.value,
                    limit=limit,
                    retry_after=retry_after,
                )
                raise RateLimitExceeded(
                    f"Rate limit of {limit} per {period.value} exceeded",
                    period=period,
                    limit=limit,
                    reset_at=usage.reset_at,
                    retry_after=retry_after,
                )

        for period in periods:
            self._usage(subscription, period).count += 1
        config.exceeded = False

    def next_reset_time(self, subscription: Subscription) -> Optional[datetime]:
        """Earliest reset time across the saturated windows, if any."""
        config = subscription.rate_limit
        resets = [
            self._usage(subscription, p).reset_at
            for p in RateLimitPeriod
            if config.limit_for(p)
            and self._usage(subscription, p).count >= config.limit_for(p)
            and self._usage(subscription, p).reset_at is not None
        ]
        return min(resets) if resets else None

    def status(self, subscription: Subscription) -> Dict[str, Any]:
        """Remaining capacity per configured window."""
        config = subscription.rate_limit
        windows = {}
        for period in RateLimitPeriod:
            limit = config.limit_for(period)
            if not limit:
                continue
            usage = self._usage(subscription, period)
            windows[period.value] = {
                "limit": limit,
                "used": usage.count,
                "remaining": max(0, limit - usage.count),
                "reset_at": usage.reset_at.isoformat() if usage.reset_at else None,
            }
        next_reset_at = self.next_reset_time(subscription)
        return {
            "enabled": config.enabled,
            "exceeded": config.exceeded,
            "windows": windows,
            "next_reset_at": next_reset_at.isoformat() if next_reset_at else None,
        }

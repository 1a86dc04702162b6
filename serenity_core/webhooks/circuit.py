"""
Circuit Breaker
===============

Per-subscription circuit breaker that stops deliveries to an endpoint after a
sustained failure streak and probes it again once the open timeout elapses.

The open -> half-open transition is evaluated lazily: on ``can_attempt``
(before each delivery), on ``record_outcome`` and by the periodic sweeper.
There is no background timer.

Author: Platform Engineering Team
Version: 1.0.0
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from .base import CircuitState, Subscription, utcnow

logger = structlog.get_logger(__name__)


class SubscriptionCircuitBreaker:
    """
    Circuit breaker operating on ``subscription.circuit_breaker``.

    States:
    - CLOSED: Normal operation, deliveries pass through
    - OPEN: Endpoint failing, deliveries rejected until ``next_attempt``
    - HALF_OPEN: Up to ``half_open_max_calls`` probes decide between CLOSED
      and OPEN; further attempts are rejected while they are in flight

    A half-open probe that fails re-opens the breaker for twice the
    configured timeout. A probe that never reports back stops counting once
    the request timeout plus the breaker timeout has passed since the breaker
    went half-open. Disabled breakers always allow attempts and never
    transition.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or utcnow

    def can_attempt(self, subscription: Subscription) -> bool:
        """Check if a delivery may be attempted now (may move OPEN to HALF_OPEN)."""
        breaker = subscription.circuit_breaker
        if not breaker.enabled:
            return True

        if breaker.state == CircuitState.OPEN:
            if not self._timeout_elapsed(subscription):
                return False
            self._transition_to(subscription, CircuitState.HALF_OPEN)

        if breaker.state == CircuitState.HALF_OPEN:
            if breaker.half_open_in_flight >= breaker.half_open_max_calls:
                if not self._probes_stale(subscription):
                    return False
                logger.warning(
                    "circuit_half_open_attempt_expired",
                    subscription_id=subscription.id,
                    in_flight=breaker.half_open_in_flight,
                )
                breaker.half_open_in_flight = 0
                breaker.last_state_change = self._clock()

        return True

    def begin_attempt(self, subscription: Subscription) -> None:
        """Count an admitted delivery as a half-open probe."""
        breaker = subscription.circuit_breaker
        if breaker.enabled and breaker.state == CircuitState.HALF_OPEN:
            breaker.half_open_in_flight += 1

    def record_outcome(
        self,
        subscription: Subscription,
        success: bool,
        consecutive_failures: Optional[int] = None,
    ) -> CircuitState:
        """
        Feed a delivery outcome into the state machine.

        Args:
            subscription: Subscription whose breaker is updated
            success: Whether the delivery succeeded
            consecutive_failures: Current failure streak, defaults to the
                subscription's health snapshot

        Returns:
            The resulting state
        """
        breaker = subscription.circuit_breaker
        if not breaker.enabled:
            return breaker.state

        if consecutive_failures is None:
            consecutive_failures = subscription.status.health.consecutive_failures

        if success:
            breaker.failure_count = 0
        else:
            breaker.failure_count += 1

        now = self._clock()
        timeout = timedelta(milliseconds=breaker.timeout_ms)

        if breaker.state == CircuitState.CLOSED:
            if not success and consecutive_failures >= breaker.threshold:
                breaker.next_attempt = now + timeout
                self._transition_to(subscription, CircuitState.OPEN)

        elif breaker.state == CircuitState.OPEN:
            if self._timeout_elapsed(subscription):
                self._transition_to(subscription, CircuitState.HALF_OPEN)

        elif breaker.state == CircuitState.HALF_OPEN:
            if success:
                breaker.failure_count = 0
                self._transition_to(subscription, CircuitState.CLOSED)
            else:
                breaker.next_attempt = now + timeout * 2
                self._transition_to(subscription, CircuitState.OPEN)

        return breaker.state

    def half_open(self, subscription: Subscription) -> None:
        """Move an open breaker straight to HALF_OPEN (manual resume)."""
        if subscription.circuit_breaker.state == CircuitState.OPEN:
            self._transition_to(subscription, CircuitState.HALF_OPEN)

    def retry_after(self, subscription: Subscription) -> float:
        """Seconds until an open breaker admits a probe."""
        breaker = subscription.circuit_breaker
        if breaker.state != CircuitState.OPEN or breaker.next_attempt is None:
            return 0.0
        return max(0.0, (breaker.next_attempt - self._clock()).total_seconds())

    def _timeout_elapsed(self, subscription: Subscription) -> bool:
        next_attempt = subscription.circuit_breaker.next_attempt
        return next_attempt is None or self._clock() >= next_attempt

    def _probes_stale(self, subscription: Subscription) -> bool:
        breaker = subscription.circuit_breaker
        if breaker.last_state_change is None:
            return True
        cutoff = timedelta(milliseconds=subscription.request.timeout_ms + breaker.timeout_ms)
        return self._clock() >= breaker.last_state_change + cutoff

    def _transition_to(self, subscription: Subscription, new_state: CircuitState) -> None:
        """Transition to a new state"""
        breaker = subscription.circuit_breaker
        old_state = breaker.state
        breaker.state = new_state
        breaker.last_state_change = self._clock()
        breaker.half_open_in_flight = 0

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            "circuit_state_change",
            subscription_id=subscription.id,
            from_state=old_state.value,
            to_state=new_state.value,
            failure_count=breaker.failure_count,
            next_attempt=(
                breaker.next_attempt.isoformat()
                if new_state == CircuitState.OPEN and breaker.next_attempt
                else None
            ),
        )

"""Unit tests for the per-subscription circuit breaker."""

from datetime import timedelta


class TestSubscriptionCircuitBreaker:
    """Tests for SubscriptionCircuitBreaker."""

    def _breaker(self, clock):
        from serenity_core.webhooks.circuit import SubscriptionCircuitBreaker

        return SubscriptionCircuitBreaker(clock=clock)

    def _fail(self, breaker, subscription, times):
        for _ in range(times):
            subscription.status.health.consecutive_failures += 1
            breaker.record_outcome(subscription, success=False)

    def test_initial_state_closed(self, clock, make_subscription):
        from serenity_core.webhooks.base import CircuitState

        subscription = make_subscription()

        assert subscription.circuit_breaker.state == CircuitState.CLOSED
        assert self._breaker(clock).can_attempt(subscription) is True

    def test_opens_at_threshold(self, clock, make_subscription):
        from serenity_core.webhooks.base import CircuitState

        breaker = self._breaker(clock)
        subscription = make_subscription(circuit_breaker={"threshold": 3, "timeout_ms": 60000})

        self._fail(breaker, subscription, 2)
        assert subscription.circuit_breaker.state == CircuitState.CLOSED

        self._fail(breaker, subscription, 1)
        assert subscription.circuit_breaker.state == CircuitState.OPEN
        assert subscription.circuit_breaker.next_attempt == clock() + timedelta(seconds=60)
        assert subscription.circuit_breaker.failure_count == 3
        assert breaker.can_attempt(subscription) is False
        assert breaker.retry_after(subscription) == 60.0

    def test_half_open_after_timeout(self, clock, make_subscription):
        from serenity_core.webhooks.base import CircuitState

        breaker = self._breaker(clock)
        subscription = make_subscription(circuit_breaker={"threshold": 3, "timeout_ms": 60000})
        self._fail(breaker, subscription, 3)

        clock.advance(seconds=59)
        assert breaker.can_attempt(subscription) is False

        clock.advance(seconds=1)
        assert breaker.can_attempt(subscription) is True
        assert subscription.circuit_breaker.state == CircuitState.HALF_OPEN

    def test_half_open_success_closes(self, clock, make_subscription):
        from serenity_core.webhooks.base import CircuitState

        breaker = self._breaker(clock)
        subscription = make_subscription(circuit_breaker={"threshold": 3, "timeout_ms": 60000})
        self._fail(breaker, subscription, 3)
        clock.advance(seconds=61)
        breaker.can_attempt(subscription)

        subscription.status.health.consecutive_failures = 0
        breaker.record_outcome(subscription, success=True)

        assert subscription.circuit_breaker.state == CircuitState.CLOSED
        assert subscription.circuit_breaker.failure_count == 0

    def test_half_open_failure_reopens_with_double_timeout(self, clock, make_subscription):
        from serenity_core.webhooks.base import CircuitState

        breaker = self._breaker(clock)
        subscription = make_subscription(circuit_breaker={"threshold": 3, "timeout_ms": 60000})
        self._fail(breaker, subscription, 3)
        clock.advance(seconds=61)
        breaker.can_attempt(subscription)

        self._fail(breaker, subscription, 1)

        assert subscription.circuit_breaker.state == CircuitState.OPEN
        assert subscription.circuit_breaker.next_attempt == clock() + timedelta(seconds=120)
        assert subscription.circuit_breaker.last_state_change == clock()

    def test_success_resets_failure_count(self, clock, make_subscription):
        breaker = self._breaker(clock)
        subscription = make_subscription(circuit_breaker={"threshold": 5})

        self._fail(breaker, subscription, 2)
        subscription.status.health.consecutive_failures = 0
        breaker.record_outcome(subscription, success=True)

        assert subscription.circuit_breaker.failure_count == 0

    def test_disabled_breaker_never_transitions(self, clock, make_subscription):
        from serenity_core.webhooks.base import CircuitState

        breaker = self._breaker(clock)
        subscription = make_subscription(circuit_breaker={"enabled": False, "threshold": 1})

        self._fail(breaker, subscription, 10)

        assert subscription.circuit_breaker.state == CircuitState.CLOSED
        assert subscription.circuit_breaker.failure_count == 0
        assert breaker.can_attempt(subscription) is True

    def test_manual_half_open(self, clock, make_subscription):
        from serenity_core.webhooks.base import CircuitState

        breaker = self._breaker(clock)
        subscription = make_subscription(circuit_breaker={"threshold": 1})
        self._fail(breaker, subscription, 1)

        breaker.half_open(subscription)

        assert subscription.circuit_breaker.state == CircuitState.HALF_OPEN
        assert breaker.retry_after(subscription) == 0.0

    def test_half_open_limits_concurrent_probes(self, clock, make_subscription):
        from serenity_core.webhooks.base import CircuitState

        breaker = self._breaker(clock)
        subscription = make_subscription(
            circuit_breaker={"threshold": 1, "timeout_ms": 60000, "half_open_max_calls": 2}
        )
        breaker.begin_attempt(subscription)
        assert subscription.circuit_breaker.half_open_in_flight == 0

        self._fail(breaker, subscription, 1)
        clock.advance(seconds=60)

        assert breaker.can_attempt(subscription) is True
        breaker.begin_attempt(subscription)
        assert breaker.can_attempt(subscription) is True
        breaker.begin_attempt(subscription)
        assert subscription.circuit_breaker.half_open_in_flight == 2
        assert breaker.can_attempt(subscription) is False
        assert subscription.circuit_breaker.state == CircuitState.HALF_OPEN

        subscription.status.health.consecutive_failures = 0
        breaker.record_outcome(subscription, success=True)

        assert subscription.circuit_breaker.state == CircuitState.CLOSED
        assert subscription.circuit_breaker.half_open_in_flight == 0

    def test_unreported_half_open_attempt_expires(self, clock, make_subscription):
        from serenity_core.webhooks.base import CircuitState

        breaker = self._breaker(clock)
        subscription = make_subscription(
            circuit_breaker={"threshold": 1, "timeout_ms": 60000},
            request={"timeout_ms": 30000},
        )
        self._fail(breaker, subscription, 1)
        clock.advance(seconds=60)
        assert breaker.can_attempt(subscription) is True
        breaker.begin_attempt(subscription)

        clock.advance(seconds=89)
        assert breaker.can_attempt(subscription) is False

        clock.advance(seconds=1)
        assert breaker.can_attempt(subscription) is True
        assert subscription.circuit_breaker.half_open_in_flight == 0
        assert subscription.circuit_breaker.state == CircuitState.HALF_OPEN

        breaker.begin_attempt(subscription)
        assert breaker.can_attempt(subscription) is False

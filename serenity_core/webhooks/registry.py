"""
Subscription Registry
=====================

Registration, validation, lookup and administrative lifecycle of webhook
subscriptions, plus resolution of "which subscriptions want this event".

Author: Platform Engineering Team
Version: 1.0.0
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import urlparse

import structlog

from .base import (
    EVENT_TYPE_PATTERN,
    AuthMethod,
    DeliveryRecord,
    HealthStatus,
    Subscription,
    SubscriptionNotFound,
    SubscriptionState,
    ValidationError,
    event_category,
    event_type_matches,
    generate_secret,
    utcnow,
)
from .health import HealthTracker
from .store import SubscriptionStore
from .transform import get_path

logger = structlog.get_logger(__name__)


CATEGORY_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")
EVENT_PREFIX_PATTERN = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z0-9_]+)*$")

# Keys accepted by update(); everything else is runtime state or identity
UPDATABLE_FIELDS = frozenset({
    "name",
    "description",
    "target_url",
    "events",
    "authentication",
    "request",
    "retry",
    "rate_limit",
    "circuit_breaker",
    "transformation",
    "validation",
    "tags",
    "state",
})

POLICY_ONLY_FIELDS = {
    "rate_limit": frozenset({"enabled", "per_second", "per_minute", "per_hour", "per_day"}),
    "circuit_breaker": frozenset({"enabled", "threshold", "timeout_ms", "half_open_max_calls"}),
    "queue": frozenset({"max_queue_size"}),
    "validation": frozenset({"validate_ssl"}),
}

# Identity and runtime state never taken from a registration payload
RUNTIME_FIELDS = frozenset({
    "id",
    "status",
    "statistics",
    "delivery_history",
    "created_at",
    "updated_at",
    "updated_by",
})

SECURITY_FIELDS = ("authentication", "target_url")


def validate_subscription(subscription: Subscription) -> None:
    """
    Check a subscription's configuration.

    Raises:
        ValidationError: Listing every problem found
    """
    errors: List[str] = []

    if not subscription.name or not subscription.name.strip():
        errors.append("name is required")
    elif len(subscription.name) > 200:
        errors.append("name must be at most 200 characters")
    if len(subscription.description or "") > 1000:
        errors.append("description must be at most 1000 characters")
    if not subscription.tenant_id:
        errors.append("tenant_id is required")
    if not subscription.organization_id:
        errors.append("organization_id is required")

    parsed = urlparse(subscription.target_url or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        errors.append("target_url must be a valid http or https URL")

    events = subscription.events
    if not events.subscribed and not events.categories:
        errors.append("at least one event type or category must be subscribed")
    for event_type in events.subscribed:
        if event_type == "*":
            continue
        if event_type.endswith(".*"):
            if not EVENT_PREFIX_PATTERN.match(event_type[:-2]):
                errors.append(f"invalid event pattern: {event_type}")
        elif not EVENT_TYPE_PATTERN.match(event_type):
            errors.append(f"invalid event type: {event_type}")
    for category in events.categories:
        if not CATEGORY_PATTERN.match(category):
            errors.append(f"invalid event category: {category}")
    for pattern in events.filters.include_patterns + events.filters.exclude_patterns:
        try:
            re.compile(pattern)
        except re.error as e:
            errors.append(f"invalid filter pattern {pattern!r}: {e}")

    request = subscription.request
    if not 1000 <= request.timeout_ms <= 300000:
        errors.append("request.timeout_ms must be between 1000 and 300000")
    if not 1024 <= request.max_payload_size <= 10485760:
        errors.append("request.max_payload_size must be between 1024 and 10485760")

    retry = subscription.retry
    if not 0 <= retry.max_retries <= 10:
        errors.append("retry.max_retries must be between 0 and 10")
    if not 100 <= retry.initial_delay_ms <= 60000:
        errors.append("retry.initial_delay_ms must be between 100 and 60000")
    if not 1 <= retry.backoff_multiplier <= 10:
        errors.append("retry.backoff_multiplier must be between 1 and 10")
    if not 1000 <= retry.max_delay_ms <= 3600000:
        errors.append("retry.max_delay_ms must be between 1000 and 3600000")
    if not 0 <= retry.jitter.factor <= 1:
        errors.append("retry.jitter.factor must be between 0 and 1")

    rate_limit = subscription.rate_limit
    for name in ("per_second", "per_minute", "per_hour", "per_day"):
        value = getattr(rate_limit, name)
        if value is not None and value < 0:
            errors.append(f"rate_limit.{name} must not be negative")

    breaker = subscription.circuit_breaker
    if breaker.threshold < 1:
        errors.append("circuit_breaker.threshold must be at least 1")
    if breaker.timeout_ms < 1000:
        errors.append("circuit_breaker.timeout_ms must be at least 1000")
    if breaker.half_open_max_calls < 1:
        errors.append("circuit_breaker.half_open_max_calls must be at least 1")

    if subscription.queue.max_queue_size < 1:
        errors.append("queue.max_queue_size must be at least 1")

    auth = subscription.authentication
    if auth.method == AuthMethod.BASIC and not auth.credentials.username:
        errors.append("basic authentication requires credentials.username")
    if auth.method == AuthMethod.BEARER and not auth.credentials.token:
        errors.append("bearer authentication requires credentials.token")
    if auth.method == AuthMethod.OAUTH2 and not auth.oauth2.token_url:
        errors.append("oauth2 authentication requires oauth2.token_url")

    if errors:
        raise ValidationError("Invalid subscription configuration", errors=errors)


def _deep_merge(base: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in patch.items():
        if value is None and isinstance(merged.get(key), dict):
            continue
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _registration_data(config: Dict[str, Any]) -> Dict[str, Any]:
    data = {key: value for key, value in config.items() if key not in RUNTIME_FIELDS}
    for section, allowed in POLICY_ONLY_FIELDS.items():
        if isinstance(data.get(section), dict):
            data[section] = {k: v for k, v in data[section].items() if k in allowed}
    return data


def _build(data: Dict[str, Any]) -> Subscription:
    try:
        return Subscription.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Invalid subscription data: {e}", errors=[str(e)])


class SubscriptionRegistry:
    """
    Manages webhook subscriptions.

    Usage:
        registry = SubscriptionRegistry(store)
        subscription = await registry.register({...})
        matching = await registry.find_matching(tenant_id, org_id, "payment.succeeded")
    """

    def __init__(
        self,
        store: SubscriptionStore,
        tracker: Optional[HealthTracker] = None,
        clock: Optional[Callable[[], datetime]] = None,
        default_max_queue_size: int = 1000,
    ):
        self.store = store
        self._clock = clock or utcnow
        self.tracker = tracker or HealthTracker(clock=self._clock)
        self.default_max_queue_size = default_max_queue_size

        # Callbacks
        self._on_security_change: List[Callable[[Subscription, List[str], Optional[str]], Any]] = []

    def on_security_change(
        self,
        callback: Callable[[Subscription, List[str], Optional[str]], Any],
    ) -> None:
        """Register an audit hook for authentication or target URL changes."""
        self._on_security_change.append(callback)

    # =========================================================================
    # CRUD
    # =========================================================================

    async def register(
        self,
        config: Union[Subscription, Dict[str, Any]],
        created_by: Optional[str] = None,
    ) -> Subscription:
        """
        Validate and persist a new subscription.

        An HMAC secret is generated when the method is ``hmac`` and none
        was supplied.

        Raises:
            ValidationError: If the configuration is invalid
        """
        if isinstance(config, dict):
            data = _registration_data(config)
            data.setdefault("queue", {"max_queue_size": self.default_max_queue_size})
            subscription = _build(data)
        else:
            subscription = config.clone()
            if await self.store.get(subscription.id) is not None:
                raise ValidationError(f"Subscription {subscription.id} already exists")

        now = self._clock()
        subscription.created_at = now
        subscription.updated_at = now
        subscription.created_by = created_by or subscription.created_by
        subscription.statistics.last_reset = now
        subscription.status.state = SubscriptionState.ACTIVE

        self._ensure_hmac_secret(subscription)
        validate_subscription(subscription)

        await self.store.save(subscription)
        logger.info(
            "webhook_registered",
            subscription_id=subscription.id,
            tenant_id=subscription.tenant_id,
            organization_id=subscription.organization_id,
            target_url=subscription.target_url,
            events=subscription.events.subscribed,
            categories=subscription.events.categories,
        )
        return subscription

    async def get(self, subscription_id: str) -> Subscription:
        subscription = await self.store.get(subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(f"Subscription {subscription_id} not found")
        return subscription

    async def list(
        self,
        tenant_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        state: Optional[SubscriptionState] = None,
    ) -> List[Subscription]:
        subscriptions = await self.store.list(tenant_id, organization_id)
        if state is not None:
            subscriptions = [s for s in subscriptions if s.status.state == state]
        return sorted(subscriptions, key=lambda s: s.created_at)

    async def update(
        self,
        subscription_id: str,
        patch: Dict[str, Any],
        updated_by: Optional[str] = None,
    ) -> Subscription:
        """
        Apply a partial update and re-validate.

        Changes to authentication or the target URL are reported to the
        security-change callbacks.

        Raises:
            SubscriptionNotFound: Unknown subscription
            ValidationError: Unknown/immutable keys or invalid result
        """
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                "Fields cannot be updated",
                errors=[f"{key} is not updatable" for key in sorted(unknown)],
            )
        for section, allowed in POLICY_ONLY_FIELDS.items():
            extra = set(patch.get(section) or {}) - allowed
            if extra:
                raise ValidationError(
                    "Fields cannot be updated",
                    errors=[f"{section}.{key} is not updatable" for key in sorted(extra)],
                )

        async with self.store.lock(subscription_id):
            current = await self.get(subscription_id)
            before = current.to_dict(include_secrets=True)

            patch = dict(patch)
            state = patch.pop("state", None)
            updated = _build(_deep_merge(before, patch))
            if state is not None:
                try:
                    updated.status.state = SubscriptionState(state)
                except ValueError:
                    raise ValidationError(f"Invalid state: {state}")

            updated.updated_by = updated_by
            updated.updated_at = self._clock()
            self._ensure_hmac_secret(updated)
            validate_subscription(updated)

            after = updated.to_dict(include_secrets=True)
            changed = [field for field in SECURITY_FIELDS if before.get(field) != after.get(field)]

            await self.store.save(updated)

        logger.info(
            "webhook_updated",
            subscription_id=subscription_id,
            fields=sorted(set(patch) | ({"state"} if state is not None else set())),
            updated_by=updated_by,
        )
        if changed:
            await self._notify_security_change(updated, changed, updated_by)
        return updated

    async def delete(self, subscription_id: str) -> None:
        if not await self.store.delete(subscription_id):
            raise SubscriptionNotFound(f"Subscription {subscription_id} not found")
        logger.info("webhook_deleted", subscription_id=subscription_id)

    async def history(self, subscription_id: str, limit: Optional[int] = None) -> List[DeliveryRecord]:
        """Delivery history, newest first."""
        subscription = await self.get(subscription_id)
        records = list(reversed(subscription.delivery_history))
        return records[:limit] if limit else records

    # =========================================================================
    # Suspension
    # =========================================================================

    async def suspend(
        self,
        subscription_id: str,
        reason: str,
        duration: Optional[timedelta] = None,
        auto_resume: bool = True,
    ) -> Subscription:
        async with self.store.lock(subscription_id):
            subscription = await self.get(subscription_id)
            self.tracker.suspend(subscription, reason, duration, auto_resume)
            subscription.updated_at = self._clock()
            await self.store.save(subscription)
        return subscription

    async def resume(self, subscription_id: str) -> Subscription:
        async with self.store.lock(subscription_id):
            subscription = await self.get(subscription_id)
            self.tracker.resume(subscription)
            subscription.updated_at = self._clock()
            await self.store.save(subscription)
        return subscription

    # =========================================================================
    # Matching
    # =========================================================================

    async def find_matching(
        self,
        tenant_id: str,
        organization_id: str,
        event_type: str,
        data: Any = None,
    ) -> List[Subscription]:
        """
        Active subscriptions in scope that want ``event_type``.

        Suspended subscriptions are skipped unless their auto-resume is due.
        """
        now = self._clock()
        candidates = await self.store.list(tenant_id, organization_id)
        return [
            s for s in candidates
            if self._is_dispatchable(s, now) and self.matches(s, event_type, data)
        ]

    @staticmethod
    def _is_dispatchable(subscription: Subscription, now: datetime) -> bool:
        if subscription.status.state != SubscriptionState.ACTIVE:
            return False
        suspension = subscription.status.suspension
        if not suspension.suspended:
            return True
        return (
            suspension.auto_resume
            and suspension.suspended_until is not None
            and now >= suspension.suspended_until
        )

    @staticmethod
    def matches(subscription: Subscription, event_type: str, data: Any = None) -> bool:
        """Check subscription patterns, categories and filters against an event."""
        events = subscription.events
        subscribed = any(event_type_matches(event_type, p) for p in events.subscribed)
        if not subscribed and event_category(event_type) not in events.categories:
            return False

        filters = events.filters
        if any(re.search(p, event_type) for p in filters.exclude_patterns):
            return False
        if filters.include_patterns and not any(
            re.search(p, event_type) for p in filters.include_patterns
        ):
            return False
        for path, expected in filters.conditions.items():
            if get_path(data, path) != expected:
                return False
        return True

    # =========================================================================
    # Statistics
    # =========================================================================

    async def statistics(
        self,
        tenant_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Aggregate overview, delivery totals and distributions."""
        subscriptions = await self.store.list(tenant_id, organization_id)
        if start_date:
            subscriptions = [s for s in subscriptions if s.created_at >= start_date]
        if end_date:
            subscriptions = [s for s in subscriptions if s.created_at <= end_date]

        event_counts: Dict[str, int] = {}
        auth_counts: Dict[str, int] = {}
        for s in subscriptions:
            for event_type in s.events.subscribed:
                event_counts[event_type] = event_counts.get(event_type, 0) + 1
            method = s.authentication.method.value
            auth_counts[method] = auth_counts.get(method, 0) + 1

        total_deliveries = sum(s.statistics.total_deliveries for s in subscriptions)
        successful = sum(s.statistics.successful_deliveries for s in subscriptions)
        failed = sum(s.statistics.failed_deliveries for s in subscriptions)
        avg_response = (
            sum(s.statistics.average_response_time_ms for s in subscriptions) / len(subscriptions)
            if subscriptions
            else 0.0
        )

        top_events = sorted(event_counts.items(), key=lambda item: (-item[1], item[0]))[:10]

        return {
            "overview": {
                "total": len(subscriptions),
                "active": sum(1 for s in subscriptions if s.status.state == SubscriptionState.ACTIVE),
                "healthy": sum(1 for s in subscriptions if s.status.health.status == HealthStatus.HEALTHY),
                "suspended": sum(1 for s in subscriptions if s.status.suspension.suspended),
            },
            "deliveries": {
                "total": total_deliveries,
                "successful": successful,
                "failed": failed,
                "success_rate": successful / total_deliveries if total_deliveries else 1.0,
                "average_response_time_ms": avg_response,
            },
            "event_distribution": [
                {"event_type": event_type, "count": count} for event_type, count in top_events
            ],
            "auth_methods": [
                {"method": method, "count": count}
                for method, count in sorted(auth_counts.items(), key=lambda item: -item[1])
            ],
        }

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _ensure_hmac_secret(subscription: Subscription) -> None:
        auth = subscription.authentication
        if auth.method == AuthMethod.HMAC and not auth.hmac.secret:
            auth.hmac.secret = generate_secret()

    async def _notify_security_change(
        self,
        subscription: Subscription,
        changed: List[str],
        actor: Optional[str],
    ) -> None:
        logger.warning(
            "webhook_security_change",
            subscription_id=subscription.id,
            changed=changed,
            updated_by=actor,
        )
        for callback in self._on_security_change:
            try:
                result = callback(subscription, changed, actor)
                if hasattr(result, "__await__"):
                    await result
            except Exception as e:
                logger.error(
                    "security_change_callback_error",
                    subscription_id=subscription.id,
                    error=str(e),
                )

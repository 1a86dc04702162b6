# Webhook delivery engine

from serenity_core.webhooks.base import (
    AuthMethod,
    CircuitState,
    ConfigurationError,
    DeliveryAttempt,
    DeliveryFailure,
    DeliveryResult,
    HealthStatus,
    PayloadFormat,
    RateLimitExceeded,
    RateLimitPeriod,
    RetryExhausted,
    Subscription,
    SubscriptionNotFound,
    SubscriptionState,
    ValidationError,
    WebhookError,
    WebhookEvent,
    WebhookUnavailable,
)
from serenity_core.webhooks.circuit import SubscriptionCircuitBreaker
from serenity_core.webhooks.delivery import DeliveryExecutor
from serenity_core.webhooks.dispatcher import WebhookDispatcher
from serenity_core.webhooks.engine import WebhookEngine
from serenity_core.webhooks.health import HealthTracker
from serenity_core.webhooks.ratelimit import SubscriptionRateLimiter
from serenity_core.webhooks.registry import SubscriptionRegistry
from serenity_core.webhooks.retry import QueueProcessor, RetryQueue, compute_backoff_ms
from serenity_core.webhooks.signing import (
    AuthProvider,
    ClientCredentialsTokenProvider,
    compute_signature,
    verify_signature,
)
from serenity_core.webhooks.store import (
    InMemorySubscriptionStore,
    RedisSubscriptionStore,
    SubscriptionStore,
)
from serenity_core.webhooks.transform import PayloadTransformer
from serenity_core.webhooks.worker import WebhookSweeper

__all__ = [
    # Types
    "AuthMethod",
    "CircuitState",
    "DeliveryAttempt",
    "DeliveryResult",
    "HealthStatus",
    "PayloadFormat",
    "RateLimitPeriod",
    "Subscription",
    "SubscriptionState",
    "WebhookEvent",
    # Errors
    "WebhookError",
    "ValidationError",
    "ConfigurationError",
    "SubscriptionNotFound",
    "RateLimitExceeded",
    "WebhookUnavailable",
    "DeliveryFailure",
    "RetryExhausted",
    # Components
    "SubscriptionStore",
    "InMemorySubscriptionStore",
    "RedisSubscriptionStore",
    "SubscriptionRegistry",
    "WebhookDispatcher",
    "SubscriptionRateLimiter",
    "SubscriptionCircuitBreaker",
    "PayloadTransformer",
    "AuthProvider",
    "ClientCredentialsTokenProvider",
    "compute_signature",
    "verify_signature",
    "DeliveryExecutor",
    "HealthTracker",
    "RetryQueue",
    "QueueProcessor",
    "compute_backoff_ms",
    "WebhookSweeper",
    "WebhookEngine",
]

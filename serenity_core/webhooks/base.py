"""
Webhook Engine Base Types
=========================

Enums, configuration dataclasses, runtime state and exceptions shared by the
webhook delivery engine.

A ``Subscription`` is one registered endpoint: its target, the events it
listens to, its delivery policy (authentication, retry, rate limit, circuit
breaker, transformation) and the runtime state that mutates as deliveries
happen (health, statistics, retry queue, delivery history).

Author: Platform Engineering Team
Version: 1.0.0
"""

from __future__ import annotations

import copy
import dataclasses
import re
import secrets
import typing
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def generate_id(prefix: str = "") -> str:
    """Generate a short random identifier."""
    return f"{prefix}{uuid.uuid4().hex[:16]}"


# =============================================================================
# Enums
# =============================================================================


class SubscriptionState(str, Enum):
    """Lifecycle state of a subscription."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    PAUSED = "paused"
    FAILED = "failed"
    SUSPENDED = "suspended"


class HealthStatus(str, Enum):
    """Derived health classification."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class CircuitState(str, Enum):
    """Circuit breaker states"""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, rejecting deliveries
    HALF_OPEN = "half-open"  # Probing for recovery


class AuthMethod(str, Enum):
    """Outbound authentication methods."""

    NONE = "none"
    BASIC = "basic"
    BEARER = "bearer"
    HMAC = "hmac"
    OAUTH2 = "oauth2"
    CUSTOM = "custom"


class HmacAlgorithm(str, Enum):
    """Supported HMAC digests."""

    SHA256 = "sha256"
    SHA512 = "sha512"


class HttpMethod(str, Enum):
    """HTTP methods allowed for delivery."""

    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"


class PayloadFormat(str, Enum):
    """Wire format of the delivered body."""

    JSON = "json"
    XML = "xml"
    FORM = "form"
    CUSTOM = "custom"


class CompressionAlgorithm(str, Enum):
    """Request body compression."""

    GZIP = "gzip"
    DEFLATE = "deflate"


class TlsVersion(str, Enum):
    """Minimum TLS protocol version."""

    TLS_1_2 = "TLSv1.2"
    TLS_1_3 = "TLSv1.3"


class RateLimitPeriod(str, Enum):
    """Rate limit windows, checked in this order."""

    SECOND = "second"
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"


DEFAULT_RETRYABLE_STATUS_CODES = [408, 429, 500, 502, 503, 504]
DEFAULT_USER_AGENT = "InsightSerenity-Webhook/1.0"
TEST_EVENT_TYPE = "webhook.test"

EVENT_TYPE_PATTERN = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z0-9_]+)+$")


def event_category(event_type: str) -> str:
    """Category of a dot-namespaced event type (text before the first dot)."""
    return event_type.split(".", 1)[0]


def event_type_matches(event_type: str, pattern: str) -> bool:
    """Check if an event type matches a subscribed pattern (supports wildcards)."""
    if pattern == "*":
        return True
    if pattern.endswith("*"):
        prefix = pattern[:-1]
        return event_type.startswith(prefix)
    return event_type == pattern


# =============================================================================
# Configuration
# =============================================================================


@dataclass
class EventFilter:
    """Additional event filtering beyond type subscriptions."""

    include_patterns: List[str] = field(default_factory=list)
    exclude_patterns: List[str] = field(default_factory=list)
    conditions: Dict[str, Any] = field(default_factory=dict)


@dataclass
class EventSubscription:
    """Which events a subscription wants."""

    subscribed: List[str] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    filters: EventFilter = field(default_factory=EventFilter)


@dataclass
class Credentials:
    """Secret material for basic, bearer and oauth2 authentication."""

    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None


@dataclass
class HmacConfig:
    """HMAC signing configuration."""

    algorithm: HmacAlgorithm = HmacAlgorithm.SHA256
    secret: Optional[str] = None
    header_name: str = "X-Webhook-Signature"


@dataclass
class OAuth2Config:
    """OAuth2 client-credentials configuration."""

    token_url: Optional[str] = None
    scope: Optional[str] = None
    grant_type: str = "client_credentials"


@dataclass
class AuthenticationConfig:
    """Outbound authentication configuration."""

    method: AuthMethod = AuthMethod.HMAC
    credentials: Credentials = field(default_factory=Credentials)
    hmac: HmacConfig = field(default_factory=HmacConfig)
    oauth2: OAuth2Config = field(default_factory=OAuth2Config)
    custom_headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class CompressionConfig:
    """Request body compression preference."""

    enabled: bool = False
    algorithm: CompressionAlgorithm = CompressionAlgorithm.GZIP


@dataclass
class TlsConfig:
    """TLS policy for the outbound connection."""

    reject_unauthorized: bool = True
    min_version: TlsVersion = TlsVersion.TLS_1_2


def _default_headers() -> Dict[str, str]:
    return {
        "Content-Type": "application/json",
        "User-Agent": DEFAULT_USER_AGENT,
    }


@dataclass
class RequestConfig:
    """How the outbound request is built."""

    method: HttpMethod = HttpMethod.POST
    headers: Dict[str, str] = field(default_factory=_default_headers)
    timeout_ms: int = 30000
    max_payload_size: int = 1048576  # 1MB
    compression: CompressionConfig = field(default_factory=CompressionConfig)
    tls: TlsConfig = field(default_factory=TlsConfig)


@dataclass
class JitterConfig:
    """Random spread applied to retry delays."""

    enabled: bool = True
    factor: float = 0.1


@dataclass
class RetryConfig:
    """Retry policy with exponential backoff."""

    enabled: bool = True
    max_retries: int = 3
    initial_delay_ms: int = 1000
    backoff_multiplier: float = 2.0
    max_delay_ms: int = 300000  # 5 minutes
    retryable_status_codes: List[int] = field(
        default_factory=lambda: list(DEFAULT_RETRYABLE_STATUS_CODES)
    )
    jitter: JitterConfig = field(default_factory=JitterConfig)


@dataclass
class WindowUsage:
    """Counter for one rate limit window."""

    count: int = 0
    reset_at: Optional[datetime] = None


def _default_usage() -> Dict[str, WindowUsage]:
    return {period.value: WindowUsage() for period in RateLimitPeriod}


@dataclass
class RateLimitConfig:
    """Per-window delivery ceilings and their live counters."""

    enabled: bool = False
    per_second: Optional[int] = None
    per_minute: Optional[int] = None
    per_hour: Optional[int] = None
    per_day: Optional[int] = None
    usage: Dict[str, WindowUsage] = field(default_factory=_default_usage)
    exceeded: bool = False

    def limit_for(self, period: RateLimitPeriod) -> Optional[int]:
        """Ceiling configured for a period, if any."""
        return getattr(self, f"per_{period.value}")


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker policy and state."""

    enabled: bool = True
    threshold: int = 5
    timeout_ms: int = 60000  # 1 minute
    state: CircuitState = CircuitState.CLOSED
    last_state_change: Optional[datetime] = None
    next_attempt: Optional[datetime] = None
    failure_count: int = 0
    half_open_max_calls: int = 1
    half_open_in_flight: int = 0


@dataclass
class CustomScript:
    """User supplied transformation script, run by an external runner."""

    enabled: bool = False
    script: Optional[str] = None
    sandbox: bool = True


@dataclass
class TransformationConfig:
    """Payload transformation applied before delivery."""

    enabled: bool = False
    template: Any = None
    include_fields: List[str] = field(default_factory=list)
    exclude_fields: List[str] = field(default_factory=list)
    custom_script: CustomScript = field(default_factory=CustomScript)
    format: PayloadFormat = PayloadFormat.JSON


@dataclass
class TestResult:
    """Outcome of the last test delivery."""

    __test__ = False

    success: bool = False
    status_code: Optional[int] = None
    response_time_ms: Optional[float] = None
    error: Optional[str] = None


@dataclass
class TestEndpoint:
    """Test delivery bookkeeping."""

    __test__ = False

    last_tested: Optional[datetime] = None
    test_result: Optional[TestResult] = None


@dataclass
class ValidationConfig:
    """Endpoint validation settings."""

    validate_ssl: bool = True
    test_endpoint: TestEndpoint = field(default_factory=TestEndpoint)


# =============================================================================
# Runtime State
# =============================================================================


@dataclass
class Suspension:
    """Suspension record; a suspended subscription never delivers."""

    suspended: bool = False
    suspended_at: Optional[datetime] = None
    suspended_until: Optional[datetime] = None
    reason: Optional[str] = None
    auto_resume: bool = True


@dataclass
class HealthSnapshot:
    """Last computed health."""

    status: HealthStatus = HealthStatus.UNKNOWN
    last_checked: Optional[datetime] = None
    consecutive_failures: int = 0
    error_rate: float = 0.0


@dataclass
class LastDelivery:
    """Summary of the most recent attempt."""

    attempted_at: Optional[datetime] = None
    succeeded_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    status_code: Optional[int] = None
    response_time_ms: Optional[float] = None
    error: Optional[str] = None


@dataclass
class SubscriptionStatus:
    """Mutable lifecycle status."""

    state: SubscriptionState = SubscriptionState.ACTIVE
    health: HealthSnapshot = field(default_factory=HealthSnapshot)
    suspension: Suspension = field(default_factory=Suspension)
    last_delivery: LastDelivery = field(default_factory=LastDelivery)


@dataclass
class EventStats:
    """Per event type counters."""

    count: int = 0
    successes: int = 0
    failures: int = 0


@dataclass
class DeliveryStatistics:
    """Rolling delivery statistics."""

    total_deliveries: int = 0
    successful_deliveries: int = 0
    failed_deliveries: int = 0
    total_retries: int = 0
    average_response_time_ms: float = 0.0
    success_rate: float = 1.0
    last_reset: Optional[datetime] = None
    event_stats: Dict[str, EventStats] = field(default_factory=dict)


@dataclass
class QueueEntry:
    """A failed delivery waiting for its next attempt."""

    event_id: str
    event_type: str
    payload: Any = None
    attempt_count: int = 1
    next_attempt: Optional[datetime] = None
    added_at: Optional[datetime] = None
    tenant_id: Optional[str] = None
    organization_id: Optional[str] = None


@dataclass
class DeliveryQueue:
    """Bounded retry queue."""

    pending: List[QueueEntry] = field(default_factory=list)
    processing: bool = False
    processing_started_at: Optional[datetime] = None
    last_processed: Optional[datetime] = None
    max_queue_size: int = 1000

    def find(self, event_id: str) -> Optional[QueueEntry]:
        for entry in self.pending:
            if entry.event_id == event_id:
                return entry
        return None

    def remove(self, event_id: str) -> bool:
        before = len(self.pending)
        self.pending = [e for e in self.pending if e.event_id != event_id]
        return len(self.pending) != before


@dataclass
class DeliveryRecord:
    """One entry of the bounded delivery history."""

    delivery_id: str
    event_id: str
    event_type: str
    delivered_at: datetime
    attempt_number: int = 1
    success: bool = False
    status_code: Optional[int] = None
    response_time_ms: Optional[float] = None
    error: Optional[str] = None


@dataclass
class Subscription:
    """A tenant's webhook endpoint plus its delivery policy and runtime state."""

    tenant_id: str
    organization_id: str
    name: str
    target_url: str
    id: str = field(default_factory=lambda: generate_id("whk_"))
    description: str = ""
    events: EventSubscription = field(default_factory=EventSubscription)
    authentication: AuthenticationConfig = field(default_factory=AuthenticationConfig)
    request: RequestConfig = field(default_factory=RequestConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    transformation: TransformationConfig = field(default_factory=TransformationConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    status: SubscriptionStatus = field(default_factory=SubscriptionStatus)
    statistics: DeliveryStatistics = field(default_factory=DeliveryStatistics)
    queue: DeliveryQueue = field(default_factory=DeliveryQueue)
    delivery_history: List[DeliveryRecord] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    # Derived views

    @property
    def success_rate(self) -> float:
        if self.statistics.total_deliveries == 0:
            return 1.0
        return self.statistics.successful_deliveries / self.statistics.total_deliveries

    @property
    def queue_size(self) -> int:
        return len(self.queue.pending)

    @property
    def requires_authentication(self) -> bool:
        return self.authentication.method != AuthMethod.NONE

    @property
    def is_healthy(self) -> bool:
        return (
            self.status.health.status == HealthStatus.HEALTHY
            and self.status.state == SubscriptionState.ACTIVE
            and self.circuit_breaker.state != CircuitState.OPEN
        )

    @property
    def can_deliver(self) -> bool:
        """Deliverable right now, ignoring lazy time-based transitions."""
        return (
            self.status.state == SubscriptionState.ACTIVE
            and not self.status.suspension.suspended
            and self.circuit_breaker.state != CircuitState.OPEN
            and not self.rate_limit.exceeded
        )

    def to_dict(self, include_secrets: bool = False) -> Dict[str, Any]:
        """Convert to a JSON-compatible dictionary.

        Secret material is dropped unless ``include_secrets`` is set, which
        only persistence should do.
        """
        data = _encode(self)
        if not include_secrets:
            for path in SECRET_PATHS:
                _redact(data, path)
        data["success_rate"] = self.success_rate
        data["queue_size"] = self.queue_size
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Subscription":
        """Rebuild a subscription from ``to_dict`` output."""
        return _decode(cls, data)

    def clone(self) -> "Subscription":
        return copy.deepcopy(self)


SECRET_PATHS = (
    ("authentication", "credentials", "password"),
    ("authentication", "credentials", "token"),
    ("authentication", "credentials", "client_secret"),
    ("authentication", "hmac", "secret"),
)


@dataclass
class WebhookEvent:
    """A domain event produced by an external collaborator."""

    type: str
    tenant_id: str
    organization_id: str
    data: Any = None
    id: str = field(default_factory=lambda: generate_id("evt_"))
    produced_at: datetime = field(default_factory=utcnow)

    @property
    def category(self) -> str:
        return event_category(self.type)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WebhookEvent":
        return cls(
            id=data.get("id") or generate_id("evt_"),
            type=data["type"],
            tenant_id=data["tenant_id"],
            organization_id=data["organization_id"],
            data=data.get("data"),
        )


@dataclass
class DeliveryAttempt:
    """Transient record of one HTTP call."""

    event_id: str
    event_type: str
    attempt_number: int
    success: bool
    timestamp: datetime
    status_code: Optional[int] = None
    response_time_ms: float = 0.0
    error: Optional[str] = None
    retryable: bool = True
    delivery_id: str = field(default_factory=lambda: generate_id("dlv_"))


@dataclass
class DeliveryResult:
    """Per-subscription result reported by the dispatcher and executor."""

    subscription_id: str
    success: bool
    status_code: Optional[int] = None
    response_time_ms: Optional[float] = None
    error: Optional[str] = None
    delivery_id: Optional[str] = None
    attempt_number: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


# =============================================================================
# Serialization helpers
# =============================================================================


def _encode(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _encode(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


def _allows_none(tp: Any) -> bool:
    if tp is Any:
        return True
    return typing.get_origin(tp) is typing.Union and type(None) in typing.get_args(tp)


def _decode(tp: Any, value: Any) -> Any:
    if value is None:
        return None

    origin = typing.get_origin(tp)
    args = typing.get_args(tp)

    if origin is typing.Union:
        inner = [a for a in args if a is not type(None)]
        return _decode(inner[0], value) if len(inner) == 1 else value
    if origin in (list, List):
        if not isinstance(value, (list, tuple)):
            raise TypeError(f"expected a list, got {value!r}")
        return [_decode(args[0], v) for v in value] if args else list(value)
    if origin in (dict, Dict):
        if not isinstance(value, dict):
            raise TypeError(f"expected an object, got {value!r}")
        return {k: _decode(args[1], v) for k, v in value.items()} if args else dict(value)
    if tp is Any:
        return value
    if isinstance(tp, type) and dataclasses.is_dataclass(tp):
        if not isinstance(value, dict):
            raise TypeError(f"expected an object, got {value!r}")
        hints = typing.get_type_hints(tp)
        kwargs = {}
        for f in dataclasses.fields(tp):
            if not f.init or f.name not in value:
                continue
            raw = value[f.name]
            if raw is None and not _allows_none(hints[f.name]):
                raise ValueError(f"{f.name} must not be null")
            try:
                kwargs[f.name] = _decode(hints[f.name], raw)
            except (TypeError, ValueError) as e:
                raise ValueError(f"{f.name}: {e}") from e
        return tp(**kwargs)
    if isinstance(tp, type) and issubclass(tp, Enum):
        return tp(value)
    if tp is datetime:
        return value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if tp is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ("true", "false"):
            return value.lower() == "true"
        raise TypeError(f"expected a boolean, got {value!r}")
    if tp is int:
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            raise TypeError(f"expected an integer, got {value!r}")
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(f"expected an integer, got {value!r}")
        return int(value)
    if tp is float:
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            raise TypeError(f"expected a number, got {value!r}")
        return float(value)
    if tp is str and not isinstance(value, str):
        raise TypeError(f"expected a string, got {value!r}")
    return value


def _redact(data: Dict[str, Any], path: tuple) -> None:
    node = data
    for part in path[:-1]:
        node = node.get(part)
        if not isinstance(node, dict):
            return
    node.pop(path[-1], None)


def generate_secret(length: int = 32) -> str:
    """Generate a hex-encoded signing secret."""
    return secrets.token_hex(length)


# =============================================================================
# Exceptions
# =============================================================================


class WebhookError(Exception):
    """Base exception for webhook engine errors."""

    code = "WEBHOOK_ERROR"
    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class ValidationError(WebhookError):
    """Malformed subscription configuration."""

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str, errors: Optional[List[str]] = None, code: Optional[str] = None):
        super().__init__(message, code)
        self.errors = errors or [message]


class ConfigurationError(WebhookError):
    """Subscription is configured in a way delivery cannot honour."""

    code = "CONFIGURATION_ERROR"
    status_code = 500


class SubscriptionNotFound(WebhookError):
    """No subscription with the given id."""

    code = "SUBSCRIPTION_NOT_FOUND"
    status_code = 404


class RateLimitExceeded(WebhookError):
    """A rate limit window is saturated."""

    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429

    def __init__(
        self,
        message: str,
        period: RateLimitPeriod,
        limit: int,
        reset_at: Optional[datetime],
        retry_after: float,
    ):
        super().__init__(message)
        self.period = period
        self.limit = limit
        self.reset_at = reset_at
        self.retry_after = retry_after


class WebhookUnavailable(WebhookError):
    """Subscription is not in a deliverable state."""

    code = "WEBHOOK_UNAVAILABLE"
    status_code = 409

    def __init__(self, message: str, reason: str):
        super().__init__(message)
        self.reason = reason


class DeliveryFailure(WebhookError):
    """The HTTP attempt did not succeed."""

    code = "DELIVERY_FAILED"
    status_code = 502

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.response_status = status_code


class RetryExhausted(WebhookError):
    """A queued delivery ran out of retries and was dropped."""

    code = "RETRY_EXHAUSTED"
    status_code = 410

    def __init__(self, message: str, event_id: str, attempts: int):
        super().__init__(message)
        self.event_id = event_id
        self.attempts = attempts


# =============================================================================
# Exports
# =============================================================================


__all__ = [
    # Helpers
    "utcnow",
    "generate_id",
    "generate_secret",
    "event_category",
    "event_type_matches",
    "EVENT_TYPE_PATTERN",
    "DEFAULT_RETRYABLE_STATUS_CODES",
    "DEFAULT_USER_AGENT",
    "TEST_EVENT_TYPE",
    # Enums
    "SubscriptionState",
    "HealthStatus",
    "CircuitState",
    "AuthMethod",
    "HmacAlgorithm",
    "HttpMethod",
    "PayloadFormat",
    "CompressionAlgorithm",
    "TlsVersion",
    "RateLimitPeriod",
    # Configuration
    "EventFilter",
    "EventSubscription",
    "Credentials",
    "HmacConfig",
    "OAuth2Config",
    "AuthenticationConfig",
    "CompressionConfig",
    "TlsConfig",
    "RequestConfig",
    "JitterConfig",
    "RetryConfig",
    "WindowUsage",
    "RateLimitConfig",
    "CircuitBreakerConfig",
    "CustomScript",
    "TransformationConfig",
    "TestResult",
    "TestEndpoint",
    "ValidationConfig",
    # State
    "Suspension",
    "HealthSnapshot",
    "LastDelivery",
    "SubscriptionStatus",
    "EventStats",
    "DeliveryStatistics",
    "QueueEntry",
    "DeliveryQueue",
    "DeliveryRecord",
    "Subscription",
    "WebhookEvent",
    "DeliveryAttempt",
    "DeliveryResult",
    # Exceptions
    "WebhookError",
    "ValidationError",
    "ConfigurationError",
    "SubscriptionNotFound",
    "RateLimitExceeded",
    "WebhookUnavailable",
    "DeliveryFailure",
    "RetryExhausted",
]

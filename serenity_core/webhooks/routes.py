"""Webhook administration API routes."""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from .base import (
    AuthMethod,
    CompressionAlgorithm,
    HmacAlgorithm,
    HttpMethod,
    PayloadFormat,
    SubscriptionState,
    TlsVersion,
    ValidationError,
    WebhookError,
)
from .engine import WebhookEngine

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


# Request/Response models


class EventFilterModel(BaseModel):
    include_patterns: List[str] = Field(default_factory=list)
    exclude_patterns: List[str] = Field(default_factory=list)
    conditions: Dict[str, Any] = Field(default_factory=dict)


class EventsModel(BaseModel):
    subscribed: List[str] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)
    filters: Optional[EventFilterModel] = None


class CredentialsModel(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None


class HmacModel(BaseModel):
    algorithm: HmacAlgorithm = HmacAlgorithm.SHA256
    secret: Optional[str] = None
    header_name: str = "X-Webhook-Signature"


class OAuth2Model(BaseModel):
    token_url: Optional[str] = None
    scope: Optional[str] = None
    grant_type: str = "client_credentials"


class AuthenticationModel(BaseModel):
    method: AuthMethod = AuthMethod.HMAC
    credentials: Optional[CredentialsModel] = None
    hmac: Optional[HmacModel] = None
    oauth2: Optional[OAuth2Model] = None
    custom_headers: Dict[str, str] = Field(default_factory=dict)


class CompressionModel(BaseModel):
    enabled: bool = False
    algorithm: CompressionAlgorithm = CompressionAlgorithm.GZIP


class TlsModel(BaseModel):
    reject_unauthorized: bool = True
    min_version: TlsVersion = TlsVersion.TLS_1_2


class RequestModel(BaseModel):
    method: HttpMethod = HttpMethod.POST
    headers: Optional[Dict[str, str]] = None
    timeout_ms: int = Field(default=30000, ge=1000, le=300000)
    max_payload_size: int = Field(default=1048576, ge=1024, le=10485760)
    compression: Optional[CompressionModel] = None
    tls: Optional[TlsModel] = None


class JitterModel(BaseModel):
    enabled: bool = True
    factor: float = Field(default=0.1, ge=0, le=1)


class RetryModel(BaseModel):
    enabled: bool = True
    max_retries: int = Field(default=3, ge=0, le=10)
    initial_delay_ms: int = Field(default=1000, ge=100, le=60000)
    backoff_multiplier: float = Field(default=2.0, ge=1, le=10)
    max_delay_ms: int = Field(default=300000, ge=1000, le=3600000)
    retryable_status_codes: Optional[List[int]] = None
    jitter: Optional[JitterModel] = None


class RateLimitModel(BaseModel):
    enabled: bool = False
    per_second: Optional[int] = Field(default=None, ge=0)
    per_minute: Optional[int] = Field(default=None, ge=0)
    per_hour: Optional[int] = Field(default=None, ge=0)
    per_day: Optional[int] = Field(default=None, ge=0)


class CircuitBreakerModel(BaseModel):
    enabled: bool = True
    threshold: int = Field(default=5, ge=1)
    timeout_ms: int = Field(default=60000, ge=1000)
    half_open_max_calls: int = Field(default=1, ge=1, le=100)


class CustomScriptModel(BaseModel):
    enabled: bool = False
    script: Optional[str] = None
    sandbox: bool = True


class TransformationModel(BaseModel):
    enabled: bool = False
    template: Any = None
    include_fields: List[str] = Field(default_factory=list)
    exclude_fields: List[str] = Field(default_factory=list)
    custom_script: Optional[CustomScriptModel] = None
    format: PayloadFormat = PayloadFormat.JSON


class ValidationModel(BaseModel):
    validate_ssl: bool = True


class WebhookCreate(BaseModel):
    """Create webhook request."""
    name: str = Field(..., min_length=1, max_length=200)
    target_url: str
    description: str = Field(default="", max_length=1000)
    events: EventsModel
    authentication: Optional[AuthenticationModel] = None
    request: Optional[RequestModel] = None
    retry: Optional[RetryModel] = None
    rate_limit: Optional[RateLimitModel] = None
    circuit_breaker: Optional[CircuitBreakerModel] = None
    transformation: Optional[TransformationModel] = None
    validation: Optional[ValidationModel] = None
    tags: List[str] = Field(default_factory=list)


class WebhookUpdate(BaseModel):
    """Update webhook request."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    target_url: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=1000)
    events: Optional[EventsModel] = None
    authentication: Optional[AuthenticationModel] = None
    request: Optional[RequestModel] = None
    retry: Optional[RetryModel] = None
    rate_limit: Optional[RateLimitModel] = None
    circuit_breaker: Optional[CircuitBreakerModel] = None
    transformation: Optional[TransformationModel] = None
    validation: Optional[ValidationModel] = None
    tags: Optional[List[str]] = None
    state: Optional[SubscriptionState] = None


class SuspendRequest(BaseModel):
    """Suspend webhook request."""
    reason: str = Field(..., min_length=1)
    duration_seconds: Optional[int] = Field(default=None, gt=0)
    auto_resume: bool = True


class EventRequest(BaseModel):
    """Event intake request."""
    id: Optional[str] = None
    type: str
    tenant_id: str
    organization_id: str
    data: Any = None


class DeliveryResultResponse(BaseModel):
    subscription_id: str
    success: bool
    status_code: Optional[int] = None
    response_time_ms: Optional[float] = None
    error: Optional[str] = None
    delivery_id: Optional[str] = None
    attempt_number: int = 1


class DeliveryRecordResponse(BaseModel):
    delivery_id: str
    event_id: str
    event_type: str
    delivered_at: datetime
    attempt_number: int
    success: bool
    status_code: Optional[int] = None
    response_time_ms: Optional[float] = None
    error: Optional[str] = None


# Dependency injection
_engine: Optional[WebhookEngine] = None


def get_engine() -> WebhookEngine:
    global _engine
    if _engine is None:
        _engine = WebhookEngine.from_settings()
    return _engine


def set_engine(engine: Optional[WebhookEngine]) -> None:
    global _engine
    _engine = engine


def to_http_exception(error: WebhookError) -> HTTPException:
    detail: Dict[str, Any] = {"code": error.code, "message": error.message}
    if isinstance(error, ValidationError):
        detail["errors"] = error.errors
    headers = None
    retry_after = getattr(error, "retry_after", None)
    if retry_after is not None:
        headers = {"Retry-After": str(int(retry_after) + 1)}
    return HTTPException(status_code=error.status_code, detail=detail, headers=headers)


# Routes


@router.get("", response_model=List[Dict[str, Any]])
async def list_webhooks(
    tenant_id: Optional[str] = Query(None, description="Tenant ID"),
    organization_id: Optional[str] = Query(None, description="Organization ID"),
    state: Optional[SubscriptionState] = Query(None, description="Filter by state"),
    engine: WebhookEngine = Depends(get_engine),
):
    """List webhooks, optionally scoped to a tenant and organization."""
    subscriptions = await engine.registry.list(tenant_id, organization_id, state)
    return [s.to_dict() for s in subscriptions]


@router.post("", status_code=201)
async def create_webhook(
    data: WebhookCreate,
    tenant_id: str = Query(..., description="Tenant ID"),
    organization_id: str = Query(..., description="Organization ID"),
    created_by: Optional[str] = Query(None),
    engine: WebhookEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """Create a new webhook endpoint. The HMAC secret is only returned here."""
    config = data.model_dump(mode="json", exclude_unset=True, exclude_none=True)
    config.update(tenant_id=tenant_id, organization_id=organization_id)
    try:
        subscription = await engine.registry.register(config, created_by=created_by)
    except WebhookError as e:
        raise to_http_exception(e)

    response = subscription.to_dict()
    if subscription.authentication.method == AuthMethod.HMAC:
        response["secret"] = subscription.authentication.hmac.secret
    return response


@router.get("/statistics")
async def webhook_statistics(
    tenant_id: Optional[str] = Query(None),
    organization_id: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    engine: WebhookEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """Aggregate statistics across webhooks."""
    return await engine.registry.statistics(tenant_id, organization_id, start_date, end_date)


@router.post("/events", response_model=List[DeliveryResultResponse])
async def dispatch_event(
    event: EventRequest,
    engine: WebhookEngine = Depends(get_engine),
):
    """Dispatch an event to every matching webhook."""
    results = await engine.dispatch(event.model_dump(exclude_none=True))
    return [DeliveryResultResponse(**r.to_dict()) for r in results]


@router.get("/{webhook_id}")
async def get_webhook(
    webhook_id: str,
    engine: WebhookEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """Get webhook details."""
    try:
        subscription = await engine.registry.get(webhook_id)
    except WebhookError as e:
        raise to_http_exception(e)
    return subscription.to_dict()


@router.patch("/{webhook_id}")
async def update_webhook(
    webhook_id: str,
    updates: WebhookUpdate,
    updated_by: Optional[str] = Query(None),
    engine: WebhookEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """Update a webhook."""
    patch = updates.model_dump(mode="json", exclude_unset=True)
    try:
        subscription = await engine.registry.update(webhook_id, patch, updated_by=updated_by)
    except WebhookError as e:
        raise to_http_exception(e)
    return subscription.to_dict()


@router.delete("/{webhook_id}", status_code=204)
async def delete_webhook(
    webhook_id: str,
    engine: WebhookEngine = Depends(get_engine),
):
    """Delete a webhook."""
    try:
        await engine.registry.delete(webhook_id)
    except WebhookError as e:
        raise to_http_exception(e)
    return None


@router.get("/{webhook_id}/deliveries", response_model=List[DeliveryRecordResponse])
async def get_delivery_history(
    webhook_id: str,
    limit: int = Query(50, ge=1, le=100),
    engine: WebhookEngine = Depends(get_engine),
):
    """Recent delivery attempts, newest first."""
    try:
        records = await engine.registry.history(webhook_id, limit)
    except WebhookError as e:
        raise to_http_exception(e)
    return [DeliveryRecordResponse(**vars(r)) for r in records]


@router.post("/{webhook_id}/suspend")
async def suspend_webhook(
    webhook_id: str,
    data: SuspendRequest,
    engine: WebhookEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """Suspend deliveries to a webhook."""
    duration = timedelta(seconds=data.duration_seconds) if data.duration_seconds else None
    try:
        subscription = await engine.registry.suspend(
            webhook_id, data.reason, duration, data.auto_resume
        )
    except WebhookError as e:
        raise to_http_exception(e)
    return subscription.to_dict()


@router.post("/{webhook_id}/resume")
async def resume_webhook(
    webhook_id: str,
    engine: WebhookEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """Resume a suspended webhook."""
    try:
        subscription = await engine.registry.resume(webhook_id)
    except WebhookError as e:
        raise to_http_exception(e)
    return subscription.to_dict()


@router.post("/{webhook_id}/test", response_model=DeliveryResultResponse)
async def test_webhook(
    webhook_id: str,
    engine: WebhookEngine = Depends(get_engine),
):
    """Send a test event to a webhook."""
    try:
        result = await engine.test(webhook_id)
    except WebhookError as e:
        raise to_http_exception(e)
    return DeliveryResultResponse(**result.to_dict())


@router.post("/{webhook_id}/queue/process")
async def process_webhook_queue(
    webhook_id: str,
    engine: WebhookEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """Re-attempt queued deliveries that are due."""
    try:
        attempted = await engine.process_queue(webhook_id)
        subscription = await engine.registry.get(webhook_id)
    except WebhookError as e:
        raise to_http_exception(e)
    return {"attempted": attempted, "queue_size": subscription.queue_size}

"""Webhook data models.

Defines Pydantic schemas for endpoints, subscriptions, outbound deliveries
and inbound events, plus the request models used by the API router.
"""

from enum import Enum
from typing import Optional, Any, Dict, List
from datetime import datetime, timezone
from pydantic import BaseModel, Field
import uuid


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


MISSING = object()


def get_path(data: Any, key: str, default: Any = MISSING) -> Any:
    """Look up a dotted key (``order.status``) in nested dicts.

    Returns ``default`` when any segment is absent. Callers that need to
    distinguish "absent" from ``None`` leave ``default`` unset and compare
    against ``MISSING``.
    """
    if isinstance(data, dict) and key in data:
        return data[key]

    current = data
    for part in key.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def event_matches(pattern: str, event: str) -> bool:
    """Check an event type against a pattern.

    A pattern is either an exact event type or ends with ``*`` for a prefix
    match, so ``payment.*`` matches ``payment.failed`` but not ``payment``.
    """
    if pattern == "*":
        return True
    if pattern.endswith("*"):
        return event.startswith(pattern[:-1])
    return pattern == event


class DeliveryStatus(str, Enum):
    """Lifecycle states of an outbound delivery."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"  # claimed by a worker, HTTP call in flight
    SUCCESS = "success"
    FAILED = "failed"
    RETRYING = "retrying"
    CANCELLED = "cancelled"


# States a worker may claim a delivery from
CLAIMABLE_STATUSES = (DeliveryStatus.PENDING, DeliveryStatus.RETRYING)


class RetryStrategy(str, Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"


class ProcessingStatus(str, Enum):
    """Outcome of running an inbound event through its handler."""

    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class WebhookEndpoint(BaseModel):
    """A registered destination with its delivery policy."""

    id: str = Field(default_factory=new_id)
    name: str = ""
    url: str = Field(..., description="Destination URL webhooks are POSTed to")
    description: Optional[str] = None
    is_active: bool = True
    secret: Optional[str] = Field(None, description="Shared secret for HMAC signatures")
    signature_algorithm: str = "sha256"
    timeout: Optional[float] = None
    connect_timeout: Optional[float] = None
    retry_limit: Optional[int] = None
    retry_intervals: List[int] = Field(
        default_factory=list,
        description="Seconds to wait before each retry, by attempt number",
    )
    headers: Dict[str, str] = Field(default_factory=dict)
    events: List[str] = Field(
        default_factory=list,
        description="Event types or prefix.* patterns (empty = all)",
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def supports_event(self, event: str) -> bool:
        """Check whether this endpoint accepts an event type."""
        if not self.events:
            return True
        return any(event_matches(pattern, event) for pattern in self.events)


class WebhookSubscription(BaseModel):
    """Binds an endpoint to an event pattern with optional payload filters."""

    id: str = Field(default_factory=new_id)
    endpoint_id: str
    event_type: str = Field(..., description="Exact event type or trailing-* pattern")
    filters: Dict[str, Any] = Field(default_factory=dict)
    description: Optional[str] = None
    is_active: bool = True
    expires_at: Optional[datetime] = None
    max_deliveries: Optional[int] = None
    delivery_count: int = 0
    last_delivery_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())

    def has_reached_limit(self) -> bool:
        return self.max_deliveries is not None and self.delivery_count >= self.max_deliveries

    def is_eligible(self, now: Optional[datetime] = None) -> bool:
        """Active, not expired and still under its delivery cap."""
        return self.is_active and not self.is_expired(now) and not self.has_reached_limit()

    def matches_event(self, event: str) -> bool:
        return event_matches(self.event_type, event)

    def matches_filters(self, payload: Dict[str, Any]) -> bool:
        """Apply filter predicates against an event payload.

        Every filter key must exist in the payload. A list filter value
        requires the payload value to be one of its members; any other
        filter value requires equality.
        """
        for key, expected in self.filters.items():
            actual = get_path(payload, key)
            if actual is MISSING:
                return False
            if isinstance(expected, list):
                if actual not in expected:
                    return False
            elif actual != expected:
                return False
        return True


class WebhookDelivery(BaseModel):
    """One attempt series for sending one event to one destination."""

    id: str = Field(default_factory=new_id)
    endpoint_id: Optional[str] = None
    destination: str
    event: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    headers: Dict[str, str] = Field(default_factory=dict)
    signature: Optional[str] = None
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempt: int = 1
    max_attempts: int = 3
    last_attempt_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    response_status_code: Optional[int] = None
    response_body: Optional[str] = None
    response_headers: Optional[Dict[str, str]] = None
    response_time_ms: Optional[int] = None
    error_message: Optional[str] = None
    error_detail: Optional[str] = None
    success: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def can_be_retried(self) -> bool:
        return (
            self.attempt < self.max_attempts
            and self.status in (DeliveryStatus.FAILED, DeliveryStatus.RETRYING)
        )

    def can_be_cancelled(self) -> bool:
        return self.status in (DeliveryStatus.PENDING, DeliveryStatus.RETRYING)

    def is_claimable(self) -> bool:
        return self.status in CLAIMABLE_STATUSES


class InboundEvent(BaseModel):
    """A received webhook, stored before processing."""

    id: str = Field(default_factory=new_id)
    source: str
    event: str
    payload: Any = Field(default_factory=dict)
    raw_body: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    signature: Optional[str] = None
    is_valid: bool = True
    validation_message: Optional[str] = None
    is_processed: bool = False
    processing_status: Optional[ProcessingStatus] = None
    processing_error: Optional[str] = None
    processing_time_ms: Optional[int] = None
    handler: Optional[str] = None
    processed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    def mark_processed(
        self,
        status: ProcessingStatus,
        error: Optional[str] = None,
        processing_time_ms: Optional[int] = None,
        handler: Optional[str] = None,
    ) -> None:
        self.is_processed = True
        self.processing_status = status
        self.processing_error = error
        self.processing_time_ms = processing_time_ms
        self.handler = handler
        self.processed_at = utcnow()


# ============================================================================
# API request models
# ============================================================================

class EndpointCreateRequest(BaseModel):
    """Request to register a new endpoint."""

    url: str
    name: str = ""
    description: Optional[str] = None
    secret: Optional[str] = None
    signature_algorithm: str = "sha256"
    timeout: Optional[float] = None
    connect_timeout: Optional[float] = None
    retry_limit: Optional[int] = None
    retry_intervals: List[int] = Field(default_factory=list)
    headers: Dict[str, str] = Field(default_factory=dict)
    events: List[str] = Field(default_factory=list)
    is_active: bool = True
    metadata: Dict[str, Any] = Field(default_factory=dict)


class EndpointUpdateRequest(BaseModel):
    url: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    secret: Optional[str] = None
    signature_algorithm: Optional[str] = None
    timeout: Optional[float] = None
    connect_timeout: Optional[float] = None
    retry_limit: Optional[int] = None
    retry_intervals: Optional[List[int]] = None
    headers: Optional[Dict[str, str]] = None
    events: Optional[List[str]] = None
    is_active: Optional[bool] = None
    metadata: Optional[Dict[str, Any]] = None


class SubscriptionCreateRequest(BaseModel):
    endpoint_id: str
    event_type: str
    filters: Dict[str, Any] = Field(default_factory=dict)
    description: Optional[str] = None
    is_active: bool = True
    expires_at: Optional[datetime] = None
    max_deliveries: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SubscriptionUpdateRequest(BaseModel):
    event_type: Optional[str] = None
    filters: Optional[Dict[str, Any]] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    expires_at: Optional[datetime] = None
    max_deliveries: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None


class SendRequest(BaseModel):
    """Send an event to a URL or a registered endpoint."""

    event: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    url: Optional[str] = None
    endpoint_id: Optional[str] = None
    queue: bool = True
    headers: Dict[str, str] = Field(default_factory=dict)
    max_attempts: Optional[int] = None


class BroadcastRequest(BaseModel):
    event: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    queue: bool = True


class RetryRequest(BaseModel):
    queue: bool = True
    headers: Optional[Dict[str, str]] = None
    timeout: Optional[float] = None
    max_attempts: Optional[int] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class DeliveryListResponse(BaseModel):
    deliveries: List[WebhookDelivery]
    total: int

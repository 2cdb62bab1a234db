"""Webhook API routes.

FastAPI router for endpoint and subscription management, outbound
dispatch, delivery inspection, circuit inspection and inbound reception.
"""

from fastapi import APIRouter, HTTPException, Request
from typing import Dict, List, Optional
import logging

from .exceptions import (
    CircuitOpenError,
    ConfigurationError,
    DeliveryError,
    DeliveryNotFoundError,
    DispatchAbortedError,
    EndpointInactiveError,
    EndpointNotFoundError,
    InvalidSignatureError,
    InvalidStateTransitionError,
    SubscriptionNotFoundError,
    UnsupportedEventError,
    WebhookError,
)
from .models import (
    BroadcastRequest,
    CancelRequest,
    DeliveryListResponse,
    DeliveryStatus,
    EndpointCreateRequest,
    EndpointUpdateRequest,
    InboundEvent,
    RetryRequest,
    SendRequest,
    SubscriptionCreateRequest,
    SubscriptionUpdateRequest,
    WebhookDelivery,
    WebhookEndpoint,
    WebhookSubscription,
)
from .security import InboundRequest
from .service import get_services
from .utils import normalize_url

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

ERROR_STATUS = [
    ((EndpointNotFoundError, SubscriptionNotFoundError, DeliveryNotFoundError), 404),
    ((InvalidSignatureError,), 401),
    ((InvalidStateTransitionError,), 409),
    ((EndpointInactiveError, UnsupportedEventError, DispatchAbortedError), 422),
    ((CircuitOpenError,), 503),
    ((DeliveryError,), 502),
    ((ConfigurationError,), 500),
]


def http_error(error: WebhookError) -> HTTPException:
    """Map a webhook error to an HTTP error response."""
    for types, status_code in ERROR_STATUS:
        if isinstance(error, types):
            return HTTPException(status_code=status_code, detail=error.to_dict())
    return HTTPException(status_code=500, detail=error.to_dict())


# ============================================================================
# Endpoint Management
# ============================================================================

@router.post("/endpoints", response_model=WebhookEndpoint)
async def create_endpoint(request: EndpointCreateRequest):
    """Register a new endpoint; a secret is generated when none is given."""
    repository = get_services().repository
    fields = request.model_dump(exclude={"url"})
    return await repository.create_endpoint(request.url, **fields)


@router.get("/endpoints", response_model=List[WebhookEndpoint])
async def list_endpoints(active_only: bool = False, include_deleted: bool = False):
    return await get_services().repository.list_endpoints(active_only, include_deleted)


@router.get("/endpoints/{endpoint_id}", response_model=WebhookEndpoint)
async def get_endpoint(endpoint_id: str):
    try:
        return await get_services().repository.require_endpoint(endpoint_id)
    except WebhookError as e:
        raise http_error(e)


@router.patch("/endpoints/{endpoint_id}", response_model=WebhookEndpoint)
async def update_endpoint(endpoint_id: str, request: EndpointUpdateRequest):
    try:
        return await get_services().repository.update_endpoint(
            endpoint_id, **request.model_dump(exclude_unset=True)
        )
    except WebhookError as e:
        raise http_error(e)


@router.delete("/endpoints/{endpoint_id}")
async def delete_endpoint(endpoint_id: str, force: bool = False):
    """Soft-delete an endpoint (``force`` removes it and its subscriptions)."""
    try:
        await get_services().repository.delete_endpoint(endpoint_id, force=force)
    except WebhookError as e:
        raise http_error(e)
    return {"status": "success", "message": "Endpoint deleted"}


@router.post("/endpoints/{endpoint_id}/activate", response_model=WebhookEndpoint)
async def activate_endpoint(endpoint_id: str):
    try:
        return await get_services().repository.set_endpoint_active(endpoint_id, True)
    except WebhookError as e:
        raise http_error(e)


@router.post("/endpoints/{endpoint_id}/deactivate", response_model=WebhookEndpoint)
async def deactivate_endpoint(endpoint_id: str):
    try:
        return await get_services().repository.set_endpoint_active(endpoint_id, False)
    except WebhookError as e:
        raise http_error(e)


# ============================================================================
# Subscriptions
# ============================================================================

@router.post("/subscriptions", response_model=WebhookSubscription)
async def create_subscription(request: SubscriptionCreateRequest):
    fields = request.model_dump(exclude={"endpoint_id", "event_type"})
    try:
        return await get_services().matcher.subscribe(request.endpoint_id, request.event_type, **fields)
    except WebhookError as e:
        raise http_error(e)


@router.get("/subscriptions", response_model=List[WebhookSubscription])
async def list_subscriptions(endpoint_id: Optional[str] = None, active_only: bool = False):
    return await get_services().repository.list_subscriptions(endpoint_id, active_only)


@router.get("/subscriptions/{subscription_id}", response_model=WebhookSubscription)
async def get_subscription(subscription_id: str):
    try:
        return await get_services().repository.require_subscription(subscription_id)
    except WebhookError as e:
        raise http_error(e)


@router.patch("/subscriptions/{subscription_id}", response_model=WebhookSubscription)
async def update_subscription(subscription_id: str, request: SubscriptionUpdateRequest):
    try:
        return await get_services().repository.update_subscription(
            subscription_id, **request.model_dump(exclude_unset=True)
        )
    except WebhookError as e:
        raise http_error(e)


@router.delete("/subscriptions/{subscription_id}")
async def delete_subscription(subscription_id: str):
    if not await get_services().repository.delete_subscription(subscription_id):
        raise http_error(SubscriptionNotFoundError(subscription_id))
    return {"status": "success", "message": "Subscription deleted"}


# ============================================================================
# Dispatch
# ============================================================================

@router.post("/send", response_model=WebhookDelivery)
async def send_webhook(request: SendRequest):
    """Send or queue an event to a URL or a registered endpoint."""
    dispatcher = get_services().dispatcher
    options: Dict = {"headers": request.headers}
    if request.max_attempts:
        options["max_attempts"] = request.max_attempts

    try:
        if request.endpoint_id:
            if request.queue:
                return await dispatcher.queue_to_endpoint(request.endpoint_id, request.event, request.payload, **options)
            return await dispatcher.send_to_endpoint(request.endpoint_id, request.event, request.payload, **options)
        if request.url:
            if request.queue:
                return await dispatcher.queue(request.url, request.event, request.payload, **options)
            return await dispatcher.send(request.url, request.event, request.payload, **options)
    except WebhookError as e:
        raise http_error(e)

    raise HTTPException(status_code=422, detail="Either url or endpoint_id is required")


@router.post("/broadcast", response_model=List[WebhookDelivery])
async def broadcast_event(request: BroadcastRequest):
    """Fan an event out to all matching subscriptions."""
    return await get_services().dispatcher.broadcast(request.event, request.payload, queue=request.queue)


# ============================================================================
# Deliveries
# ============================================================================

@router.get("/deliveries", response_model=DeliveryListResponse)
async def list_deliveries(
    status: Optional[DeliveryStatus] = None,
    endpoint_id: Optional[str] = None,
    event: Optional[str] = None,
    limit: int = 50,
):
    deliveries = await get_services().repository.list_deliveries(status, endpoint_id, event, limit)
    return DeliveryListResponse(deliveries=deliveries, total=len(deliveries))


@router.get("/deliveries/{delivery_id}", response_model=WebhookDelivery)
async def get_delivery(delivery_id: str):
    try:
        return await get_services().repository.require_delivery(delivery_id)
    except WebhookError as e:
        raise http_error(e)


@router.post("/deliveries/{delivery_id}/retry", response_model=WebhookDelivery)
async def retry_delivery(delivery_id: str, request: Optional[RetryRequest] = None):
    request = request or RetryRequest()
    options = {"timeout": request.timeout} if request.timeout else {}
    try:
        return await get_services().dispatcher.retry(
            delivery_id,
            queue=request.queue,
            headers=request.headers,
            max_attempts=request.max_attempts,
            **options,
        )
    except WebhookError as e:
        raise http_error(e)


@router.post("/deliveries/{delivery_id}/cancel", response_model=WebhookDelivery)
async def cancel_delivery(delivery_id: str, request: Optional[CancelRequest] = None):
    try:
        return await get_services().dispatcher.cancel(delivery_id, (request or CancelRequest()).reason)
    except WebhookError as e:
        raise http_error(e)


# ============================================================================
# Circuits, Stats and Health
# ============================================================================

@router.get("/circuits/{destination:path}")
async def get_circuit(destination: str):
    breaker = get_services().circuit_breaker
    if breaker is None:
        raise HTTPException(status_code=404, detail="Circuit breaker is disabled")
    return await breaker.get_status(normalize_url(destination))


@router.post("/circuits/{destination:path}/reset")
async def reset_circuit(destination: str):
    breaker = get_services().circuit_breaker
    if breaker is None:
        raise HTTPException(status_code=404, detail="Circuit breaker is disabled")
    await breaker.reset(normalize_url(destination))
    return {"status": "success", "message": f"Circuit reset for {destination}"}


@router.get("/stats")
async def get_stats():
    return await get_services().repository.get_stats()


@router.get("/health")
async def health():
    services = get_services()
    open_circuits = (
        await services.circuit_breaker.get_open_circuits() if services.circuit_breaker else []
    )
    return {
        "status": "healthy",
        "queue_pending": await services.queue.get_pending_count(),
        "open_circuits": open_circuits,
    }


# ============================================================================
# Inbound Webhooks
# ============================================================================

@router.get("/events", response_model=List[InboundEvent])
async def list_inbound_events(source: Optional[str] = None, limit: int = 50):
    return await get_services().repository.list_events(source, limit)


@router.post("/receive/{source}")
async def receive_webhook(source: str, request: Request):
    """Receive an inbound webhook from an external source.

    The source path parameter selects the provider's verification
    settings (e.g. ``stripe``, ``github``).
    """
    inbound = InboundRequest(
        body=await request.body(),
        headers=dict(request.headers),
        query=dict(request.query_params),
        method=request.method,
        client_ip=request.client.host if request.client else None,
    )
    result = await get_services().receiver.handle_request(source, inbound)

    if result.status_code >= 400:
        raise HTTPException(status_code=result.status_code, detail=result.message)
    return result.to_dict()

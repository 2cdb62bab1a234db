"""Webhook persistence.

``WebhookRepository`` is the storage seam for endpoints, subscriptions,
deliveries and inbound events. The in-memory implementation suits tests and
single-process use; ``SqliteWebhookRepository`` persists to disk.

Delivery status changes made by workers go through
``compare_and_set_status`` so two workers can never both claim the same
delivery.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .exceptions import (
    DeliveryNotFoundError,
    EndpointNotFoundError,
    SubscriptionNotFoundError,
)
from .models import (
    DeliveryStatus,
    InboundEvent,
    WebhookDelivery,
    WebhookEndpoint,
    WebhookSubscription,
    utcnow,
)
from .utils import generate_secret

logger = logging.getLogger(__name__)


class WebhookRepository(ABC):
    """Abstract base class for webhook storage backends."""

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    @abstractmethod
    async def save_endpoint(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        """Insert or replace an endpoint."""
        pass

    @abstractmethod
    async def get_endpoint(self, endpoint_id: str) -> Optional[WebhookEndpoint]:
        pass

    @abstractmethod
    async def list_endpoints(
        self,
        active_only: bool = False,
        include_deleted: bool = False,
    ) -> List[WebhookEndpoint]:
        pass

    @abstractmethod
    async def purge_endpoint(self, endpoint_id: str) -> bool:
        """Hard-delete an endpoint row."""
        pass

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    @abstractmethod
    async def save_subscription(self, subscription: WebhookSubscription) -> WebhookSubscription:
        pass

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Optional[WebhookSubscription]:
        pass

    @abstractmethod
    async def list_subscriptions(
        self,
        endpoint_id: Optional[str] = None,
        active_only: bool = False,
    ) -> List[WebhookSubscription]:
        pass

    @abstractmethod
    async def delete_subscription(self, subscription_id: str) -> bool:
        pass

    @abstractmethod
    async def increment_delivery_count(self, subscription_id: str) -> int:
        """Atomically bump a subscription's delivery counter and return it."""
        pass

    # ------------------------------------------------------------------
    # Deliveries
    # ------------------------------------------------------------------

    @abstractmethod
    async def save_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery:
        pass

    @abstractmethod
    async def get_delivery(self, delivery_id: str) -> Optional[WebhookDelivery]:
        pass

    @abstractmethod
    async def list_deliveries(
        self,
        status: Optional[DeliveryStatus] = None,
        endpoint_id: Optional[str] = None,
        event: Optional[str] = None,
        limit: Optional[int] = 100,
    ) -> List[WebhookDelivery]:
        """Deliveries matching the filters, newest first."""
        pass

    @abstractmethod
    async def compare_and_set_status(
        self,
        delivery_id: str,
        expected: Iterable[DeliveryStatus],
        new_status: DeliveryStatus,
        **changes: Any,
    ) -> Optional[WebhookDelivery]:
        """Move a delivery to ``new_status`` only if it is in one of ``expected``.

        Returns:
            The updated delivery, or None if the status did not match.
        """
        pass

    @abstractmethod
    async def find_due_retries(self, now: datetime, limit: int = 100) -> List[WebhookDelivery]:
        """Retrying deliveries whose ``next_attempt_at`` has passed."""
        pass

    @abstractmethod
    async def find_failed_since(self, since: datetime, limit: int = 100) -> List[WebhookDelivery]:
        """Failed deliveries last updated at or after ``since``."""
        pass

    @abstractmethod
    async def find_stale_in_progress(self, before: datetime, limit: int = 100) -> List[WebhookDelivery]:
        """In-progress deliveries last updated before ``before``."""
        pass

    @abstractmethod
    async def delete_deliveries_before(self, cutoff: datetime) -> int:
        pass

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    @abstractmethod
    async def save_event(self, event: InboundEvent) -> InboundEvent:
        pass

    @abstractmethod
    async def get_event(self, event_id: str) -> Optional[InboundEvent]:
        pass

    @abstractmethod
    async def list_events(
        self,
        source: Optional[str] = None,
        limit: Optional[int] = 100,
    ) -> List[InboundEvent]:
        pass

    @abstractmethod
    async def delete_events_before(self, cutoff: datetime) -> int:
        pass

    # ------------------------------------------------------------------
    # Admin helpers shared by every backend
    # ------------------------------------------------------------------

    async def require_endpoint(self, endpoint_id: str) -> WebhookEndpoint:
        endpoint = await self.get_endpoint(endpoint_id)
        if endpoint is None or endpoint.is_deleted:
            raise EndpointNotFoundError(endpoint_id)
        return endpoint

    async def require_subscription(self, subscription_id: str) -> WebhookSubscription:
        subscription = await self.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)
        return subscription

    async def require_delivery(self, delivery_id: str) -> WebhookDelivery:
        delivery = await self.get_delivery(delivery_id)
        if delivery is None:
            raise DeliveryNotFoundError(delivery_id)
        return delivery

    async def create_endpoint(self, url: str, **fields: Any) -> WebhookEndpoint:
        """Register an endpoint, generating a signing secret when none is given."""
        if not fields.get("secret"):
            fields["secret"] = generate_secret()
        endpoint = await self.save_endpoint(WebhookEndpoint(url=url, **fields))
        logger.info(f"Created endpoint {endpoint.id} -> {endpoint.url}")
        return endpoint

    async def update_endpoint(self, endpoint_id: str, **changes: Any) -> WebhookEndpoint:
        endpoint = await self.require_endpoint(endpoint_id)
        updated = endpoint.model_copy(update={**changes, "updated_at": utcnow()})
        return await self.save_endpoint(updated)

    async def set_endpoint_active(self, endpoint_id: str, active: bool) -> WebhookEndpoint:
        return await self.update_endpoint(endpoint_id, is_active=active)

    async def delete_endpoint(self, endpoint_id: str, force: bool = False) -> bool:
        """Soft-delete an endpoint so delivery history keeps its reference.

        Args:
            endpoint_id: The endpoint to remove.
            force: Hard-delete the row and its subscriptions instead.
        """
        endpoint = await self.require_endpoint(endpoint_id)
        for subscription in await self.list_subscriptions(endpoint_id=endpoint_id):
            if force:
                await self.delete_subscription(subscription.id)
            else:
                await self.save_subscription(
                    subscription.model_copy(update={"is_active": False, "updated_at": utcnow()})
                )

        if force:
            return await self.purge_endpoint(endpoint_id)

        await self.save_endpoint(
            endpoint.model_copy(update={"is_active": False, "deleted_at": utcnow()})
        )
        logger.info(f"Soft-deleted endpoint {endpoint_id}")
        return True

    async def update_subscription(self, subscription_id: str, **changes: Any) -> WebhookSubscription:
        subscription = await self.require_subscription(subscription_id)
        updated = subscription.model_copy(update={**changes, "updated_at": utcnow()})
        return await self.save_subscription(updated)

    async def set_subscription_active(self, subscription_id: str, active: bool) -> WebhookSubscription:
        return await self.update_subscription(subscription_id, is_active=active)

    async def set_subscription_expiration(
        self,
        subscription_id: str,
        expires_at: Optional[datetime],
    ) -> WebhookSubscription:
        return await self.update_subscription(subscription_id, expires_at=expires_at)

    async def set_subscription_limit(
        self,
        subscription_id: str,
        max_deliveries: Optional[int],
    ) -> WebhookSubscription:
        return await self.update_subscription(subscription_id, max_deliveries=max_deliveries)

    async def get_stats(self) -> Dict[str, Any]:
        """Delivery and inbound counters for monitoring."""
        deliveries = await self.list_deliveries(limit=None)
        events = await self.list_events(limit=None)

        by_status = {status.value: 0 for status in DeliveryStatus}
        response_times = []
        for delivery in deliveries:
            by_status[delivery.status.value] += 1
            if delivery.response_time_ms is not None:
                response_times.append(delivery.response_time_ms)

        finished = by_status["success"] + by_status["failed"]
        return {
            "deliveries": {
                "total": len(deliveries),
                "by_status": by_status,
                "success_rate": round(by_status["success"] / finished * 100, 2) if finished else None,
                "avg_response_time_ms": (
                    round(sum(response_times) / len(response_times), 2) if response_times else None
                ),
            },
            "inbound": {
                "total": len(events),
                "valid": sum(1 for e in events if e.is_valid),
                "invalid": sum(1 for e in events if not e.is_valid),
                "processed": sum(1 for e in events if e.is_processed),
            },
        }


class InMemoryWebhookRepository(WebhookRepository):
    """In-memory repository.

    Stores copies of the models, so callers must save to persist changes,
    exactly as with an external store.

    Example:
        >>> repo = InMemoryWebhookRepository()
        >>> endpoint = await repo.save_endpoint(WebhookEndpoint(url="https://example.com/hook"))
        >>> await repo.get_endpoint(endpoint.id)
    """

    def __init__(self):
        self._endpoints: Dict[str, WebhookEndpoint] = {}
        self._subscriptions: Dict[str, WebhookSubscription] = {}
        self._deliveries: Dict[str, WebhookDelivery] = {}
        self._events: Dict[str, InboundEvent] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _copy(model):
        return model.model_copy(deep=True) if model is not None else None

    async def save_endpoint(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        async with self._lock:
            self._endpoints[endpoint.id] = self._copy(endpoint)
            return self._copy(endpoint)

    async def get_endpoint(self, endpoint_id: str) -> Optional[WebhookEndpoint]:
        async with self._lock:
            return self._copy(self._endpoints.get(endpoint_id))

    async def list_endpoints(
        self,
        active_only: bool = False,
        include_deleted: bool = False,
    ) -> List[WebhookEndpoint]:
        async with self._lock:
            endpoints = [
                self._copy(e) for e in self._endpoints.values()
                if (include_deleted or not e.is_deleted) and (not active_only or e.is_active)
            ]
        return sorted(endpoints, key=lambda e: e.created_at)

    async def purge_endpoint(self, endpoint_id: str) -> bool:
        async with self._lock:
            return self._endpoints.pop(endpoint_id, None) is not None

    async def save_subscription(self, subscription: WebhookSubscription) -> WebhookSubscription:
        async with self._lock:
            self._subscriptions[subscription.id] = self._copy(subscription)
            return self._copy(subscription)

    async def get_subscription(self, subscription_id: str) -> Optional[WebhookSubscription]:
        async with self._lock:
            return self._copy(self._subscriptions.get(subscription_id))

    async def list_subscriptions(
        self,
        endpoint_id: Optional[str] = None,
        active_only: bool = False,
    ) -> List[WebhookSubscription]:
        async with self._lock:
            subscriptions = [
                self._copy(s) for s in self._subscriptions.values()
                if (endpoint_id is None or s.endpoint_id == endpoint_id)
                and (not active_only or s.is_active)
            ]
        return sorted(subscriptions, key=lambda s: s.created_at)

    async def delete_subscription(self, subscription_id: str) -> bool:
        async with self._lock:
            return self._subscriptions.pop(subscription_id, None) is not None

    async def increment_delivery_count(self, subscription_id: str) -> int:
        async with self._lock:
            subscription = self._subscriptions.get(subscription_id)
            if subscription is None:
                raise SubscriptionNotFoundError(subscription_id)
            subscription.delivery_count += 1
            subscription.last_delivery_at = utcnow()
            return subscription.delivery_count

    async def save_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery:
        async with self._lock:
            delivery.updated_at = utcnow()
            self._deliveries[delivery.id] = self._copy(delivery)
            return delivery

    async def get_delivery(self, delivery_id: str) -> Optional[WebhookDelivery]:
        async with self._lock:
            return self._copy(self._deliveries.get(delivery_id))

    async def list_deliveries(
        self,
        status: Optional[DeliveryStatus] = None,
        endpoint_id: Optional[str] = None,
        event: Optional[str] = None,
        limit: Optional[int] = 100,
    ) -> List[WebhookDelivery]:
        async with self._lock:
            deliveries = [
                self._copy(d) for d in self._deliveries.values()
                if (status is None or d.status == status)
                and (endpoint_id is None or d.endpoint_id == endpoint_id)
                and (event is None or d.event == event)
            ]
        deliveries.sort(key=lambda d: d.created_at, reverse=True)
        return deliveries if limit is None else deliveries[:limit]

    async def compare_and_set_status(
        self,
        delivery_id: str,
        expected: Iterable[DeliveryStatus],
        new_status: DeliveryStatus,
        **changes: Any,
    ) -> Optional[WebhookDelivery]:
        async with self._lock:
            current = self._deliveries.get(delivery_id)
            if current is None or current.status not in tuple(expected):
                return None
            updated = current.model_copy(
                update={**changes, "status": new_status, "updated_at": utcnow()},
                deep=True,
            )
            self._deliveries[delivery_id] = updated
            return self._copy(updated)

    async def find_due_retries(self, now: datetime, limit: int = 100) -> List[WebhookDelivery]:
        async with self._lock:
            due = [
                self._copy(d) for d in self._deliveries.values()
                if d.status == DeliveryStatus.RETRYING
                and d.next_attempt_at is not None
                and d.next_attempt_at <= now
                and d.attempt <= d.max_attempts
            ]
        due.sort(key=lambda d: d.next_attempt_at)
        return due[:limit]

    async def find_failed_since(self, since: datetime, limit: int = 100) -> List[WebhookDelivery]:
        async with self._lock:
            failed = [
                self._copy(d) for d in self._deliveries.values()
                if d.status == DeliveryStatus.FAILED and d.updated_at >= since
            ]
        failed.sort(key=lambda d: d.updated_at)
        return failed[:limit]

    async def find_stale_in_progress(self, before: datetime, limit: int = 100) -> List[WebhookDelivery]:
        async with self._lock:
            stale = [
                self._copy(d) for d in self._deliveries.values()
                if d.status == DeliveryStatus.IN_PROGRESS and d.updated_at < before
            ]
        stale.sort(key=lambda d: d.updated_at)
        return stale[:limit]

    async def delete_deliveries_before(self, cutoff: datetime) -> int:
        async with self._lock:
            stale = [k for k, d in self._deliveries.items() if d.created_at < cutoff]
            for key in stale:
                del self._deliveries[key]
            return len(stale)

    async def save_event(self, event: InboundEvent) -> InboundEvent:
        async with self._lock:
            self._events[event.id] = self._copy(event)
            return event

    async def get_event(self, event_id: str) -> Optional[InboundEvent]:
        async with self._lock:
            return self._copy(self._events.get(event_id))

    async def list_events(
        self,
        source: Optional[str] = None,
        limit: Optional[int] = 100,
    ) -> List[InboundEvent]:
        async with self._lock:
            events = [
                self._copy(e) for e in self._events.values()
                if source is None or e.source == source
            ]
        events.sort(key=lambda e: e.created_at, reverse=True)
        return events if limit is None else events[:limit]

    async def delete_events_before(self, cutoff: datetime) -> int:
        async with self._lock:
            stale = [k for k, e in self._events.items() if e.created_at < cutoff]
            for key in stale:
                del self._events[key]
            return len(stale)

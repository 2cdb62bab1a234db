"""Subscription matching for broadcast fan-out."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .events import EventBus, WEBHOOK_SUBSCRIPTION_CREATED
from .models import WebhookEndpoint, WebhookSubscription, utcnow
from .repository import WebhookRepository

logger = logging.getLogger(__name__)

Match = Tuple[WebhookSubscription, WebhookEndpoint]


class SubscriptionMatcher:
    """Finds the subscriptions, and their endpoints, that should receive an event.

    A subscription matches when its endpoint is active, it is itself active,
    unexpired and under its delivery cap, its pattern matches the event type,
    and every filter holds against the payload.
    """

    def __init__(self, repository: WebhookRepository, events: Optional[EventBus] = None):
        self.repository = repository
        self.events = events or EventBus()

    async def find_matches(
        self,
        event: str,
        payload: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> List[Match]:
        """Matching (subscription, endpoint) pairs for an event."""
        now = now or utcnow()
        payload = payload or {}
        endpoints: Dict[str, Optional[WebhookEndpoint]] = {}
        matches: List[Match] = []

        for subscription in await self.repository.list_subscriptions(active_only=True):
            if not subscription.is_eligible(now) or not subscription.matches_event(event):
                continue

            if subscription.endpoint_id not in endpoints:
                endpoints[subscription.endpoint_id] = await self.repository.get_endpoint(
                    subscription.endpoint_id
                )
            endpoint = endpoints[subscription.endpoint_id]
            if endpoint is None or endpoint.is_deleted or not endpoint.is_active:
                continue

            if not subscription.matches_filters(payload):
                continue

            matches.append((subscription, endpoint))

        logger.debug(f"{len(matches)} subscriptions match event {event}")
        return matches

    async def subscribe(self, endpoint_id: str, event_type: str, **fields: Any) -> WebhookSubscription:
        """Create a subscription for an existing endpoint.

        Raises:
            EndpointNotFoundError: If the endpoint does not exist.
        """
        await self.repository.require_endpoint(endpoint_id)
        subscription = await self.repository.save_subscription(
            WebhookSubscription(endpoint_id=endpoint_id, event_type=event_type, **fields)
        )
        logger.info(f"Subscribed endpoint {endpoint_id} to {event_type}")
        await self.events.emit(WEBHOOK_SUBSCRIPTION_CREATED, subscription=subscription)
        return subscription

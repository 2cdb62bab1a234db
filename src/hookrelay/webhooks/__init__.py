"""Webhooks module for outbound delivery and inbound receiving.

Provides:
- Outbound dispatching with retries, backoff and per-destination circuit breaking
- Subscription matching and broadcast fan-out
- Inbound receivers with signature verification and handler routing

Components are assembled by ``hookrelay.webhooks.service.build_services``.
"""

from .exceptions import WebhookError
from .models import (
    DeliveryStatus,
    InboundEvent,
    WebhookDelivery,
    WebhookEndpoint,
    WebhookSubscription,
)

__all__ = [
    "WebhookError",
    "DeliveryStatus",
    "InboundEvent",
    "WebhookDelivery",
    "WebhookEndpoint",
    "WebhookSubscription",
]

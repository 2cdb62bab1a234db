"""Lifecycle notifications for outbound and inbound webhooks.

The dispatcher and receiver emit named events on an ``EventBus``; logging
and alerting hang off it as listeners. Listener failures are logged and
never reach the delivery path.
"""

import inspect
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

from .utils import sanitize_payload

logger = logging.getLogger(__name__)

WEBHOOK_DISPATCHING = "webhook.dispatching"
WEBHOOK_DISPATCHED = "webhook.dispatched"
WEBHOOK_DISPATCH_FAILED = "webhook.dispatch_failed"
WEBHOOK_RECEIVED = "webhook.received"
WEBHOOK_VALIDATED = "webhook.validated"
WEBHOOK_INVALID = "webhook.invalid"
WEBHOOK_HANDLED = "webhook.handled"
WEBHOOK_FAILED = "webhook.failed"
WEBHOOK_SUBSCRIPTION_CREATED = "webhook.subscription_created"

Listener = Callable[..., Any]


class EventBus:
    """Fire-and-observe notification hub.

    Example:
        bus = EventBus()
        bus.subscribe(WEBHOOK_DISPATCHED, lambda delivery, **_: print(delivery.id))
        await bus.emit(WEBHOOK_DISPATCHED, delivery=delivery)
    """

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)

    def subscribe(self, name: str, listener: Listener) -> None:
        """Add a listener for an event name (``*`` receives every event)."""
        self._listeners[name].append(listener)

    def unsubscribe(self, name: str, listener: Listener) -> bool:
        listeners = self._listeners.get(name, [])
        if listener in listeners:
            listeners.remove(listener)
            return True
        return False

    def listeners(self, name: str) -> List[Listener]:
        return list(self._listeners.get(name, [])) + list(self._listeners.get("*", []))

    async def emit(self, name: str, **data: Any) -> None:
        """Notify listeners. Listeners receive ``event=name`` plus ``data``."""
        for listener in self.listeners(name):
            try:
                result = listener(event=name, **data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Listener for {name} failed: {e}")


def _log_dispatched(event: str, delivery=None, **_: Any) -> None:
    logger.info(
        f"Webhook dispatched: {delivery.event} -> {delivery.destination} "
        f"(delivery {delivery.id}, attempt {delivery.attempt}, "
        f"status {delivery.response_status_code})"
    )


def _log_dispatch_failed(event: str, delivery=None, error=None, **_: Any) -> None:
    logger.error(
        f"Webhook dispatch failed: {delivery.event} -> {delivery.destination} "
        f"(delivery {delivery.id}, attempt {delivery.attempt}/{delivery.max_attempts}): {error}"
    )


def _log_received(event: str, inbound=None, **_: Any) -> None:
    logger.info(
        f"Webhook received from {inbound.source}: {inbound.event} "
        f"payload={sanitize_payload(inbound.payload)}"
    )


def _log_invalid(event: str, inbound=None, **_: Any) -> None:
    logger.warning(
        f"Invalid webhook signature from {inbound.source} for {inbound.event}: "
        f"{inbound.validation_message}"
    )


def _log_failed(event: str, inbound=None, error=None, **_: Any) -> None:
    logger.error(f"Webhook handler failed for {inbound.source}/{inbound.event}: {error}")


def register_logging_listeners(bus: EventBus) -> EventBus:
    """Attach the default logging listeners to a bus."""
    bus.subscribe(WEBHOOK_DISPATCHED, _log_dispatched)
    bus.subscribe(WEBHOOK_DISPATCH_FAILED, _log_dispatch_failed)
    bus.subscribe(WEBHOOK_RECEIVED, _log_received)
    bus.subscribe(WEBHOOK_INVALID, _log_invalid)
    bus.subscribe(WEBHOOK_FAILED, _log_failed)
    return bus

"""Webhook error taxonomy.

Every error raised by the delivery and receiving pipeline derives from
``WebhookError`` so callers can catch the whole family at one seam.
"""

from datetime import datetime
from typing import Any, Dict, Optional


class WebhookError(Exception):
    """Base class for all webhook errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for API responses and logs."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            **self.context,
        }


class CircuitOpenError(WebhookError):
    """Raised when the circuit for a destination is open and blocks delivery."""

    def __init__(self, destination: str, failure_count: int, reopen_at: Optional[datetime]):
        self.destination = destination
        self.failure_count = failure_count
        self.reopen_at = reopen_at
        until = reopen_at.isoformat() if reopen_at else "unknown"
        super().__init__(
            f"Circuit is open for '{destination}' after {failure_count} failures, "
            f"will reset at {until}",
            {
                "destination": destination,
                "failure_count": failure_count,
                "reopen_at": reopen_at.isoformat() if reopen_at else None,
            },
        )


class DeliveryError(WebhookError):
    """Raised when an attempt completed with a failure response or a transport error."""

    def __init__(
        self,
        message: str,
        destination: str,
        delivery_id: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
    ):
        self.destination = destination
        self.delivery_id = delivery_id
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(
            message,
            {
                "destination": destination,
                "delivery_id": delivery_id,
                "status_code": status_code,
            },
        )


class InvalidSignatureError(WebhookError):
    """Raised when an inbound webhook fails signature verification."""

    def __init__(
        self,
        source: str,
        signature: Optional[str] = None,
        message: str = "Invalid webhook signature",
    ):
        self.source = source
        self.signature = signature
        super().__init__(message, {"source": source})


class EndpointNotFoundError(WebhookError):
    def __init__(self, endpoint_id: str):
        self.endpoint_id = endpoint_id
        super().__init__(f"Endpoint not found: {endpoint_id}", {"endpoint_id": endpoint_id})


class SubscriptionNotFoundError(WebhookError):
    def __init__(self, subscription_id: str):
        self.subscription_id = subscription_id
        super().__init__(
            f"Subscription not found: {subscription_id}",
            {"subscription_id": subscription_id},
        )


class DeliveryNotFoundError(WebhookError):
    def __init__(self, delivery_id: str):
        self.delivery_id = delivery_id
        super().__init__(f"Delivery not found: {delivery_id}", {"delivery_id": delivery_id})


class InvalidStateTransitionError(WebhookError):
    """Raised when retry or cancel is requested from a state that does not allow it."""

    def __init__(self, delivery_id: str, status: str, action: str):
        self.delivery_id = delivery_id
        self.status = status
        self.action = action
        super().__init__(
            f"Cannot {action} delivery {delivery_id} in status '{status}'",
            {"delivery_id": delivery_id, "status": status, "action": action},
        )


class EndpointInactiveError(WebhookError):
    def __init__(self, endpoint_id: str):
        self.endpoint_id = endpoint_id
        super().__init__(f"Endpoint is not active: {endpoint_id}", {"endpoint_id": endpoint_id})


class UnsupportedEventError(WebhookError):
    def __init__(self, endpoint_id: str, event: str):
        self.endpoint_id = endpoint_id
        self.event = event
        super().__init__(
            f"Endpoint {endpoint_id} does not support event type '{event}'",
            {"endpoint_id": endpoint_id, "event": event},
        )


class ConfigurationError(WebhookError):
    """Raised for a missing or invalid secret, policy or settings value."""

    def __init__(self, message: str, key: Optional[str] = None):
        self.key = key
        super().__init__(message, {"key": key} if key else {})


class WebhookProcessingError(WebhookError):
    """Raised when inbound processing is aborted, e.g. by a before hook."""

    def __init__(self, source: str, event: str, message: str):
        self.source = source
        self.event = event
        super().__init__(message, {"source": source, "event": event})


class DispatchAbortedError(WebhookError):
    """Raised when a before-dispatch hook rejects an outbound delivery."""

    def __init__(self, delivery_id: str, reason: str):
        self.delivery_id = delivery_id
        self.reason = reason
        super().__init__(
            f"Dispatch of delivery {delivery_id} aborted: {reason}",
            {"delivery_id": delivery_id},
        )

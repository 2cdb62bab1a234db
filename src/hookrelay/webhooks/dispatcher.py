"""Outbound webhook dispatcher.

Sends webhook events to URLs and registered endpoints with signed JSON
bodies, per-destination circuit breaking and retry scheduling.

Two paths share one attempt routine:

- ``send``/``send_to_endpoint`` attempt immediately; a failure marks the
  delivery failed and raises.
- ``queue``/``queue_to_endpoint``/``broadcast`` persist the delivery and
  hand it to the delivery queue. The worker-side ``process_delivery``
  claims the delivery, attempts it and, on failure, either schedules the
  next attempt with a delay or marks it permanently failed.
"""

import asyncio
import inspect
import json
import logging
import time
import traceback
from datetime import timedelta
from typing import Optional, List, Dict, Any, Callable

import httpx

from ..core.settings import DispatchingSettings
from .backoff import compute_retry_delay
from .circuit_breaker import CircuitBreaker
from .events import (
    EventBus,
    WEBHOOK_DISPATCHING,
    WEBHOOK_DISPATCHED,
    WEBHOOK_DISPATCH_FAILED,
)
from .exceptions import (
    CircuitOpenError,
    DeliveryError,
    DispatchAbortedError,
    EndpointInactiveError,
    InvalidStateTransitionError,
    UnsupportedEventError,
)
from .models import (
    CLAIMABLE_STATUSES,
    DeliveryStatus,
    WebhookDelivery,
    WebhookEndpoint,
    utcnow,
)
from .queue import DeliveryJob, DeliveryQueue, InMemoryDeliveryQueue
from .repository import WebhookRepository
from .response_analyzer import ResponseAnalyzer
from .security import serialize_payload, sign_outbound
from .subscriptions import SubscriptionMatcher
from .utils import normalize_url

logger = logging.getLogger(__name__)

# Stored response bodies are truncated to this many characters
MAX_RESPONSE_BODY = 1000

# Per-delivery transport options kept in metadata so queued attempts reuse them
TRANSPORT_OPTIONS = (
    "timeout",
    "connect_timeout",
    "verify_ssl",
    "provider",
    "success_status_codes",
    "retry_intervals",
)

Hook = Callable[..., Any]


async def _maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


class WebhookDispatcher:
    """Dispatches webhook deliveries.

    Example:
        dispatcher = WebhookDispatcher(InMemoryWebhookRepository())
        delivery = await dispatcher.send(
            "https://example.com/hooks",
            "order.created",
            {"order_id": 42},
            secret="whsec_...",
        )
    """

    def __init__(
        self,
        repository: WebhookRepository,
        circuit_breaker: Optional[CircuitBreaker] = None,
        queue: Optional[DeliveryQueue] = None,
        settings: Optional[DispatchingSettings] = None,
        events: Optional[EventBus] = None,
        analyzer: Optional[ResponseAnalyzer] = None,
        matcher: Optional[SubscriptionMatcher] = None,
        default_secret: Optional[str] = None,
    ):
        """Initialize dispatcher.

        Args:
            repository: Delivery, endpoint and subscription store.
            circuit_breaker: Per-destination breaker; None disables it.
            queue: Queue used by the async path.
            settings: Retry, header and HTTP defaults.
            events: Bus receiving lifecycle notifications.
            analyzer: Response classifier.
            matcher: Subscription lookup for broadcasts.
            default_secret: Signing secret used when a send gives none.
        """
        self.repository = repository
        self.circuit_breaker = circuit_breaker
        self.job_queue = queue or InMemoryDeliveryQueue()
        self.settings = settings or DispatchingSettings()
        self.events = events or EventBus()
        self.analyzer = analyzer or ResponseAnalyzer(self.settings.success_status_codes)
        self.matcher = matcher or SubscriptionMatcher(repository, self.events)
        self.default_secret = default_secret or None
        self._before_hooks: List[Hook] = []
        self._after_hooks: List[Hook] = []

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def before_dispatch(self, hook: Hook) -> Hook:
        """Register a hook run before each attempt; raising aborts it.

        Usable as a decorator. Hooks receive the delivery.
        """
        self._before_hooks.append(hook)
        return hook

    def after_dispatch(self, hook: Hook) -> Hook:
        """Register a hook run after each successful attempt.

        Hooks receive the delivery and the ``httpx.Response``; their errors
        are logged.
        """
        self._after_hooks.append(hook)
        return hook

    async def _run_before_hooks(self, delivery: WebhookDelivery) -> None:
        for hook in self._before_hooks:
            try:
                await _maybe_await(hook(delivery))
            except Exception as e:
                raise DispatchAbortedError(delivery.id, str(e)) from e

    async def _run_after_hooks(self, delivery: WebhookDelivery, response: httpx.Response) -> None:
        for hook in self._after_hooks:
            try:
                await _maybe_await(hook(delivery, response))
            except Exception as e:
                logger.error(f"After-dispatch hook failed for delivery {delivery.id}: {e}")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def send(self, url: str, event: str, payload: Dict[str, Any], **options: Any) -> WebhookDelivery:
        """Deliver an event now.

        Args:
            url: Destination URL.
            event: Event type.
            payload: JSON-serializable event data.
            **options: ``headers``, ``secret``, ``algorithm``,
                ``signature_header``, ``max_attempts``, ``timeout``,
                ``connect_timeout``, ``verify_ssl``, ``provider``,
                ``success_status_codes``, ``retry_intervals``,
                ``endpoint_id``, ``metadata``.

        Returns:
            The successful delivery.

        Raises:
            CircuitOpenError: The destination's circuit is open.
            DeliveryError: The attempt failed; the delivery is marked failed.
            DispatchAbortedError: A before hook rejected the delivery.
        """
        delivery = await self._create_delivery(url, event, payload, options)
        return await self._send_now(delivery)

    async def queue(self, url: str, event: str, payload: Dict[str, Any], **options: Any) -> WebhookDelivery:
        """Persist a delivery and hand it to the queue. Never raises on failure."""
        delivery = await self._create_delivery(url, event, payload, options)
        await self.job_queue.enqueue(delivery.id)
        logger.debug(f"Queued delivery {delivery.id} ({event} -> {url})")
        return delivery

    async def send_to_endpoint(
        self,
        endpoint_id: str,
        event: str,
        payload: Dict[str, Any],
        **options: Any,
    ) -> WebhookDelivery:
        """Deliver now to a registered endpoint using its configuration.

        Raises:
            EndpointNotFoundError: Unknown or deleted endpoint.
            EndpointInactiveError: The endpoint is deactivated.
            UnsupportedEventError: The endpoint does not accept ``event``.
        """
        endpoint = await self._resolve_endpoint(endpoint_id, event)
        return await self.send(endpoint.url, event, payload, **self._endpoint_options(endpoint, options))

    async def queue_to_endpoint(
        self,
        endpoint_id: str,
        event: str,
        payload: Dict[str, Any],
        **options: Any,
    ) -> WebhookDelivery:
        """Queue a delivery to a registered endpoint using its configuration."""
        endpoint = await self._resolve_endpoint(endpoint_id, event)
        return await self.queue(endpoint.url, event, payload, **self._endpoint_options(endpoint, options))

    async def broadcast(
        self,
        event: str,
        payload: Dict[str, Any],
        queue: Optional[bool] = None,
        **options: Any,
    ) -> List[WebhookDelivery]:
        """Fan an event out to every matching subscription.

        A failure for one subscription is logged and never stops delivery
        to the others.

        Args:
            event: Event type.
            payload: Event data, also used for subscription filters.
            queue: Queue (default per settings) or send immediately.

        Returns:
            One delivery per matching subscription that got a delivery
            record, including failed ones.
        """
        use_queue = self.settings.queue_by_default if queue is None else queue
        matches = await self.matcher.find_matches(event, payload)
        if not matches:
            logger.debug(f"No subscriptions match event: {event}")
            return []

        tasks = [
            self._broadcast_one(subscription, endpoint, event, payload, use_queue, options)
            for subscription, endpoint in matches
        ]
        results = await asyncio.gather(*tasks)
        deliveries = [d for d in results if d is not None]
        logger.info(f"Broadcast {event} to {len(deliveries)}/{len(matches)} subscriptions")
        return deliveries

    async def _broadcast_one(
        self,
        subscription,
        endpoint: WebhookEndpoint,
        event: str,
        payload: Dict[str, Any],
        use_queue: bool,
        options: Dict[str, Any],
    ) -> Optional[WebhookDelivery]:
        delivery = None
        try:
            count = await self.repository.increment_delivery_count(subscription.id)
            if subscription.max_deliveries is not None and count > subscription.max_deliveries:
                logger.info(f"Subscription {subscription.id} reached its delivery limit; skipping {event}")
                return None

            merged = self._endpoint_options(endpoint, options)
            merged["metadata"] = {**merged.get("metadata", {}), "subscription_id": subscription.id}
            delivery = await self._create_delivery(endpoint.url, event, payload, merged)

            if use_queue:
                await self.job_queue.enqueue(delivery.id)
                return delivery
            return await self._send_now(delivery)
        except Exception as e:
            if delivery is not None:
                delivery = await self.repository.get_delivery(delivery.id) or delivery
            logger.error(
                f"Broadcast of {event} to endpoint {endpoint.id} "
                f"(subscription {subscription.id}) failed: {e}"
            )
            return delivery

    async def retry(
        self,
        delivery_id: str,
        queue: bool = True,
        headers: Optional[Dict[str, str]] = None,
        max_attempts: Optional[int] = None,
        source: str = "manual",
        **options: Any,
    ) -> WebhookDelivery:
        """Retry a failed or retrying delivery.

        A retry from ``failed`` is granted a further attempt; a retry from
        ``retrying`` runs the attempt already granted, immediately.

        Args:
            delivery_id: The delivery to retry.
            queue: Re-enqueue (default) or send synchronously.
            headers: Extra headers merged into the stored ones.
            max_attempts: Raise the attempt budget before checking.
            source: Recorded in metadata as ``retry_source``.
            **options: Transport overrides such as ``timeout``.

        Raises:
            DeliveryNotFoundError: Unknown delivery.
            InvalidStateTransitionError: ``can_be_retried()`` does not hold.
        """
        delivery = await self.repository.require_delivery(delivery_id)
        if max_attempts is not None:
            delivery.max_attempts = max_attempts

        if not delivery.can_be_retried():
            raise InvalidStateTransitionError(delivery.id, delivery.status.value, "retry")

        attempt = delivery.attempt + 1 if delivery.status == DeliveryStatus.FAILED else delivery.attempt
        metadata = dict(delivery.metadata)
        stored = dict(metadata.get("options", {}))
        stored.update({k: v for k, v in options.items() if k in TRANSPORT_OPTIONS})
        metadata["options"] = stored
        metadata["retry_source"] = source
        metadata["retried_at"] = utcnow().isoformat()

        updated = await self.repository.compare_and_set_status(
            delivery.id,
            [DeliveryStatus.FAILED, DeliveryStatus.RETRYING],
            DeliveryStatus.PENDING,
            attempt=attempt,
            max_attempts=delivery.max_attempts,
            next_attempt_at=None,
            headers={**delivery.headers, **(headers or {})},
            metadata=metadata,
        )
        if updated is None:
            current = await self.repository.require_delivery(delivery.id)
            raise InvalidStateTransitionError(current.id, current.status.value, "retry")

        logger.info(f"Retrying delivery {updated.id} (attempt {updated.attempt}/{updated.max_attempts})")
        if queue:
            await self.job_queue.enqueue(updated.id)
            return updated
        return await self._send_now(updated)

    async def cancel(self, delivery_id: str, reason: Optional[str] = None) -> WebhookDelivery:
        """Cancel a pending or retrying delivery.

        An attempt already in flight still completes; only future attempts
        are prevented.

        Raises:
            DeliveryNotFoundError: Unknown delivery.
            InvalidStateTransitionError: The delivery is not pending or retrying.
        """
        delivery = await self.repository.require_delivery(delivery_id)
        if not delivery.can_be_cancelled():
            raise InvalidStateTransitionError(delivery.id, delivery.status.value, "cancel")

        metadata = {
            **delivery.metadata,
            "cancelled_at": utcnow().isoformat(),
            "cancel_reason": reason,
        }
        updated = await self.repository.compare_and_set_status(
            delivery.id,
            [DeliveryStatus.PENDING, DeliveryStatus.RETRYING],
            DeliveryStatus.CANCELLED,
            next_attempt_at=None,
            error_message=reason or "Cancelled",
            metadata=metadata,
        )
        if updated is None:
            current = await self.repository.require_delivery(delivery.id)
            raise InvalidStateTransitionError(current.id, current.status.value, "cancel")

        logger.info(f"Cancelled delivery {updated.id}: {reason or 'no reason given'}")
        return updated

    # ------------------------------------------------------------------
    # Job path
    # ------------------------------------------------------------------

    async def handle_job(self, job: DeliveryJob) -> Optional[WebhookDelivery]:
        """Queue worker entry point."""
        return await self.process_delivery(job.delivery_id)

    async def process_delivery(self, delivery_id: str) -> Optional[WebhookDelivery]:
        """Claim and attempt a queued delivery.

        Does nothing unless the delivery is pending or retrying, so stale
        jobs for finished or cancelled deliveries are harmless.

        Returns:
            The delivery after the attempt, or None if it was not processed.
        """
        delivery = await self.repository.get_delivery(delivery_id)
        if delivery is None:
            logger.warning(f"Queued delivery {delivery_id} no longer exists")
            return None
        if not delivery.is_claimable():
            logger.debug(f"Skipping delivery {delivery_id} in status {delivery.status.value}")
            return None

        claimed = await self.repository.compare_and_set_status(
            delivery_id, CLAIMABLE_STATUSES, DeliveryStatus.IN_PROGRESS
        )
        if claimed is None:
            logger.debug(f"Delivery {delivery_id} was claimed elsewhere")
            return None

        try:
            await self._attempt(claimed)
        except CircuitOpenError as e:
            await self._reschedule_for_circuit(claimed, e)
        except DispatchAbortedError as e:
            await self._fail(claimed, e)
        except DeliveryError as e:
            await self._schedule_retry(claimed, e)
        except Exception as e:
            await self._fail(claimed, e)
            raise
        return claimed

    async def _schedule_retry(self, delivery: WebhookDelivery, error: DeliveryError) -> None:
        """Grant another attempt with a delay, or fail permanently."""
        if delivery.attempt < delivery.max_attempts:
            delay = self._retry_delay(delivery)
            delivery.attempt += 1
            delivery.status = DeliveryStatus.RETRYING
            delivery.next_attempt_at = utcnow() + timedelta(seconds=delay)
            await self.repository.save_delivery(delivery)
            await self.job_queue.enqueue(delivery.id, delay=delay)
            logger.warning(
                f"Delivery {delivery.id} to {delivery.destination} failed, "
                f"retrying in {delay}s (attempt {delivery.attempt}/{delivery.max_attempts})"
            )
            await self.events.emit(
                WEBHOOK_DISPATCH_FAILED, delivery=delivery, error=error, will_retry=True
            )
            return

        await self._fail(delivery, error)

    async def _reschedule_for_circuit(self, delivery: WebhookDelivery, error: CircuitOpenError) -> None:
        """Push the attempt past the circuit's reopen time without spending it."""
        reopen_at = error.reopen_at
        if reopen_at is None:
            duration = self.circuit_breaker.config.open_duration_seconds if self.circuit_breaker else 0
            reopen_at = utcnow() + timedelta(seconds=duration)

        delivery.status = DeliveryStatus.RETRYING
        delivery.next_attempt_at = reopen_at
        delivery.error_message = str(error)
        await self.repository.save_delivery(delivery)

        delay = max((reopen_at - utcnow()).total_seconds(), 0)
        await self.job_queue.enqueue(delivery.id, delay=delay)
        logger.warning(f"Circuit open for {delivery.destination}; delivery {delivery.id} rescheduled")
        await self.events.emit(WEBHOOK_DISPATCH_FAILED, delivery=delivery, error=error, will_retry=True)

    def _retry_delay(self, delivery: WebhookDelivery) -> float:
        options = delivery.metadata.get("options", {})
        intervals = options.get("retry_intervals")
        retry_after = delivery.metadata.get("retry_after")

        if not intervals and retry_after is not None:
            return min(retry_after, self.settings.max_delay)

        return compute_retry_delay(
            delivery.attempt,
            strategy=self.settings.retry_strategy,
            base_delay=self.settings.retry_delay,
            multiplier=self.settings.backoff_multiplier,
            max_delay=self.settings.max_delay,
            intervals=intervals,
        )

    # ------------------------------------------------------------------
    # Single attempt
    # ------------------------------------------------------------------

    async def _send_now(self, delivery: WebhookDelivery) -> WebhookDelivery:
        claimed = await self.repository.compare_and_set_status(
            delivery.id, [DeliveryStatus.PENDING], DeliveryStatus.IN_PROGRESS
        )
        if claimed is None:
            raise InvalidStateTransitionError(delivery.id, delivery.status.value, "send")

        try:
            await self._attempt(claimed)
        except Exception as e:
            await self._fail(claimed, e)
            raise
        return claimed

    async def _fail(self, delivery: WebhookDelivery, error: Exception) -> None:
        delivery.status = DeliveryStatus.FAILED
        delivery.success = False
        delivery.next_attempt_at = None
        if not isinstance(error, DeliveryError) or not delivery.error_message:
            delivery.error_message = str(error)
        await self.repository.save_delivery(delivery)
        logger.error(f"Delivery {delivery.id} to {delivery.destination} failed: {error}")
        await self.events.emit(WEBHOOK_DISPATCH_FAILED, delivery=delivery, error=error, will_retry=False)

    async def _attempt(self, delivery: WebhookDelivery) -> httpx.Response:
        """Run one HTTP attempt and record its outcome on the delivery.

        On success the delivery is saved as ``success``. On failure the
        response or transport error is recorded on the delivery (unsaved)
        and an error is raised for the caller to turn into a status.
        """
        await self._run_before_hooks(delivery)

        circuit_key = normalize_url(delivery.destination)
        if self.circuit_breaker is not None and await self.circuit_breaker.is_open(circuit_key):
            raise CircuitOpenError(
                delivery.destination,
                await self.circuit_breaker.get_failure_count(circuit_key),
                await self.circuit_breaker.get_reset_timeout(circuit_key),
            )

        await self.events.emit(WEBHOOK_DISPATCHING, delivery=delivery)

        options = delivery.metadata.get("options", {})
        http = self.settings.http
        timeout = httpx.Timeout(
            options.get("timeout") or http.timeout,
            connect=options.get("connect_timeout") or http.connect_timeout,
        )
        verify = options.get("verify_ssl", http.verify_ssl)
        body = serialize_payload(delivery.payload)

        delivery.last_attempt_at = utcnow()
        delivery.metadata.pop("retry_after", None)
        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=timeout, verify=verify) as client:
                response = await client.post(
                    delivery.destination,
                    content=body,
                    headers=delivery.headers,
                )
        except Exception as e:
            # transport errors and requests httpx cannot encode
            delivery.response_time_ms = int((time.perf_counter() - started) * 1000)
            delivery.response_status_code = None
            delivery.response_body = None
            delivery.response_headers = None
            delivery.success = False
            delivery.error_message = str(e) or e.__class__.__name__
            delivery.error_detail = traceback.format_exc()
            await self._record_failure(circuit_key)
            raise DeliveryError(delivery.error_message, delivery.destination, delivery.id) from e

        delivery.response_time_ms = int((time.perf_counter() - started) * 1000)
        delivery.response_status_code = response.status_code
        delivery.response_body = response.text[:MAX_RESPONSE_BODY]
        delivery.response_headers = dict(response.headers)

        provider = options.get("provider")
        if self.analyzer.is_successful(response, options.get("success_status_codes"), provider):
            delivery.status = DeliveryStatus.SUCCESS
            delivery.success = True
            delivery.next_attempt_at = None
            delivery.error_message = None
            delivery.error_detail = None
            await self.repository.save_delivery(delivery)
            if self.circuit_breaker is not None:
                await self.circuit_breaker.record_success(circuit_key)
            await self._run_after_hooks(delivery, response)
            await self.events.emit(WEBHOOK_DISPATCHED, delivery=delivery, response=response)
            return response

        error = self.analyzer.extract_error_info(response, provider)
        delivery.success = False
        delivery.error_message = f"HTTP {response.status_code}: {error['message']}"
        delivery.error_detail = json.dumps(error, default=str)
        if self.analyzer.has_rate_limit_headers(response):
            delivery.metadata["retry_after"] = self.analyzer.calculate_retry_delay(
                response, delivery.attempt
            )
        await self._record_failure(circuit_key)
        raise DeliveryError(
            delivery.error_message,
            delivery.destination,
            delivery.id,
            status_code=response.status_code,
            response_body=delivery.response_body,
        )

    async def _record_failure(self, destination: str) -> None:
        if self.circuit_breaker is not None:
            await self.circuit_breaker.record_failure(destination)

    # ------------------------------------------------------------------
    # Delivery construction
    # ------------------------------------------------------------------

    async def _resolve_endpoint(self, endpoint_id: str, event: str) -> WebhookEndpoint:
        endpoint = await self.repository.require_endpoint(endpoint_id)
        if not endpoint.is_active:
            raise EndpointInactiveError(endpoint_id)
        if not endpoint.supports_event(event):
            raise UnsupportedEventError(endpoint_id, event)
        return endpoint

    @staticmethod
    def _endpoint_options(endpoint: WebhookEndpoint, options: Dict[str, Any]) -> Dict[str, Any]:
        """Endpoint configuration, overridden by explicit options."""
        merged: Dict[str, Any] = {
            "endpoint_id": endpoint.id,
            "secret": endpoint.secret,
            "algorithm": endpoint.signature_algorithm,
        }
        if endpoint.timeout is not None:
            merged["timeout"] = endpoint.timeout
        if endpoint.connect_timeout is not None:
            merged["connect_timeout"] = endpoint.connect_timeout
        if endpoint.retry_limit is not None:
            merged["max_attempts"] = endpoint.retry_limit
        if endpoint.retry_intervals:
            merged["retry_intervals"] = list(endpoint.retry_intervals)

        merged.update({k: v for k, v in options.items() if k != "headers"})
        merged["headers"] = {**endpoint.headers, **(options.get("headers") or {})}
        return merged

    async def _create_delivery(
        self,
        url: str,
        event: str,
        payload: Dict[str, Any],
        options: Dict[str, Any],
    ) -> WebhookDelivery:
        delivery = WebhookDelivery(
            endpoint_id=options.get("endpoint_id"),
            destination=url,
            event=event,
            payload=payload,
            max_attempts=options.get("max_attempts") or self.settings.max_attempts,
            metadata=dict(options.get("metadata") or {}),
        )
        delivery.metadata["options"] = {
            k: options[k] for k in TRANSPORT_OPTIONS if options.get(k) is not None
        }

        headers = dict(self.settings.default_headers)
        headers.update(options.get("headers") or {})
        headers["X-Webhook-ID"] = delivery.id
        headers["X-Webhook-Event"] = event

        secret = options.get("secret") or self.default_secret
        if secret:
            delivery.signature = sign_outbound(
                serialize_payload(payload),
                secret,
                options.get("algorithm", "sha256"),
            )
            header_name = options.get("signature_header") or self.settings.signature_header
            headers[header_name] = delivery.signature

        delivery.headers = headers
        return await self.repository.save_delivery(delivery)


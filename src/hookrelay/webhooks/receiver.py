"""Inbound webhook receiver.

Verifies signatures, stores every received webhook and routes it to the
handler registered for its (source, event) pair.

Per request: received -> signature check -> valid | invalid -> stored ->
processed (success | error | skipped). An invalid signature is either
rejected with a generic 401 or, when the policy allows it, stored with
``is_valid=False`` and processed anyway.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from ..core.settings import ProviderSettings, ReceivingSettings, SecuritySettings
from .events import (
    EventBus,
    WEBHOOK_FAILED,
    WEBHOOK_HANDLED,
    WEBHOOK_INVALID,
    WEBHOOK_RECEIVED,
    WEBHOOK_VALIDATED,
)
from .exceptions import ConfigurationError, InvalidSignatureError, WebhookProcessingError
from .models import InboundEvent, ProcessingStatus
from .repository import WebhookRepository
from .security import InboundRequest, get_validator
from .utils import extract_event_name, generate_event_id

logger = logging.getLogger(__name__)

# Handlers and hooks receive the stored InboundEvent; they may be sync or async
WebhookHandler = Callable[[InboundEvent], Any]

INVALID_SIGNATURE_MESSAGE = "Invalid webhook signature"


def _handler_name(handler: Callable) -> str:
    return getattr(handler, "__name__", handler.__class__.__name__)


class HandlerRegistry:
    """Handlers and hooks keyed by source.

    Lookup for an event tries the exact event name, then the source's
    ``*`` handler, then ``prefix.*`` patterns (longest prefix first).
    """

    def __init__(self):
        self._handlers: Dict[str, Dict[str, WebhookHandler]] = {}
        self._before: Dict[str, List[WebhookHandler]] = {}
        self._after: Dict[str, List[WebhookHandler]] = {}

    def on(self, source: str, event: str, handler: WebhookHandler) -> None:
        self._handlers.setdefault(source, {})[event] = handler
        logger.info(f"Registered handler for {source}/{event}")

    def on_any(self, source: str, handler: WebhookHandler) -> None:
        self.on(source, "*", handler)

    def before(self, source: str, hook: WebhookHandler) -> None:
        """Hook run before the handler; ``*`` applies to every source."""
        self._before.setdefault(source, []).append(hook)

    def after(self, source: str, hook: WebhookHandler) -> None:
        self._after.setdefault(source, []).append(hook)

    def resolve(self, source: str, event: str) -> Optional[Tuple[str, WebhookHandler]]:
        """Find the handler for an event as ``(pattern, handler)``."""
        handlers = self._handlers.get(source, {})
        if event in handlers:
            return event, handlers[event]
        if "*" in handlers:
            return "*", handlers["*"]

        prefixes = [p for p in handlers if p.endswith("*") and p != "*"]
        for pattern in sorted(prefixes, key=len, reverse=True):
            if event.startswith(pattern[:-1]):
                return pattern, handlers[pattern]
        return None

    def before_hooks(self, source: str) -> List[WebhookHandler]:
        return self._before.get("*", []) + self._before.get(source, [])

    def after_hooks(self, source: str) -> List[WebhookHandler]:
        return self._after.get("*", []) + self._after.get(source, [])

    def registered(self) -> Dict[str, Dict[str, str]]:
        """Handler function names by source and event pattern."""
        return {
            source: {event: _handler_name(h) for event, h in handlers.items()}
            for source, handlers in self._handlers.items()
        }


@dataclass
class ReceiveResult:
    """Outcome of ``handle_request``."""

    event_id: str
    outcome: str  # rejected, queued, success, error, skipped
    status_code: int = 200
    message: str = "Webhook received"
    event: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "outcome": self.outcome,
            "message": self.message,
            "event": self.event,
            **self.data,
        }


class WebhookReceiver:
    """Receives and processes inbound webhook requests.

    Example:
        receiver = WebhookReceiver(repository)

        @receiver.on("github", "github.push")
        async def handle_push(event: InboundEvent):
            print(event.payload["ref"])

        result = await receiver.handle_request("github", InboundRequest(body=raw, headers=headers))
    """

    def __init__(
        self,
        repository: WebhookRepository,
        settings: Optional[ReceivingSettings] = None,
        security: Optional[SecuritySettings] = None,
        providers: Optional[Dict[str, ProviderSettings]] = None,
        events: Optional[EventBus] = None,
        registry: Optional[HandlerRegistry] = None,
    ):
        """Initialize receiver.

        Args:
            repository: Store for inbound events.
            settings: Verification and processing policy.
            security: Default secret, algorithm and timestamp tolerance.
            providers: Per-source verification settings.
            events: Bus receiving lifecycle notifications.
            registry: Handler registry owned by this receiver.
        """
        self.repository = repository
        self.settings = settings or ReceivingSettings()
        self.security = security or SecuritySettings()
        self.providers = providers or {}
        self.events = events or EventBus()
        self.registry = registry or HandlerRegistry()
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def on(self, source: str, event: str, handler: Optional[WebhookHandler] = None):
        """Register a handler; usable as a decorator when ``handler`` is omitted.

        Example:
            @receiver.on("stripe", "payment_intent.*")
            async def handle_payment(event):
                ...
        """
        if handler is not None:
            self.registry.on(source, event, handler)
            return handler

        def decorator(func: WebhookHandler) -> WebhookHandler:
            self.registry.on(source, event, func)
            return func
        return decorator

    def on_any(self, source: str, handler: WebhookHandler) -> WebhookHandler:
        self.registry.on_any(source, handler)
        return handler

    def before(self, source: str, hook: WebhookHandler) -> WebhookHandler:
        """Register a before-processing hook; raising aborts processing."""
        self.registry.before(source, hook)
        return hook

    def after(self, source: str, hook: WebhookHandler) -> WebhookHandler:
        self.registry.after(source, hook)
        return hook

    # ------------------------------------------------------------------
    # Signature verification
    # ------------------------------------------------------------------

    def _resolve_secret(self, source: str, secret: Optional[str]) -> Optional[str]:
        if secret:
            return secret
        provider = self.providers.get(source)
        if provider and provider.secret:
            return provider.secret
        return self.security.default_signature_key or None

    def _build_validator(self, source: str) -> Tuple[Any, Dict[str, Any]]:
        """Validator and options for a source."""
        options: Dict[str, Any] = {"tolerance": self.security.timestamp_tolerance}
        provider = self.providers.get(source)

        if provider is not None:
            kwargs: Dict[str, Any] = {}
            if provider.validator == "provider":
                kwargs["provider"] = provider.provider or source
            elif provider.validator == "hmac":
                kwargs["algorithm"] = self.security.default_algorithm
            if provider.signature_header:
                options["signature_header"] = provider.signature_header
            options.update(provider.options)
            return get_validator(provider.validator, **kwargs), options

        kwargs = {}
        if self.settings.signature_validator == "hmac":
            kwargs = {
                "signature_header": self.settings.signature_header,
                "algorithm": self.security.default_algorithm,
            }
        return get_validator(self.settings.signature_validator, **kwargs), options

    async def verify_signature(
        self,
        source: str,
        request: InboundRequest,
        secret: Optional[str] = None,
    ) -> Tuple[bool, str]:
        """Check an inbound request's signature.

        Returns:
            ``(is_valid, message)``; the message is for logs and storage,
            never for the HTTP response.
        """
        is_valid, message, _ = await self._verify(source, request, secret)
        return is_valid, message

    async def require_signature(
        self,
        source: str,
        request: InboundRequest,
        secret: Optional[str] = None,
    ) -> None:
        """Like ``verify_signature`` but raises on failure.

        Raises:
            InvalidSignatureError: The request is not validly signed.
        """
        is_valid, message, signature = await self._verify(source, request, secret)
        if not is_valid:
            raise InvalidSignatureError(source, signature, message)

    async def _verify(
        self,
        source: str,
        request: InboundRequest,
        secret: Optional[str],
    ) -> Tuple[bool, str, Optional[str]]:
        secret = self._resolve_secret(source, secret)
        signature = None
        try:
            validator, options = self._build_validator(source)
            signature = validator.get_signature(request, options)
            if not secret:
                if self.settings.require_signature_secret:
                    return False, f"No signature secret configured for source '{source}'", signature
                return True, "Signature check skipped: no secret configured", signature
            if not signature:
                return False, "Missing signature", None
            if validator.validate(request, secret, options):
                return True, "Signature verified", signature
        except ConfigurationError as e:
            logger.error(f"Signature verification misconfigured for {source}: {e}")
            return False, str(e), signature
        except Exception as e:
            logger.warning(f"Signature verification for {source} raised {e.__class__.__name__}: {e}")
            return False, "Signature mismatch", signature
        return False, "Signature mismatch", signature

    # ------------------------------------------------------------------
    # Request handling
    # ------------------------------------------------------------------

    def _event_header(self, source: str) -> str:
        provider = self.providers.get(source)
        if provider and provider.event_header:
            return provider.event_header
        return self.settings.event_header

    async def handle_request(
        self,
        source: str,
        request: InboundRequest,
        event: Optional[str] = None,
        secret: Optional[str] = None,
    ) -> ReceiveResult:
        """Verify, store and process one inbound webhook.

        Args:
            source: Provider or sender name (e.g. ``stripe``).
            request: The raw request.
            event: Explicit event name; otherwise derived from the request.
            secret: Secret overriding the configured one.
        """
        try:
            payload: Any = request.json()
        except ValueError:
            payload = request.text

        event_name = extract_event_name(source, request.headers, payload, self._event_header(source), event)
        inbound = InboundEvent(
            id=generate_event_id(source, event_name, payload),
            source=source,
            event=event_name,
            payload=payload,
            raw_body=request.text,
            headers=dict(request.headers),
            metadata={"client_ip": request.client_ip} if request.client_ip else {},
        )
        await self.events.emit(WEBHOOK_RECEIVED, inbound=inbound)

        if self.settings.verify_signatures:
            is_valid, message, signature = await self._verify(source, request, secret)
            inbound.signature = signature
            inbound.is_valid = is_valid
            inbound.validation_message = message

            if is_valid:
                await self.events.emit(WEBHOOK_VALIDATED, inbound=inbound)
            else:
                await self.events.emit(
                    WEBHOOK_INVALID,
                    inbound=inbound,
                    error=InvalidSignatureError(source, signature, message),
                )
                if self.settings.require_valid_signature:
                    await self.repository.save_event(inbound)
                    return ReceiveResult(
                        event_id=inbound.id,
                        outcome="rejected",
                        status_code=401,
                        message=INVALID_SIGNATURE_MESSAGE,
                        event=event_name,
                    )

        await self.repository.save_event(inbound)

        if self.settings.process_async:
            task = asyncio.create_task(self.process_event(inbound.id))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            return ReceiveResult(
                event_id=inbound.id,
                outcome="queued",
                message="Webhook accepted for processing",
                event=event_name,
            )

        processed = await self.process_event(inbound)
        status = processed.processing_status
        if status == ProcessingStatus.ERROR:
            return ReceiveResult(
                event_id=inbound.id,
                outcome=status.value,
                status_code=500,
                message="Webhook processing failed",
                event=event_name,
            )
        return ReceiveResult(
            event_id=inbound.id,
            outcome=status.value,
            message="Webhook processed" if status == ProcessingStatus.SUCCESS else "No handler for event",
            event=event_name,
        )

    async def wait_for_pending(self) -> None:
        """Wait for background processing started by ``handle_request``."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def process_event(self, event: Union[str, InboundEvent]) -> Optional[InboundEvent]:
        """Run a stored inbound event through its handler.

        Already processed events are returned unchanged.
        """
        inbound = await self.repository.get_event(event) if isinstance(event, str) else event
        if inbound is None:
            logger.warning(f"Inbound event {event} not found")
            return None
        if inbound.is_processed:
            return inbound

        started = time.perf_counter()
        elapsed = lambda: int((time.perf_counter() - started) * 1000)  # noqa: E731
        resolved = self.registry.resolve(inbound.source, inbound.event)
        handler_name = _handler_name(resolved[1]) if resolved else None

        try:
            for hook in self.registry.before_hooks(inbound.source):
                try:
                    await self._call(hook, inbound)
                except Exception as e:
                    raise WebhookProcessingError(inbound.source, inbound.event, str(e)) from e

            if resolved is None:
                logger.info(f"No handler for webhook {inbound.source}/{inbound.event}")
                inbound.mark_processed(ProcessingStatus.SKIPPED, processing_time_ms=elapsed())
                await self.repository.save_event(inbound)
                return inbound

            await self._call(resolved[1], inbound)
        except Exception as e:
            inbound.mark_processed(
                ProcessingStatus.ERROR,
                error=str(e),
                processing_time_ms=elapsed(),
                handler=handler_name,
            )
            await self.repository.save_event(inbound)
            await self.events.emit(WEBHOOK_FAILED, inbound=inbound, error=e)
            return inbound

        inbound.mark_processed(ProcessingStatus.SUCCESS, processing_time_ms=elapsed(), handler=handler_name)
        await self.repository.save_event(inbound)

        for hook in self.registry.after_hooks(inbound.source):
            try:
                await self._call(hook, inbound)
            except Exception as e:
                logger.error(f"After hook failed for {inbound.source}/{inbound.event}: {e}")

        await self.events.emit(WEBHOOK_HANDLED, inbound=inbound)
        return inbound

    @staticmethod
    async def _call(func: WebhookHandler, inbound: InboundEvent) -> Any:
        result = func(inbound)
        if inspect.isawaitable(result):
            result = await result
        return result

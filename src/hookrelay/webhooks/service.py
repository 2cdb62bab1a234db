"""Wiring of the webhook components from settings."""

import logging
from dataclasses import dataclass
from typing import Optional

from ..core.settings import WebhookSettings, get_settings
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitStore,
    InMemoryCircuitStore,
    RedisCircuitStore,
)
from .dispatcher import WebhookDispatcher
from .events import EventBus, register_logging_listeners
from .queue import DeliveryQueue, InMemoryDeliveryQueue, WorkerPool
from .receiver import WebhookReceiver
from .repository import InMemoryWebhookRepository, WebhookRepository
from .scheduler import RetryScheduler, cleanup_old_data
from .sqlite_repository import SqliteWebhookRepository
from .subscriptions import SubscriptionMatcher

logger = logging.getLogger(__name__)


@dataclass
class WebhookServices:
    """The assembled webhook system."""

    settings: WebhookSettings
    events: EventBus
    repository: WebhookRepository
    circuit_breaker: Optional[CircuitBreaker]
    queue: DeliveryQueue
    matcher: SubscriptionMatcher
    dispatcher: WebhookDispatcher
    receiver: WebhookReceiver
    scheduler: RetryScheduler
    pool: Optional[WorkerPool] = None

    async def start(self, worker_count: int = 3) -> None:
        """Start delivery workers and the retry scheduler."""
        if self.pool is None:
            self.pool = WorkerPool(self.queue, self.dispatcher.handle_job, worker_count=worker_count)
            await self.pool.start()
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        if self.pool is not None:
            await self.pool.stop()
            self.pool = None
        await self.receiver.wait_for_pending()

    async def cleanup(self, days: Optional[int] = None) -> dict:
        """Apply the retention window (``storage.retention_days`` by default)."""
        days = self.settings.storage.retention_days if days is None else days
        return await cleanup_old_data(self.repository, days)


def _build_repository(settings: WebhookSettings) -> WebhookRepository:
    if settings.storage.backend == "sqlite":
        return SqliteWebhookRepository(settings.storage.sqlite_path)
    return InMemoryWebhookRepository()


def _build_circuit_breaker(settings: WebhookSettings) -> Optional[CircuitBreaker]:
    cfg = settings.circuit_breaker
    if not cfg.enabled:
        return None

    store: CircuitStore
    if cfg.backend == "redis":
        store = RedisCircuitStore(cfg.redis_url, prefix=cfg.redis_prefix)
    else:
        store = InMemoryCircuitStore()
    return CircuitBreaker(
        store,
        CircuitBreakerConfig(failure_threshold=cfg.threshold, open_duration_seconds=cfg.open_duration),
    )


def build_services(
    settings: Optional[WebhookSettings] = None,
    repository: Optional[WebhookRepository] = None,
    circuit_breaker: Optional[CircuitBreaker] = None,
    queue: Optional[DeliveryQueue] = None,
) -> WebhookServices:
    """Assemble the webhook system; explicit components override settings."""
    settings = settings or get_settings()
    events = register_logging_listeners(EventBus())
    repository = repository or _build_repository(settings)
    if circuit_breaker is None:
        circuit_breaker = _build_circuit_breaker(settings)
    queue = queue or InMemoryDeliveryQueue()
    matcher = SubscriptionMatcher(repository, events)

    dispatcher = WebhookDispatcher(
        repository,
        circuit_breaker=circuit_breaker,
        queue=queue,
        settings=settings.dispatching,
        events=events,
        matcher=matcher,
        default_secret=settings.security.default_signature_key or None,
    )
    receiver = WebhookReceiver(
        repository,
        settings=settings.receiving,
        security=settings.security,
        providers=settings.providers,
        events=events,
    )
    scheduler = RetryScheduler(
        dispatcher,
        interval_seconds=settings.scheduler.retry_interval_seconds,
        auto_retry_window_hours=settings.scheduler.auto_retry_window_hours,
        in_progress_timeout_seconds=settings.scheduler.in_progress_timeout_seconds,
        retention_days=settings.storage.retention_days,
    )

    logger.info(
        f"Webhook services ready (storage={settings.storage.backend}, "
        f"circuit={'off' if circuit_breaker is None else settings.circuit_breaker.backend})"
    )
    return WebhookServices(
        settings=settings,
        events=events,
        repository=repository,
        circuit_breaker=circuit_breaker,
        queue=queue,
        matcher=matcher,
        dispatcher=dispatcher,
        receiver=receiver,
        scheduler=scheduler,
    )


# Global services instance
_services: Optional[WebhookServices] = None


def get_services() -> WebhookServices:
    """Get the global webhook services, building them on first use."""
    global _services
    if _services is None:
        _services = build_services()
    return _services


def set_services(services: Optional[WebhookServices]) -> None:
    """Replace the global services (None resets them)."""
    global _services
    _services = services

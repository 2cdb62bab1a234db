"""Delivery job queue and workers.

Queued deliveries are handed to workers as ``DeliveryJob``s that carry only
the delivery id; the worker loads the current record and runs the
dispatcher's job path. Retries are re-enqueued with a delay rather than
slept on in-process.
"""

from abc import ABC, abstractmethod
from typing import Optional, Any, Callable, Awaitable, Dict, List
from dataclasses import dataclass, field
import asyncio
import logging
import time
import uuid

logger = logging.getLogger(__name__)


@dataclass
class DeliveryJob:
    """A scheduled attempt for one delivery."""

    delivery_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    available_at: float = field(default_factory=time.time)
    enqueued_at: float = field(default_factory=time.time)
    worker_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    def is_due(self, now: Optional[float] = None) -> bool:
        return self.available_at <= (now if now is not None else time.time())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "delivery_id": self.delivery_id,
            "available_at": self.available_at,
            "enqueued_at": self.enqueued_at,
            "worker_id": self.worker_id,
            "metadata": self.metadata,
        }


class DeliveryQueue(ABC):
    """Abstract base class for delivery queues."""

    @abstractmethod
    async def enqueue(
        self,
        delivery_id: str,
        delay: float = 0,
        metadata: Optional[dict] = None,
    ) -> bool:
        """Schedule a delivery attempt.

        Returns:
            False if a job for this delivery is already waiting.
        """
        pass

    @abstractmethod
    async def dequeue(self, worker_id: str) -> Optional[DeliveryJob]:
        """Take the next due job, if any."""
        pass

    @abstractmethod
    async def complete(self, job_id: str) -> bool:
        """Mark a job as finished."""
        pass

    @abstractmethod
    async def get_pending_count(self) -> int:
        pass


class InMemoryDeliveryQueue(DeliveryQueue):
    """In-memory delayed queue, deduplicated by delivery id.

    Only one waiting job may exist per delivery; enqueueing it again moves
    the waiting job earlier if needed. A job that a worker has
    already taken does not block re-enqueueing, so a failing attempt can
    schedule its own retry.

    Example:
        >>> queue = InMemoryDeliveryQueue()
        >>> await queue.enqueue(delivery.id, delay=30)
        >>> job = await queue.dequeue("worker-1")  # None until 30s pass
    """

    def __init__(self):
        self._pending: Dict[str, DeliveryJob] = {}  # delivery id -> job
        self._processing: Dict[str, DeliveryJob] = {}  # job id -> job
        self._completed = 0
        self._lock = asyncio.Lock()

    async def enqueue(
        self,
        delivery_id: str,
        delay: float = 0,
        metadata: Optional[dict] = None,
    ) -> bool:
        available_at = time.time() + max(delay, 0)
        async with self._lock:
            existing = self._pending.get(delivery_id)
            if existing is not None:
                # Keep the single waiting job, at the earlier of the two times
                existing.available_at = min(existing.available_at, available_at)
                logger.debug(f"Delivery {delivery_id} already queued")
                return False

            self._pending[delivery_id] = DeliveryJob(
                delivery_id=delivery_id,
                available_at=available_at,
                metadata=dict(metadata or {}),
            )
            return True

    async def dequeue(self, worker_id: str) -> Optional[DeliveryJob]:
        async with self._lock:
            now = time.time()
            due = [job for job in self._pending.values() if job.is_due(now)]
            if not due:
                return None

            job = min(due, key=lambda j: j.available_at)
            del self._pending[job.delivery_id]
            job.worker_id = worker_id
            self._processing[job.id] = job
            return job

    async def complete(self, job_id: str) -> bool:
        async with self._lock:
            if self._processing.pop(job_id, None) is None:
                return False
            self._completed += 1
            return True

    async def get_pending_count(self) -> int:
        async with self._lock:
            return len(self._pending)

    async def is_queued(self, delivery_id: str) -> bool:
        async with self._lock:
            return delivery_id in self._pending

    async def pending_jobs(self) -> List[DeliveryJob]:
        async with self._lock:
            return sorted(self._pending.values(), key=lambda j: j.available_at)

    async def get_stats(self) -> dict:
        async with self._lock:
            return {
                "pending": len(self._pending),
                "processing": len(self._processing),
                "completed": self._completed,
            }


# Type for job handlers
JobHandler = Callable[[DeliveryJob], Awaitable[Any]]


@dataclass
class WorkerConfig:
    """Configuration for a worker."""

    worker_id: str = field(default_factory=lambda: f"worker-{uuid.uuid4().hex[:8]}")
    poll_interval_seconds: float = 1.0


class DeliveryWorker:
    """Worker that runs queued delivery jobs.

    Example:
        >>> worker = DeliveryWorker(queue, dispatcher.handle_job)
        >>> await worker.start()
    """

    def __init__(
        self,
        queue: DeliveryQueue,
        handler: JobHandler,
        config: Optional[WorkerConfig] = None,
    ):
        """Initialize worker.

        Args:
            queue: Delivery queue to poll.
            handler: Coroutine run for each job.
            config: Worker configuration.
        """
        self.queue = queue
        self.handler = handler
        self.config = config or WorkerConfig()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._jobs_processed = 0
        self._jobs_failed = 0

    @property
    def worker_id(self) -> str:
        return self.config.worker_id

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the worker loop."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Worker {self.worker_id} started")

    async def stop(self) -> None:
        """Stop the worker loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info(f"Worker {self.worker_id} stopped")

    async def run_once(self) -> bool:
        """Process a single due job.

        Returns:
            True if a job was taken from the queue.
        """
        job = await self.queue.dequeue(self.worker_id)
        if job is None:
            return False

        try:
            await self.handler(job)
            self._jobs_processed += 1
        except Exception as e:
            self._jobs_failed += 1
            logger.error(f"Worker {self.worker_id} failed job for delivery {job.delivery_id}: {e}")
        finally:
            await self.queue.complete(job.id)
        return True

    async def drain(self) -> int:
        """Run due jobs until none are left; returns how many ran."""
        count = 0
        while await self.run_once():
            count += 1
        return count

    async def _run(self) -> None:
        """Main worker loop."""
        while self._running:
            try:
                if not await self.run_once():
                    await asyncio.sleep(self.config.poll_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Worker {self.worker_id} error: {e}")
                await asyncio.sleep(self.config.poll_interval_seconds)

    def get_stats(self) -> dict:
        return {
            "worker_id": self.worker_id,
            "running": self._running,
            "jobs_processed": self._jobs_processed,
            "jobs_failed": self._jobs_failed,
        }


class WorkerPool:
    """Delivery workers sharing one queue, resizable at runtime.

    Workers are numbered from the base config's ``worker_id``; growing the
    pool adds the next numbers and shrinking it stops the newest workers
    first, so long-lived workers keep their ids.

    Example:
        >>> pool = WorkerPool(queue, dispatcher.handle_job, worker_count=4)
        >>> await pool.start()
        >>> await pool.scale(8)
        >>> await pool.stop()
    """

    def __init__(
        self,
        queue: DeliveryQueue,
        handler: JobHandler,
        worker_count: int = 3,
        config: Optional[WorkerConfig] = None,
    ):
        self.queue = queue
        self.handler = handler
        self.worker_count = worker_count
        self.base_config = config or WorkerConfig()
        self._workers: List[DeliveryWorker] = []

    @property
    def is_running(self) -> bool:
        return any(w.is_running for w in self._workers)

    async def start(self) -> None:
        await self.scale(self.worker_count)
        logger.info(f"Delivery worker pool started with {len(self._workers)} workers")

    async def stop(self) -> None:
        await self.scale(0)
        logger.info("Delivery worker pool stopped")

    async def scale(self, new_count: int) -> None:
        """Grow or shrink the pool to ``new_count`` workers."""
        new_count = max(new_count, 0)
        current = len(self._workers)

        if new_count > current:
            added = [
                DeliveryWorker(
                    self.queue,
                    self.handler,
                    WorkerConfig(
                        worker_id=f"{self.base_config.worker_id}-{index}",
                        poll_interval_seconds=self.base_config.poll_interval_seconds,
                    ),
                )
                for index in range(current, new_count)
            ]
            await asyncio.gather(*(w.start() for w in added))
            self._workers.extend(added)
        elif new_count < current:
            removed = self._workers[new_count:]
            del self._workers[new_count:]
            await asyncio.gather(*(w.stop() for w in removed))

        if new_count:
            self.worker_count = new_count
        logger.debug(f"Delivery worker pool scaled from {current} to {new_count}")

    def get_stats(self) -> dict:
        workers = [w.get_stats() for w in self._workers]
        return {
            "worker_count": len(workers),
            "workers": workers,
            "total_processed": sum(w["jobs_processed"] for w in workers),
            "total_failed": sum(w["jobs_failed"] for w in workers),
        }

"""Background sweeps over stored deliveries.

``RetryScheduler`` re-enqueues retries that are due (covering jobs lost
from a non-durable queue), recovers deliveries left ``in_progress`` by a
worker that died mid-attempt, optionally re-attempts recently failed
deliveries that still have attempts left, and applies the retention
window once a day. ``cleanup_old_data`` is the retention sweep itself.
"""

import logging
from datetime import timedelta
from typing import Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .dispatcher import WebhookDispatcher
from .exceptions import InvalidStateTransitionError
from .models import DeliveryStatus, utcnow
from .repository import WebhookRepository

logger = logging.getLogger(__name__)

RETRY_SWEEP_JOB_ID = "webhook_retry_sweep"
RETENTION_JOB_ID = "webhook_retention"

ABANDONED_MESSAGE = "Attempt abandoned: worker stopped before recording a result"


class RetryScheduler:
    """Periodic retry sweeps.

    Running two sweeps at once is safe: only ``retrying`` deliveries are
    swept, the queue keeps one waiting job per delivery and the dispatcher
    ignores deliveries that are no longer claimable.

    Example:
        scheduler = RetryScheduler(dispatcher, interval_seconds=60)
        await scheduler.start()
    """

    def __init__(
        self,
        dispatcher: WebhookDispatcher,
        interval_seconds: float = 60.0,
        auto_retry_window_hours: Optional[int] = 24,
        batch_size: int = 100,
        retention_days: int = 0,
        in_progress_timeout_seconds: float = 300.0,
    ):
        """Initialize scheduler.

        Args:
            dispatcher: Dispatcher whose repository and queue are swept.
            interval_seconds: Pause between sweeps once started.
            auto_retry_window_hours: Window for ``auto_retry_failed``; None
                disables that sweep in ``run_once``.
            batch_size: Maximum deliveries handled per sweep.
            retention_days: Daily retention cleanup window; 0 disables it.
            in_progress_timeout_seconds: Age after which an in-progress
                delivery is treated as abandoned; 0 disables the reclaim.
        """
        self.dispatcher = dispatcher
        self.repository = dispatcher.repository
        self.interval_seconds = interval_seconds
        self.auto_retry_window_hours = auto_retry_window_hours
        self.batch_size = batch_size
        self.retention_days = retention_days
        self.in_progress_timeout_seconds = in_progress_timeout_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def sweep_due_retries(self) -> int:
        """Enqueue retrying deliveries whose next attempt is due.

        Returns:
            Number of deliveries enqueued.
        """
        now = utcnow()
        due = await self.repository.find_due_retries(now, limit=self.batch_size)
        count = 0

        for delivery in due:
            tagged = await self.repository.compare_and_set_status(
                delivery.id,
                [DeliveryStatus.RETRYING],
                DeliveryStatus.RETRYING,
                metadata={
                    **delivery.metadata,
                    "retry_source": "scheduler",
                    "swept_at": now.isoformat(),
                },
            )
            if tagged is None:
                continue
            await self.dispatcher.job_queue.enqueue(tagged.id)
            count += 1

        if count:
            logger.info(f"Retry sweep enqueued {count} due deliveries")
        return count

    async def reclaim_stale_in_progress(self) -> int:
        """Recover deliveries whose worker stopped mid-attempt.

        The abandoned attempt counts as spent, since the request may have
        reached the destination: the delivery retries now if it has
        attempts left and fails otherwise.

        Returns:
            Number of deliveries recovered.
        """
        if not self.in_progress_timeout_seconds:
            return 0

        now = utcnow()
        cutoff = now - timedelta(seconds=self.in_progress_timeout_seconds)
        stale = await self.repository.find_stale_in_progress(cutoff, limit=self.batch_size)
        count = 0

        for delivery in stale:
            if delivery.attempt < delivery.max_attempts:
                reclaimed = await self.repository.compare_and_set_status(
                    delivery.id,
                    [DeliveryStatus.IN_PROGRESS],
                    DeliveryStatus.RETRYING,
                    attempt=delivery.attempt + 1,
                    next_attempt_at=now,
                    error_message=ABANDONED_MESSAGE,
                    metadata={**delivery.metadata, "retry_source": "reclaim"},
                )
                if reclaimed is None:
                    continue
                await self.dispatcher.job_queue.enqueue(reclaimed.id)
            else:
                reclaimed = await self.repository.compare_and_set_status(
                    delivery.id,
                    [DeliveryStatus.IN_PROGRESS],
                    DeliveryStatus.FAILED,
                    success=False,
                    next_attempt_at=None,
                    error_message=ABANDONED_MESSAGE,
                )
                if reclaimed is None:
                    continue
            logger.warning(f"Reclaimed abandoned delivery {delivery.id} as {reclaimed.status.value}")
            count += 1

        return count

    async def auto_retry_failed(self, hours: Optional[int] = None) -> int:
        """Retry failed deliveries from the last ``hours`` that can still be retried.

        Returns:
            Number of deliveries re-enqueued.
        """
        hours = hours if hours is not None else (self.auto_retry_window_hours or 24)
        since = utcnow() - timedelta(hours=hours)
        failed = await self.repository.find_failed_since(since, limit=self.batch_size)
        count = 0

        for delivery in failed:
            if not delivery.can_be_retried():
                continue
            try:
                await self.dispatcher.retry(delivery.id, queue=True, source="auto_retry")
                count += 1
            except InvalidStateTransitionError as e:
                logger.debug(f"Skipped auto-retry of {delivery.id}: {e}")

        if count:
            logger.info(f"Auto-retry re-enqueued {count} failed deliveries")
        return count

    async def run_once(self) -> Dict[str, int]:
        result = {"due_retries": await self.sweep_due_retries()}
        if self.in_progress_timeout_seconds:
            result["reclaimed"] = await self.reclaim_stale_in_progress()
        if self.auto_retry_window_hours:
            result["auto_retried"] = await self.auto_retry_failed()
        return result

    async def _sweep_job(self) -> None:
        try:
            await self.run_once()
        except Exception as e:
            logger.error(f"Retry sweep failed: {e}")

    async def _retention_job(self) -> None:
        try:
            await cleanup_old_data(self.repository, self.retention_days)
        except Exception as e:
            logger.error(f"Retention cleanup failed: {e}")

    async def start(self) -> None:
        """Schedule the sweeps on the running event loop."""
        if self.is_running:
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._sweep_job,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=RETRY_SWEEP_JOB_ID,
            max_instances=1,
            coalesce=True,
        )
        if self.retention_days > 0:
            self._scheduler.add_job(
                self._retention_job,
                trigger=CronTrigger(hour=2, minute=0),  # 2 AM daily
                id=RETENTION_JOB_ID,
            )
            logger.info(f"Scheduled daily retention cleanup ({self.retention_days} days)")

        self._scheduler.start()
        logger.info(f"Retry scheduler started (every {self.interval_seconds}s)")

    async def stop(self) -> None:
        if self._scheduler is not None:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Retry scheduler stopped")

    def scheduled_jobs(self) -> Dict[str, Optional[str]]:
        """Next run time of each scheduled job, by job id."""
        if self._scheduler is None:
            return {}
        return {
            job.id: job.next_run_time.isoformat() if job.next_run_time else None
            for job in self._scheduler.get_jobs()
        }


async def cleanup_old_data(repository: WebhookRepository, days: int = 30) -> Dict[str, int]:
    """Delete deliveries and inbound events older than ``days``.

    ``days=0`` keeps everything.
    """
    if days <= 0:
        return {"deliveries": 0, "events": 0}

    cutoff = utcnow() - timedelta(days=days)
    deliveries = await repository.delete_deliveries_before(cutoff)
    events = await repository.delete_events_before(cutoff)
    logger.info(f"Retention cleanup removed {deliveries} deliveries and {events} events older than {days} days")
    return {"deliveries": deliveries, "events": events}

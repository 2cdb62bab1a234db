"""Tests for the delivery queue and workers."""

import asyncio
import time

import pytest

from hookrelay.webhooks.queue import (
    DeliveryJob,
    DeliveryWorker,
    InMemoryDeliveryQueue,
    WorkerConfig,
    WorkerPool,
)


# ============================================================================
# Queue Tests
# ============================================================================

class TestInMemoryDeliveryQueue:
    """Tests for delayed, deduplicated queueing."""

    @pytest.mark.asyncio
    async def test_enqueue_dequeue(self):
        queue = InMemoryDeliveryQueue()

        assert await queue.enqueue("d1")
        job = await queue.dequeue("w1")

        assert job.delivery_id == "d1"
        assert job.worker_id == "w1"
        assert await queue.get_pending_count() == 0

    @pytest.mark.asyncio
    async def test_delayed_job_not_due(self):
        queue = InMemoryDeliveryQueue()
        await queue.enqueue("d1", delay=60)

        assert await queue.dequeue("w1") is None
        assert await queue.is_queued("d1")

    @pytest.mark.asyncio
    async def test_duplicate_enqueue_deduplicated(self):
        queue = InMemoryDeliveryQueue()

        assert await queue.enqueue("d1", delay=60)
        assert not await queue.enqueue("d1")

        assert await queue.get_pending_count() == 1
        # The waiting job moved up to the earlier time
        job = await queue.dequeue("w1")
        assert job is not None and job.delivery_id == "d1"

    @pytest.mark.asyncio
    async def test_taken_job_does_not_block_reenqueue(self):
        queue = InMemoryDeliveryQueue()
        await queue.enqueue("d1")
        await queue.dequeue("w1")

        assert await queue.enqueue("d1", delay=30)

    @pytest.mark.asyncio
    async def test_earliest_due_first(self):
        queue = InMemoryDeliveryQueue()
        await queue.enqueue("first")
        await queue.enqueue("second")

        assert (await queue.dequeue("w1")).delivery_id == "first"
        assert [j.delivery_id for j in await queue.pending_jobs()] == ["second"]

    @pytest.mark.asyncio
    async def test_complete_and_stats(self):
        queue = InMemoryDeliveryQueue()
        await queue.enqueue("d1")
        job = await queue.dequeue("w1")

        assert await queue.complete(job.id)
        assert not await queue.complete(job.id)
        assert (await queue.get_stats())["completed"] == 1

    def test_job_is_due(self):
        job = DeliveryJob(delivery_id="d1", available_at=time.time() + 100)

        assert not job.is_due()
        assert job.is_due(time.time() + 200)
        assert job.to_dict()["delivery_id"] == "d1"


# ============================================================================
# Worker Tests
# ============================================================================

class TestDeliveryWorker:
    """Tests for workers running jobs."""

    @pytest.mark.asyncio
    async def test_drain_runs_due_jobs(self):
        queue = InMemoryDeliveryQueue()
        seen = []

        async def handler(job):
            seen.append(job.delivery_id)

        await queue.enqueue("d1")
        await queue.enqueue("d2")
        await queue.enqueue("d3", delay=60)

        worker = DeliveryWorker(queue, handler)
        assert await worker.drain() == 2
        assert sorted(seen) == ["d1", "d2"]

    @pytest.mark.asyncio
    async def test_handler_error_counted(self):
        queue = InMemoryDeliveryQueue()

        async def handler(job):
            raise RuntimeError("boom")

        await queue.enqueue("d1")
        worker = DeliveryWorker(queue, handler)

        assert await worker.run_once()
        assert worker.get_stats()["jobs_failed"] == 1
        assert (await queue.get_stats())["processing"] == 0

    @pytest.mark.asyncio
    async def test_worker_loop(self):
        queue = InMemoryDeliveryQueue()
        done = asyncio.Event()

        async def handler(job):
            done.set()

        worker = DeliveryWorker(queue, handler, WorkerConfig(poll_interval_seconds=0.01))
        await worker.start()
        await queue.enqueue("d1")

        await asyncio.wait_for(done.wait(), timeout=2)
        await worker.stop()
        assert not worker.is_running


class TestWorkerPool:
    """Tests for the worker pool."""

    @pytest.mark.asyncio
    async def test_start_scale_stop(self):
        queue = InMemoryDeliveryQueue()

        async def handler(job):
            pass

        pool = WorkerPool(queue, handler, worker_count=2, config=WorkerConfig(poll_interval_seconds=0.01))
        await pool.start()
        assert pool.get_stats()["worker_count"] == 2

        await pool.scale(4)
        assert pool.get_stats()["worker_count"] == 4

        await pool.scale(1)
        assert pool.get_stats()["worker_count"] == 1

        await pool.stop()
        assert pool.get_stats()["worker_count"] == 0

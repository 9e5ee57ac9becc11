"""Tests for the ingestion worker process.

Tests cover:
- Worker configuration from settings
- Poll cycles: stale reclaim, batch processing, running totals
- Graceful shutdown
- Uptime formatting
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from tests.factories import make_event
from webingest.db.models.base import JobStatus
from webingest.services.ingestion_queue import BatchResult
from webingest.worker.main import Worker, WorkerConfig


class TestWorkerConfig:
    """Tests for WorkerConfig dataclass."""

    def test_default_config(self):
        """Test WorkerConfig with only a worker id."""
        config = WorkerConfig(worker_id="worker-1")

        assert config.poll_interval == 1.0
        assert config.batch_size == 25
        assert config.shutdown_timeout == 30.0

    def test_from_settings(self):
        """Test WorkerConfig picks up the worker settings block."""
        settings = SimpleNamespace(
            worker=SimpleNamespace(
                worker_id="worker-7",
                poll_interval=0.5,
                batch_size=50,
                shutdown_timeout=10.0,
            )
        )

        config = WorkerConfig.from_settings(settings)

        assert config == WorkerConfig(
            worker_id="worker-7", poll_interval=0.5, batch_size=50, shutdown_timeout=10.0
        )


class TestWorkerPolling:
    """Tests for a single poll cycle."""

    @pytest.mark.asyncio
    async def test_run_once_processes_due_jobs(self, queue):
        """Test a poll cycle drains due jobs and accumulates totals."""
        handler = AsyncMock(return_value=None)
        queue.register_handler("website.lead.submitted", handler)
        first = await queue.enqueue(make_event())
        await queue.enqueue(make_event(occurred_at="2026-10-19T07:00:00Z"))
        worker = Worker(queue, WorkerConfig(worker_id="worker-test", batch_size=10))

        full = await worker.run_once()

        assert full is False
        assert handler.await_count == 2
        assert worker.totals.picked_count == 2
        assert worker.totals.processed_count == 2
        job = await queue.get_job_by_id(first.job_id)
        assert job.status == JobStatus.PROCESSED

    @pytest.mark.asyncio
    async def test_full_batch_signals_more_work(self, queue):
        """Test a batch that fills batch_size asks for an immediate re-poll."""
        queue.register_handler("website.lead.submitted", AsyncMock(return_value=None))
        await queue.enqueue(make_event())
        await queue.enqueue(make_event(occurred_at="2026-10-19T07:00:00Z"))
        worker = Worker(queue, WorkerConfig(worker_id="worker-test", batch_size=1))

        assert await worker.run_once() is True
        assert await worker.run_once() is True
        assert await worker.run_once() is False
        assert worker.totals.processed_count == 2

    @pytest.mark.asyncio
    async def test_run_once_reclaims_before_claiming(self):
        """Test stale jobs are reclaimed before the batch is claimed."""
        calls = []
        queue = MagicMock()
        queue.reclaim_stale = AsyncMock(side_effect=lambda: calls.append("reclaim") or 1)

        async def process_batch(max_jobs):
            calls.append(("batch", max_jobs))
            return BatchResult(picked_count=1, requeued_count=1, failed_count=0)

        queue.process_batch = process_batch
        worker = Worker(queue, WorkerConfig(worker_id="worker-test", batch_size=5))

        await worker.run_once()

        assert calls == ["reclaim", ("batch", 5)]
        assert worker.totals.requeued_count == 1


class TestWorkerShutdown:
    """Tests for Worker graceful shutdown."""

    @pytest.mark.asyncio
    async def test_stop_sets_shutdown_event(self, queue):
        """Test that stop() flags the worker as stopping."""
        worker = Worker(queue, WorkerConfig(worker_id="worker-test"))

        assert not worker.stopping
        await worker.stop()
        assert worker.stopping

    @pytest.mark.asyncio
    async def test_run_loop_exits_on_shutdown(self, queue):
        """Test that the run loop exits when shutdown is requested."""
        worker = Worker(queue, WorkerConfig(worker_id="worker-test", poll_interval=0.1))

        async def delayed_shutdown():
            await asyncio.sleep(0.2)
            await worker.stop()

        await asyncio.wait_for(
            asyncio.gather(worker.start(), delayed_shutdown()),
            timeout=2.0,
        )

        assert worker.stopping
        assert worker.totals.picked_count == 0

    @pytest.mark.asyncio
    async def test_loop_survives_cycle_errors(self):
        """Test an unexpected error in a cycle does not end the loop."""
        queue = MagicMock()
        queue.handled_event_types = []
        worker = Worker(queue, WorkerConfig(worker_id="worker-test", poll_interval=0.05))
        attempts = 0

        async def failing_reclaim():
            nonlocal attempts
            attempts += 1
            await worker.stop()
            raise RuntimeError("boom")

        queue.reclaim_stale = failing_reclaim

        await asyncio.wait_for(worker.start(), timeout=3.0)

        assert attempts == 1


class TestWorkerUptime:
    """Tests for Worker uptime calculation."""

    def test_uptime_not_started(self, queue):
        """Test uptime when worker hasn't started."""
        worker = Worker(queue, WorkerConfig(worker_id="worker-test"))
        assert worker._get_uptime() == "0s"

    def test_uptime_minutes(self, queue):
        """Test uptime formatting with minutes."""
        worker = Worker(queue, WorkerConfig(worker_id="worker-test"))
        worker._started_at = datetime.now(UTC) - timedelta(minutes=5, seconds=30)
        assert worker._get_uptime() == "5m 30s"

    def test_uptime_hours(self, queue):
        """Test uptime formatting with hours."""
        worker = Worker(queue, WorkerConfig(worker_id="worker-test"))
        worker._started_at = datetime.now(UTC) - timedelta(hours=2, minutes=15, seconds=10)
        assert worker._get_uptime() == "2h 15m 10s"

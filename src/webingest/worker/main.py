"""Ingestion worker entry point.

This module provides the Worker class that:
- Polls the ingestion queue for due jobs in batches
- Re-polls immediately while batches come back full
- Reclaims jobs abandoned by crashed workers
- Handles graceful shutdown via SIGTERM/SIGINT
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, NoReturn

from webingest.services.ingestion_queue import BatchResult

if TYPE_CHECKING:
    from webingest.core.config import Settings
    from webingest.services.ingestion_queue import IngestionQueueService

logger = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    """Configuration for the worker process.

    Attributes:
        worker_id: Unique identifier for this worker instance.
        poll_interval: Seconds between polls when the queue is idle.
        batch_size: Maximum jobs claimed per poll.
        shutdown_timeout: Seconds to wait for graceful shutdown.
    """

    worker_id: str
    poll_interval: float = 1.0
    batch_size: int = 25
    shutdown_timeout: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> WorkerConfig:
        return cls(
            worker_id=settings.worker.worker_id,
            poll_interval=settings.worker.poll_interval,
            batch_size=settings.worker.batch_size,
            shutdown_timeout=settings.worker.shutdown_timeout,
        )


class Worker:
    """Long-running loop around IngestionQueueService.process_batch.

    Several workers may run against the same database; the queue's atomic
    claim keeps them from processing the same job twice.

    Example:
        worker = Worker(queue, WorkerConfig(worker_id="worker-1"))
        await worker.start()
    """

    def __init__(self, queue: IngestionQueueService, config: WorkerConfig) -> None:
        self.queue = queue
        self.config = config
        self._shutdown_event = asyncio.Event()
        self._started_at: datetime | None = None
        self.totals = BatchResult()

    async def start(self) -> None:
        """Run until stop() is called."""
        self._started_at = datetime.now(UTC)
        logger.info(
            "Worker starting: worker_id=%s, batch_size=%d, handlers=%s",
            self.config.worker_id,
            self.config.batch_size,
            self.queue.handled_event_types,
        )

        try:
            await self._run_loop()
        finally:
            logger.info(
                "Worker stopped: worker_id=%s, processed=%d, dead_lettered=%d, uptime=%s",
                self.config.worker_id,
                self.totals.processed_count,
                self.totals.dead_lettered_count,
                self._get_uptime(),
            )

    async def stop(self) -> None:
        """Request graceful shutdown of the worker."""
        logger.info("Worker shutdown requested: worker_id=%s", self.config.worker_id)
        self._shutdown_event.set()

    @property
    def stopping(self) -> bool:
        return self._shutdown_event.is_set()

    async def _run_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                full_batch = await self.run_once()
                if full_batch:
                    continue

                # Wait before next poll cycle (uses wait_for to allow shutdown)
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self.config.poll_interval,
                    )

            except Exception as e:
                logger.exception("Error in worker loop: %s", e)
                # Brief pause before retrying to avoid tight error loops
                await asyncio.sleep(1.0)

    async def run_once(self) -> bool:
        """One poll cycle: stale reclaim, then one batch.

        Returns:
            True if the batch was full and more jobs are likely due.
        """
        await self.queue.reclaim_stale()
        result = await self.queue.process_batch(self.config.batch_size)
        self.totals = self.totals + result
        return result.picked_count >= self.config.batch_size

    def _get_uptime(self) -> str:
        """Calculate worker uptime as a human-readable string."""
        if self._started_at is None:
            return "0s"
        delta = datetime.now(UTC) - self._started_at
        hours, remainder = divmod(int(delta.total_seconds()), 3600)
        minutes, seconds = divmod(remainder, 60)
        if hours > 0:
            return f"{hours}h {minutes}m {seconds}s"
        elif minutes > 0:
            return f"{minutes}m {seconds}s"
        else:
            return f"{seconds}s"


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


async def _async_main(settings: Settings) -> None:
    """Wire the services, run the worker and wait for a shutdown signal."""
    from webingest.db import close_engine, get_session_factory
    from webingest.services import build_runtime
    from webingest.worker.handlers import HandlerRegistry, register_default_handlers

    session_factory = get_session_factory()
    runtime = build_runtime(settings, session_factory=session_factory)
    register_default_handlers(HandlerRegistry(session_factory)).bind(runtime.queue)

    config = WorkerConfig.from_settings(settings)
    worker = Worker(runtime.queue, config)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, _handle_shutdown, signum, shutdown_event)

    worker_task = asyncio.create_task(worker.start())
    signal_task = asyncio.create_task(shutdown_event.wait())
    try:
        # Wait for shutdown signal or an unexpected worker exit
        await asyncio.wait({worker_task, signal_task}, return_when=asyncio.FIRST_COMPLETED)
        signal_task.cancel()
        await worker.stop()
        try:
            await asyncio.wait_for(worker_task, timeout=config.shutdown_timeout)
        except TimeoutError:
            logger.warning("Worker did not stop within timeout, forcing shutdown")
            worker_task.cancel()
    finally:
        await close_engine()


def _handle_shutdown(signum: int, shutdown_event: asyncio.Event) -> None:
    logger.info("Shutdown signal received (signal=%d)", signum)
    shutdown_event.set()


def run() -> NoReturn:
    """Run the worker process.

    This is the main entry point for the worker. It:
    - Loads and validates settings (exits with status 1 if invalid)
    - Sets up logging
    - Runs the worker until SIGTERM/SIGINT
    """
    from webingest.core.settings import get_settings

    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("Ingestion worker starting...")

    try:
        asyncio.run(_async_main(settings))
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    except Exception as e:
        logger.exception("Worker failed: %s", e)
        sys.exit(1)

    logger.info("Ingestion worker shutdown complete")
    sys.exit(0)


if __name__ == "__main__":
    run()

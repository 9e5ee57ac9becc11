"""Ingestion queue services.

- events: envelope parsing, payload schemas and idempotency keys
- store: job store interface (PostgreSQL and in-memory implementations)
- retry: backoff schedule and dead-letter threshold
- readiness: cached store reachability check
- ingestion_queue: enqueue and batch processing
- dead_letter: operator listing and requeue
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from webingest.services.dead_letter import DeadLetterService
from webingest.services.ingestion_queue import IngestionQueueService
from webingest.services.readiness import ReadinessGate
from webingest.services.store import JobStore, SqlJobStore

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from webingest.core.config import Settings


@dataclass
class QueueRuntime:
    """Services sharing one store and one readiness gate."""

    store: JobStore
    readiness: ReadinessGate
    queue: IngestionQueueService
    dead_letters: DeadLetterService


def build_runtime(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    store: JobStore | None = None,
) -> QueueRuntime:
    """Wire the queue services from settings.

    Args:
        settings: Application settings.
        session_factory: Session factory for the PostgreSQL store; defaults
            to the shared factory from webingest.db.
        store: Use this store instead of building a SqlJobStore.
    """
    if store is None:
        if session_factory is None:
            from webingest.db import get_session_factory

            session_factory = get_session_factory()
        store = SqlJobStore(session_factory, connect_timeout=settings.database.connect_timeout)

    readiness = ReadinessGate(store, cache_seconds=settings.queue.readiness_cache_seconds)
    return QueueRuntime(
        store=store,
        readiness=readiness,
        queue=IngestionQueueService.from_settings(store, settings, readiness=readiness),
        dead_letters=DeadLetterService(store, readiness=readiness),
    )


__all__ = [
    "DeadLetterService",
    "IngestionQueueService",
    "QueueRuntime",
    "ReadinessGate",
    "build_runtime",
]

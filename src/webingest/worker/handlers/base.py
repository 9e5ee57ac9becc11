"""Handler context and registry for CRM event handlers.

CRM handlers run inside their own database transaction, separate from the
job status update. If a worker dies after the CRM commit but before the job
is marked processed, the job is retried; every handler therefore looks for
rows carrying the job's event key before writing anything.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from webingest.services.events import EventType

if TYPE_CHECKING:
    from datetime import datetime

    from pydantic import BaseModel
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from webingest.db.models.base import Base
    from webingest.services.ingestion_queue import IngestionQueueService
    from webingest.services.store import IngestionJobRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HandlerContext:
    """What a handler gets besides the payload: the job and an open session."""

    job: IngestionJobRecord
    session: AsyncSession

    @property
    def tenant_id(self) -> str:
        return self.job.tenant_id

    @property
    def event_key(self) -> str:
        return self.job.event_key

    @property
    def occurred_at(self) -> datetime:
        return self.job.occurred_at


CrmHandler = Callable[[HandlerContext, "BaseModel"], Coroutine[Any, Any, dict[str, Any] | None]]


class HandlerRegistry:
    """Maps event types to CRM handlers and runs each in a session.

    Example:
        registry = HandlerRegistry(get_session_factory())
        registry.register(EventType.LEAD_SUBMITTED, lead_submitted_handler)
        registry.bind(queue)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._handlers: dict[str, CrmHandler] = {}

    def register(self, event_type: str | EventType, handler: CrmHandler) -> None:
        type_str = event_type.value if isinstance(event_type, EventType) else event_type
        self._handlers[type_str] = handler

    def get(self, event_type: str) -> CrmHandler | None:
        return self._handlers.get(event_type)

    @property
    def event_types(self) -> list[str]:
        return sorted(self._handlers)

    def bind(self, queue: IngestionQueueService) -> None:
        """Register every handler on the queue service."""
        for event_type, handler in self._handlers.items():
            queue.register_handler(event_type, functools.partial(self.dispatch, handler))

    async def dispatch(
        self,
        handler: CrmHandler,
        job: IngestionJobRecord,
        payload: BaseModel,
    ) -> dict[str, Any] | None:
        """Run handler in a fresh session, committing on success."""
        async with self._session_factory() as session:
            try:
                result = await handler(HandlerContext(job=job, session=session), payload)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        logger.debug("Handler committed: job_id=%s, result=%s", job.id, result)
        return result


async def find_by_event_key(
    session: AsyncSession,
    model: type[Base],
    tenant_id: str,
    event_key: str,
) -> Any | None:
    """Row of model previously written for this event, if any."""
    result = await session.execute(
        select(model)
        .where(model.tenant_id == tenant_id)
        .where(model.source_event_key == event_key)
    )
    return result.scalars().first()

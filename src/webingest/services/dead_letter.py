"""Operator tooling for dead-lettered ingestion jobs.

Jobs land in dead_letter once their retry budget is spent. Operators list
them (per tenant or across all tenants), fix the cause, and requeue them
one at a time or a page at a time. A requeued job is pending and due
immediately; its attempt count and last error are kept for the record.

Like the queue service, nothing here raises when the store is down: each
result carries reason="store_unavailable" instead.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from webingest.db.models.base import JobStatus
from webingest.services.ingestion_queue import coerce_job_id, utcnow
from webingest.services.readiness import STORE_UNAVAILABLE, ReadinessGate
from webingest.services.store import (
    IngestionJobRecord,
    JobStore,
    StoreError,
    StoreUnavailableError,
)

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 500


class _StoreDown(Exception):
    pass


@dataclass(frozen=True)
class DeadLetterFilter:
    """Page selector for dead-letter listings.

    limit is clamped to [1, MAX_LIST_LIMIT]; a negative offset is rejected.
    An empty tenant_id selects the global feed.
    """

    tenant_id: str | None = None
    limit: int = DEFAULT_LIST_LIMIT
    offset: int = 0
    include_payload: bool = False

    def __post_init__(self) -> None:
        if self.offset < 0:
            msg = f"offset must be >= 0, got {self.offset}"
            raise ValueError(msg)
        object.__setattr__(self, "limit", max(1, min(self.limit, MAX_LIST_LIMIT)))
        object.__setattr__(self, "tenant_id", (self.tenant_id or "").strip() or None)


@dataclass(frozen=True)
class DeadLetterPage:
    """One page of dead-lettered jobs.

    Attributes:
        jobs: Matching jobs, newest dead-letter first.
        reason: store_unavailable when the listing could not run.
    """

    jobs: list[IngestionJobRecord] = field(default_factory=list)
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.reason is None


@dataclass(frozen=True)
class RequeueSingleResult:
    job_id: str
    requeued: bool
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"jobId": self.job_id, "requeued": self.requeued}


@dataclass(frozen=True)
class RequeueBatchResult:
    requeued_count: int = 0
    skipped_count: int = 0
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"requeuedCount": self.requeued_count, "skippedCount": self.skipped_count}


class DeadLetterService:
    """List and requeue dead-lettered jobs."""

    def __init__(
        self,
        store: JobStore,
        readiness: ReadinessGate | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.readiness = readiness or ReadinessGate(store)
        self._clock = clock

    async def _is_ready(self) -> bool:
        result = await self.readiness.check()
        if not result.ready:
            logger.warning("Dead-letter operation skipped: %s", result.message)
        return result.ready

    def _store_failed(self, error: StoreError) -> _StoreDown:
        if isinstance(error, StoreUnavailableError):
            self.readiness.invalidate()
        logger.error("Dead-letter store operation failed: %s", error)
        return _StoreDown(str(error))

    async def list(self, dead_letter_filter: DeadLetterFilter) -> DeadLetterPage:
        """Dead-lettered jobs matching the filter, newest first."""
        if not await self._is_ready():
            return DeadLetterPage(reason=STORE_UNAVAILABLE)
        try:
            jobs = await self.store.list_dead_letters(
                tenant_id=dead_letter_filter.tenant_id,
                limit=dead_letter_filter.limit,
                offset=dead_letter_filter.offset,
                include_payload=dead_letter_filter.include_payload,
            )
        except StoreError as e:
            self._store_failed(e)
            return DeadLetterPage(reason=STORE_UNAVAILABLE)
        return DeadLetterPage(jobs=jobs)

    async def requeue_one(self, job_id: uuid.UUID | str) -> RequeueSingleResult:
        """Move one dead-lettered job back to pending.

        Returns requeued=False when the id is unknown, malformed or the job
        is not dead-lettered. None of those are errors.
        """
        parsed = coerce_job_id(job_id)
        if parsed is None:
            logger.warning("Requeue skipped, malformed job id: %s", job_id)
            return RequeueSingleResult(job_id=str(job_id), requeued=False)

        if not await self._is_ready():
            return RequeueSingleResult(job_id=str(parsed), requeued=False, reason=STORE_UNAVAILABLE)
        try:
            requeued = await self._requeue(parsed)
        except _StoreDown:
            return RequeueSingleResult(job_id=str(parsed), requeued=False, reason=STORE_UNAVAILABLE)
        return RequeueSingleResult(job_id=str(parsed), requeued=requeued)

    async def requeue_batch(self, dead_letter_filter: DeadLetterFilter) -> RequeueBatchResult:
        """Requeue every job on one page of the dead-letter listing.

        Jobs that left dead_letter between listing and requeue are skipped.
        """
        page = await self.list(
            DeadLetterFilter(
                tenant_id=dead_letter_filter.tenant_id,
                limit=dead_letter_filter.limit,
                offset=dead_letter_filter.offset,
            )
        )
        if not page.ok:
            return RequeueBatchResult(reason=page.reason)

        requeued = skipped = 0
        for job in page.jobs:
            try:
                done = await self._requeue(job.id)
            except _StoreDown:
                return RequeueBatchResult(
                    requeued_count=requeued, skipped_count=skipped, reason=STORE_UNAVAILABLE
                )
            if done:
                requeued += 1
            else:
                skipped += 1

        logger.info(
            "Dead-letter batch requeue: tenant_id=%s, requeued=%d, skipped=%d",
            dead_letter_filter.tenant_id or "*",
            requeued,
            skipped,
        )
        return RequeueBatchResult(requeued_count=requeued, skipped_count=skipped)

    async def _requeue(self, job_id: uuid.UUID) -> bool:
        now = self._clock()
        try:
            requeued = await self.store.transition(
                job_id,
                {JobStatus.DEAD_LETTER},
                {
                    "status": JobStatus.PENDING,
                    "dead_lettered_at": None,
                    "next_attempt_at": now,
                },
                now,
            )
        except StoreError as e:
            raise self._store_failed(e) from e

        if requeued:
            logger.info("Dead-letter job requeued: job_id=%s", job_id)
        else:
            logger.info("Requeue skipped, job not dead-lettered: job_id=%s", job_id)
        return requeued

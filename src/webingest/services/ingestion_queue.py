"""Website event ingestion queue service.

This service turns website events into durable ingestion jobs and drives
them through processing with retries and dead-lettering.

Key features:
- Idempotent enqueue keyed on (tenant_id, event_key)
- Atomic batch claiming (no duplicate processing across workers)
- Exponential backoff for retries
- Dead letter handling once the retry budget is exhausted
- Stale reclaim for jobs abandoned by crashed workers

Nothing here raises to callers on infrastructure trouble: an unreachable
store produces a structured result (accepted=False, an empty batch, ...).

Usage:
    from webingest.services.ingestion_queue import IngestionQueueService
    from webingest.services.store import MemoryJobStore

    queue = IngestionQueueService(MemoryJobStore())
    queue.register_handler("website.lead.submitted", handle_lead)

    result = await queue.enqueue(event)
    if not result.accepted:
        logger.warning("Event not queued: %s", result.reason)

    batch = await queue.process_batch(25)
"""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from collections.abc import Callable, Coroutine, Mapping
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from webingest.db.models.base import JobStatus
from webingest.services.events import (
    DEFAULT_KEY_BUCKET_SECONDS,
    EventEnvelopeError,
    EventType,
    EventValidationError,
    WebsiteEvent,
    derive_event_key,
    parse_envelope,
    validate_payload,
)
from webingest.services.readiness import STORE_UNAVAILABLE, ReadinessGate, ReadinessResult
from webingest.services.retry import RetryPolicy
from webingest.services.store import (
    IngestionJobRecord,
    JobStore,
    NewJob,
    StoreError,
    StoreUnavailableError,
)

if TYPE_CHECKING:
    from pydantic import BaseModel

    from webingest.core.config import Settings

logger = logging.getLogger(__name__)

# Handlers receive the claimed job and its validated payload model
EventHandler = Callable[
    [IngestionJobRecord, "BaseModel"], Coroutine[Any, Any, dict[str, Any] | None]
]

ENQUEUE_FAILED = "enqueue_failed"
INVALID_ENVELOPE = "invalid_envelope"

MAX_ERROR_LENGTH = 2000

NON_TERMINAL_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.FAILED})


def utcnow() -> datetime:
    return datetime.now(UTC)


def coerce_job_id(job_id: uuid.UUID | str) -> uuid.UUID | None:
    """Parse a job id, returning None for anything that is not a UUID."""
    if isinstance(job_id, uuid.UUID):
        return job_id
    try:
        return uuid.UUID(str(job_id).strip())
    except ValueError:
        return None


@dataclass(frozen=True)
class EnqueueResult:
    """Outcome of enqueue.

    Attributes:
        accepted: The event is durably queued (new or duplicate).
        duplicate: An equivalent event had already been queued.
        job_id: Id of the queued job when accepted.
        reason: store_unavailable, enqueue_failed or invalid_envelope when rejected.
    """

    accepted: bool
    duplicate: bool
    job_id: uuid.UUID | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "accepted": self.accepted,
            "duplicate": self.duplicate,
            "jobId": str(self.job_id) if self.job_id else None,
            "reason": self.reason,
        }


@dataclass
class BatchResult:
    """Counters for one process_batch call.

    failed_count counts jobs that failed permanently, so it always equals
    dead_lettered_count; retried failures are in requeued_count.
    """

    picked_count: int = 0
    processed_count: int = 0
    failed_count: int = 0
    requeued_count: int = 0
    dead_lettered_count: int = 0

    def __add__(self, other: BatchResult) -> BatchResult:
        return BatchResult(
            picked_count=self.picked_count + other.picked_count,
            processed_count=self.processed_count + other.processed_count,
            failed_count=self.failed_count + other.failed_count,
            requeued_count=self.requeued_count + other.requeued_count,
            dead_lettered_count=self.dead_lettered_count + other.dead_lettered_count,
        )

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class QueueSummary:
    """Per-status job counts plus the claimable backlog."""

    ready: bool
    status_counts: dict[str, int] = field(default_factory=dict)
    pending_ready_count: int = 0
    oldest_pending_at: datetime | None = None


class JobOutcome(enum.Enum):
    PROCESSED = "processed"
    REQUEUED = "requeued"
    DEAD_LETTERED = "dead_lettered"
    # Outcome could not be recorded; stale reclaim returns the job to pending
    LOST = "lost"


class IngestionQueueService:
    """Durable, idempotent ingestion queue for website events.

    Attributes:
        retry_policy: Backoff schedule and max attempts.
        handler_timeout: Seconds a handler may run before it counts as failed.
        max_batch_size: Ceiling applied to process_batch(max_jobs).
        key_bucket_seconds: Occurrence time bucket for idempotency keys.
        stale_job_threshold_seconds: Age at which processing jobs are reclaimed.
        worker_id: Recorded on jobs this instance claims.
    """

    def __init__(
        self,
        store: JobStore,
        retry_policy: RetryPolicy | None = None,
        readiness: ReadinessGate | None = None,
        *,
        handler_timeout: float = 30.0,
        max_batch_size: int = 500,
        key_bucket_seconds: int = DEFAULT_KEY_BUCKET_SECONDS,
        stale_job_threshold_seconds: int = 600,
        worker_id: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.readiness = readiness or ReadinessGate(store)
        self.handler_timeout = handler_timeout
        self.max_batch_size = max_batch_size
        self.key_bucket_seconds = key_bucket_seconds
        self.stale_job_threshold_seconds = stale_job_threshold_seconds
        self.worker_id = worker_id
        self._clock = clock
        self._handlers: dict[str, EventHandler] = {}

    @classmethod
    def from_settings(
        cls,
        store: JobStore,
        settings: Settings,
        readiness: ReadinessGate | None = None,
    ) -> IngestionQueueService:
        """Build a service configured from application settings."""
        queue = settings.queue
        return cls(
            store,
            retry_policy=RetryPolicy.from_settings(queue),
            readiness=readiness or ReadinessGate(store, cache_seconds=queue.readiness_cache_seconds),
            handler_timeout=queue.handler_timeout_seconds,
            max_batch_size=queue.max_batch_size,
            key_bucket_seconds=queue.event_key_bucket_seconds,
            stale_job_threshold_seconds=queue.stale_job_threshold_seconds,
            worker_id=settings.worker.worker_id,
        )

    def register_handler(self, event_type: str | EventType, handler: EventHandler) -> None:
        """Register the business handler for an event type.

        Args:
            event_type: The event type string or EventType enum.
            handler: Async function called with the job and its validated payload.
        """
        type_str = event_type.value if isinstance(event_type, EventType) else event_type
        self._handlers[type_str] = handler
        logger.debug("Registered handler for event_type=%s", type_str)

    @property
    def handled_event_types(self) -> list[str]:
        return sorted(self._handlers)

    async def is_ready(self) -> ReadinessResult:
        """Report whether the job store is reachable."""
        return await self.readiness.check()

    def _store_failed(self, error: StoreError) -> None:
        if isinstance(error, StoreUnavailableError):
            self.readiness.invalidate()

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue(self, event: WebsiteEvent | Mapping[str, Any]) -> EnqueueResult:
        """Queue an event for processing, collapsing duplicates.

        Safe to call repeatedly for the same logical event: the second and
        later calls return duplicate=True with the original job id.

        Args:
            event: Parsed envelope or raw camelCase mapping.

        Returns:
            EnqueueResult; never raises for store or validation problems.
        """
        readiness = await self.is_ready()
        if not readiness.ready:
            logger.warning("Enqueue skipped, store not ready: %s", readiness.message)
            return EnqueueResult(accepted=False, duplicate=False, reason=STORE_UNAVAILABLE)

        try:
            envelope = parse_envelope(event)
        except EventEnvelopeError as e:
            logger.warning("Enqueue rejected, malformed envelope: %s", e)
            return EnqueueResult(accepted=False, duplicate=False, reason=INVALID_ENVELOPE)

        event_key = derive_event_key(envelope, self.key_bucket_seconds)
        new_job = NewJob(
            tenant_id=envelope.tenant_id,
            event_type=envelope.event_type,
            event_version=envelope.version,
            event_key=event_key,
            occurred_at=envelope.occurred_at,
            payload=envelope.to_wire()["payload"],
        )

        try:
            inserted = await self.store.try_insert(new_job, self._clock())
        except StoreUnavailableError as e:
            self._store_failed(e)
            return EnqueueResult(accepted=False, duplicate=False, reason=STORE_UNAVAILABLE)
        except StoreError:
            return EnqueueResult(accepted=False, duplicate=False, reason=ENQUEUE_FAILED)

        if not inserted.created:
            logger.info(
                "Duplicate event ignored: job_id=%s, tenant_id=%s, event_type=%s",
                inserted.job_id,
                envelope.tenant_id,
                envelope.event_type,
            )
            return EnqueueResult(accepted=True, duplicate=True, job_id=inserted.job_id)

        logger.info(
            "Event enqueued: job_id=%s, tenant_id=%s, event_type=%s, event_key=%s",
            inserted.job_id,
            envelope.tenant_id,
            envelope.event_type,
            event_key[:16],
        )
        return EnqueueResult(accepted=True, duplicate=False, job_id=inserted.job_id)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_batch(self, max_jobs: int) -> BatchResult:
        """Claim up to max_jobs due jobs and process each one.

        Jobs are handled in next_attempt_at order and each outcome is
        committed on its own, so one failing job never affects the others.

        Args:
            max_jobs: Upper bound on jobs claimed; clamped to max_batch_size.

        Returns:
            Counters for this batch (all zero when the store is not ready).

        Raises:
            ValueError: If max_jobs is less than 1.
        """
        if max_jobs < 1:
            msg = f"max_jobs must be at least 1, got {max_jobs}"
            raise ValueError(msg)

        result = BatchResult()
        readiness = await self.is_ready()
        if not readiness.ready:
            logger.warning("Batch skipped, store not ready: %s", readiness.message)
            return result

        limit = min(max_jobs, self.max_batch_size)
        try:
            jobs = await self.store.claim_batch(limit, self._clock(), self.worker_id)
        except StoreError as e:
            self._store_failed(e)
            logger.error("Batch claim failed: %s", e)
            return result

        result.picked_count = len(jobs)
        claims = {job.id: job.attempt_count for job in jobs}
        for job in jobs:
            # Jobs still waiting in this batch must not look abandoned to reclaim
            claims = await self._refresh_claims(claims)
            if job.id not in claims:
                logger.warning("Claim lost before dispatch, job skipped: job_id=%s", job.id)
                continue
            outcome = await self._process_job(job)
            del claims[job.id]
            if outcome is JobOutcome.PROCESSED:
                result.processed_count += 1
            elif outcome is JobOutcome.REQUEUED:
                result.requeued_count += 1
            elif outcome is JobOutcome.DEAD_LETTERED:
                result.dead_lettered_count += 1
                result.failed_count += 1

        if jobs:
            logger.info(
                "Batch processed: picked=%d, processed=%d, requeued=%d, dead_lettered=%d",
                result.picked_count,
                result.processed_count,
                result.requeued_count,
                result.dead_lettered_count,
            )
        return result

    async def _refresh_claims(self, claims: dict[uuid.UUID, int]) -> dict[uuid.UUID, int]:
        """Heartbeat the claims of this batch, dropping any that were lost."""
        try:
            held = await self.store.heartbeat(claims, self.worker_id, self._clock())
        except StoreError as e:
            # Without a heartbeat the outcome could not be recorded either
            self._store_failed(e)
            logger.error("Claim heartbeat failed: %s", e)
            return {}
        return {job_id: attempts for job_id, attempts in claims.items() if job_id in held}

    async def _process_job(self, job: IngestionJobRecord) -> JobOutcome:
        logger.info(
            "Processing job: job_id=%s, event_type=%s, attempt=%d/%d",
            job.id,
            job.event_type,
            job.attempt_count,
            self.retry_policy.max_attempts,
        )

        try:
            payload = validate_payload(job.event_type, job.payload)
            handler = self._handlers.get(job.event_type)
            if handler is None:
                raise EventValidationError("no_handler", job.event_type)
            await asyncio.wait_for(handler(job, payload), timeout=self.handler_timeout)
        except EventValidationError as e:
            logger.warning("Job failed validation: job_id=%s, error=%s", job.id, e)
            return await self._record_failure(job, str(e))
        except TimeoutError:
            logger.warning(
                "Job handler timed out: job_id=%s, timeout=%.1fs", job.id, self.handler_timeout
            )
            return await self._record_failure(
                job, f"handler_timeout: exceeded {self.handler_timeout:g}s"
            )
        except Exception as e:
            logger.exception(
                "Job failed: job_id=%s, event_type=%s, error=%s", job.id, job.event_type, e
            )
            return await self._record_failure(job, f"handler_failed: {type(e).__name__}: {e}")

        return await self._record_success(job)

    async def _record_success(self, job: IngestionJobRecord) -> JobOutcome:
        now = self._clock()
        try:
            updated = await self.store.transition(
                job.id,
                {JobStatus.PROCESSING},
                {"status": JobStatus.PROCESSED, "processed_at": now, "last_error": None},
                now,
                attempt_count=job.attempt_count,
            )
        except StoreError as e:
            self._store_failed(e)
            logger.error("Failed to record success: job_id=%s, error=%s", job.id, e)
            return JobOutcome.LOST

        if not updated:
            logger.warning("Job no longer processing, success not recorded: job_id=%s", job.id)
            return JobOutcome.LOST

        logger.info("Job completed: job_id=%s, event_type=%s", job.id, job.event_type)
        return JobOutcome.PROCESSED

    async def _record_failure(self, job: IngestionJobRecord, error: str) -> JobOutcome:
        error = error[:MAX_ERROR_LENGTH]
        now = self._clock()

        if self.retry_policy.should_dead_letter(job.attempt_count):
            values = {
                "status": JobStatus.DEAD_LETTER,
                "dead_lettered_at": now,
                "last_error": error,
            }
            outcome = JobOutcome.DEAD_LETTERED
        else:
            delay = self.retry_policy.backoff(job.attempt_count)
            values = {
                "status": JobStatus.PENDING,
                "next_attempt_at": now + delay,
                "last_error": error,
            }
            outcome = JobOutcome.REQUEUED

        try:
            updated = await self.store.transition(
                job.id, {JobStatus.PROCESSING}, values, now, attempt_count=job.attempt_count
            )
        except StoreError as e:
            self._store_failed(e)
            logger.error("Failed to record failure: job_id=%s, error=%s", job.id, e)
            return JobOutcome.LOST

        if not updated:
            logger.warning("Job no longer processing, failure not recorded: job_id=%s", job.id)
            return JobOutcome.LOST

        if outcome is JobOutcome.DEAD_LETTERED:
            logger.warning(
                "Job dead-lettered: job_id=%s, event_type=%s, attempts=%d, error=%s",
                job.id,
                job.event_type,
                job.attempt_count,
                error,
            )
        else:
            logger.info(
                "Job scheduled for retry: job_id=%s, attempt=%d/%d, retry_at=%s",
                job.id,
                job.attempt_count,
                self.retry_policy.max_attempts,
                values["next_attempt_at"].isoformat(),
            )
        return outcome

    # ------------------------------------------------------------------
    # Inspection and operations
    # ------------------------------------------------------------------

    async def get_job_by_id(self, job_id: uuid.UUID | str) -> IngestionJobRecord | None:
        """Retrieve a job by id, or None if unknown or the store is not ready."""
        parsed = coerce_job_id(job_id)
        if parsed is None:
            return None
        if not (await self.is_ready()).ready:
            return None
        try:
            return await self.store.get(parsed)
        except StoreError as e:
            self._store_failed(e)
            return None

    async def schedule_now(self, job_id: uuid.UUID | str) -> bool:
        """Make a non-terminal job due immediately without changing its status.

        Returns:
            True if the job was rescheduled.
        """
        parsed = coerce_job_id(job_id)
        if parsed is None or not (await self.is_ready()).ready:
            return False

        now = self._clock()
        try:
            scheduled = await self.store.transition(
                parsed, NON_TERMINAL_STATUSES, {"next_attempt_at": now}, now
            )
        except StoreError as e:
            self._store_failed(e)
            return False

        if scheduled:
            logger.info("Job scheduled for immediate attempt: job_id=%s", parsed)
        return scheduled

    async def reclaim_stale(self) -> int:
        """Release processing jobs abandoned by crashed workers.

        The abandoned attempt counts toward max_attempts: jobs with attempts
        left go back to pending, the rest are dead-lettered.

        Returns:
            Number of jobs reclaimed or dead-lettered.
        """
        if not (await self.is_ready()).ready:
            return 0

        now = self._clock()
        threshold = now - timedelta(seconds=self.stale_job_threshold_seconds)
        try:
            reclaimed = await self.store.reclaim_stale(
                threshold,
                now,
                self.retry_policy.max_attempts,
                f"stale_reclaim: no outcome recorded within {self.stale_job_threshold_seconds}s",
            )
        except StoreError as e:
            self._store_failed(e)
            return 0

        if reclaimed.requeued:
            logger.warning(
                "Reclaimed %d stale jobs: %s", len(reclaimed.requeued), reclaimed.requeued
            )
        if reclaimed.dead_lettered:
            logger.warning(
                "Dead-lettered %d stale jobs with no attempts left: %s",
                len(reclaimed.dead_lettered),
                reclaimed.dead_lettered,
            )
        return len(reclaimed)

    async def queue_summary(self, tenant_id: str | None = None) -> QueueSummary:
        """Per-status counts and the number of jobs due right now."""
        if not (await self.is_ready()).ready:
            return QueueSummary(ready=False)

        try:
            counts = await self.store.count_by_status(tenant_id)
            due_count, oldest = await self.store.pending_due(self._clock(), tenant_id)
        except StoreError as e:
            self._store_failed(e)
            return QueueSummary(ready=False)

        return QueueSummary(
            ready=True,
            status_counts={status.value: count for status, count in counts.items()},
            pending_ready_count=due_count,
            oldest_pending_at=oldest,
        )

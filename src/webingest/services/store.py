"""Job store interface and implementations for the ingestion queue.

The queue needs only a handful of primitives from its backing store:

- try_insert: insert a job unless (tenant_id, event_key) already exists
- claim_batch: atomically move due pending jobs to processing
- transition: conditional single-row update guarded by the current status

Every state change is a conditional write, so any store that offers
compare-and-set semantics can back the queue.

Implementations:
- SqlJobStore: PostgreSQL via SQLAlchemy async. Claims use
  UPDATE ... WHERE id IN (SELECT ... FOR UPDATE SKIP LOCKED) RETURNING.
- MemoryJobStore: in-process store guarded by an asyncio.Lock, for tests,
  local development and single-process embedding.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import defer

from webingest.db.models.base import JobStatus
from webingest.db.models.jobs import IngestionJob

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Collection, Mapping

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

# Columns a transition may change; updated_at is always set by the store
TRANSITION_FIELDS = frozenset(
    {
        "status",
        "last_error",
        "next_attempt_at",
        "processed_at",
        "dead_lettered_at",
        "claimed_by",
    }
)


class StoreError(Exception):
    """Base exception for job store operations."""


class StoreUnavailableError(StoreError):
    """Raised when the backing store cannot be reached."""


@dataclass(frozen=True)
class IngestionJobRecord:
    """Detached snapshot of an ingestion job row."""

    id: uuid.UUID
    tenant_id: str
    event_type: str
    event_version: int
    event_key: str
    occurred_at: datetime
    payload: dict[str, Any] | None
    status: JobStatus
    attempt_count: int
    last_error: str | None
    next_attempt_at: datetime
    processed_at: datetime | None
    dead_lettered_at: datetime | None
    claimed_by: str | None
    created_at: datetime
    updated_at: datetime

    def to_dict(self, include_payload: bool = True) -> dict[str, Any]:
        """JSON-friendly camelCase representation used by the operator CLI."""
        data: dict[str, Any] = {
            "id": str(self.id),
            "tenantId": self.tenant_id,
            "eventType": self.event_type,
            "eventKey": self.event_key,
            "occurredAt": _iso(self.occurred_at),
            "status": self.status.value,
            "attemptCount": self.attempt_count,
            "lastError": self.last_error,
            "nextAttemptAt": _iso(self.next_attempt_at),
            "processedAt": _iso(self.processed_at),
            "deadLetteredAt": _iso(self.dead_lettered_at),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }
        if include_payload:
            data["payload"] = self.payload
        return data


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class NewJob:
    """Values for a job about to be enqueued."""

    tenant_id: str
    event_type: str
    event_key: str
    occurred_at: datetime
    payload: dict[str, Any] | None
    event_version: int = 1


@dataclass(frozen=True)
class InsertResult:
    """Outcome of try_insert.

    Attributes:
        job_id: Id of the new row, or of the existing row on conflict.
        created: False when (tenant_id, event_key) already existed.
    """

    job_id: uuid.UUID
    created: bool


@dataclass(frozen=True)
class ReclaimResult:
    """Outcome of reclaim_stale.

    Attributes:
        requeued: Jobs returned to pending.
        dead_lettered: Jobs whose abandoned attempt was their last one.
    """

    requeued: list[uuid.UUID] = field(default_factory=list)
    dead_lettered: list[uuid.UUID] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.requeued) + len(self.dead_lettered)


class JobStore(abc.ABC):
    """Storage contract for the ingestion queue."""

    @abc.abstractmethod
    async def ping(self) -> None:
        """Raise StoreUnavailableError if the store cannot serve requests."""

    @abc.abstractmethod
    async def try_insert(self, job: NewJob, now: datetime) -> InsertResult:
        """Insert a pending job due at now, or return the existing duplicate."""

    @abc.abstractmethod
    async def claim_batch(
        self,
        limit: int,
        now: datetime,
        worker_id: str | None = None,
    ) -> list[IngestionJobRecord]:
        """Atomically claim up to limit due pending jobs.

        Claimed jobs move to PROCESSING with attempt_count incremented and
        are returned ordered by next_attempt_at ascending.
        """

    @abc.abstractmethod
    async def transition(
        self,
        job_id: uuid.UUID,
        from_statuses: Collection[JobStatus],
        values: Mapping[str, Any],
        now: datetime,
        attempt_count: int | None = None,
    ) -> bool:
        """Apply values to a job only if its status is in from_statuses.

        When attempt_count is given the job must also still be on that
        attempt, so a worker cannot record an outcome for a claim it lost.

        Returns:
            True if the row was updated, False if it was missing or its
            status did not match.
        """

    @abc.abstractmethod
    async def get(self, job_id: uuid.UUID) -> IngestionJobRecord | None:
        """Fetch a job by id."""

    @abc.abstractmethod
    async def list_dead_letters(
        self,
        tenant_id: str | None,
        limit: int,
        offset: int,
        include_payload: bool,
    ) -> list[IngestionJobRecord]:
        """Dead-lettered jobs, newest dead-letter first."""

    @abc.abstractmethod
    async def heartbeat(
        self,
        claims: Mapping[uuid.UUID, int],
        worker_id: str | None,
        now: datetime,
    ) -> set[uuid.UUID]:
        """Refresh updated_at on claims this worker still holds.

        A claim is held while the job is processing, claimed by worker_id and
        still at the attempt_count it was claimed with.

        Args:
            claims: Job id to the attempt_count returned by claim_batch.
            worker_id: Worker that made the claims.
            now: New updated_at for held claims.

        Returns:
            Ids of the claims still held.
        """

    @abc.abstractmethod
    async def reclaim_stale(
        self,
        older_than: datetime,
        now: datetime,
        max_attempts: int,
        exhausted_error: str,
    ) -> ReclaimResult:
        """Release processing jobs not updated since older_than.

        Jobs with attempts left go back to pending, due at now. Jobs whose
        abandoned attempt reached max_attempts are dead-lettered with
        exhausted_error as last_error.
        """

    @abc.abstractmethod
    async def count_by_status(self, tenant_id: str | None = None) -> dict[JobStatus, int]:
        """Number of jobs per status."""

    @abc.abstractmethod
    async def pending_due(
        self,
        now: datetime,
        tenant_id: str | None = None,
    ) -> tuple[int, datetime | None]:
        """Count of claimable pending jobs and the earliest next_attempt_at among them."""


def _check_transition_values(values: Mapping[str, Any]) -> None:
    unknown = set(values) - TRANSITION_FIELDS
    if unknown:
        msg = f"Unsupported transition fields: {sorted(unknown)}"
        raise ValueError(msg)


# =============================================================================
# PostgreSQL
# =============================================================================


def _to_record(job: IngestionJob, include_payload: bool = True) -> IngestionJobRecord:
    return IngestionJobRecord(
        id=job.id,
        tenant_id=job.tenant_id,
        event_type=job.event_type,
        event_version=job.event_version,
        event_key=job.event_key,
        occurred_at=job.occurred_at,
        payload=job.payload_json if include_payload else None,
        status=job.status,
        attempt_count=job.attempt_count,
        last_error=job.last_error,
        next_attempt_at=job.next_attempt_at,
        processed_at=job.processed_at,
        dead_lettered_at=job.dead_lettered_at,
        claimed_by=job.claimed_by,
        created_at=job.created_at,
        updated_at=job.updated_at,
    )


def _is_connectivity_error(error: SQLAlchemyError) -> bool:
    if isinstance(error, OperationalError):
        return True
    return isinstance(error, DBAPIError) and error.connection_invalidated


class SqlJobStore(JobStore):
    """PostgreSQL-backed job store.

    Each public method runs in its own transaction, so every job outcome is
    committed independently of the others in a batch.

    Attributes:
        connect_timeout: Seconds ping() waits for the database.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        connect_timeout: float = 3.0,
    ) -> None:
        self._session_factory = session_factory
        self.connect_timeout = connect_timeout

    @asynccontextmanager
    async def _transaction(self, action: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session, session.begin():
                yield session
        except SQLAlchemyError as e:
            logger.error("Failed to %s: %s", action, str(e))
            if _is_connectivity_error(e):
                raise StoreUnavailableError(f"Failed to {action}: {e}") from e
            raise StoreError(f"Failed to {action}: {e}") from e

    async def ping(self) -> None:
        try:
            async with self._transaction("ping database") as session:
                await asyncio.wait_for(
                    session.execute(text("SELECT 1")),
                    timeout=self.connect_timeout,
                )
        except StoreError as e:
            raise StoreUnavailableError(str(e)) from e
        except (TimeoutError, OSError) as e:
            raise StoreUnavailableError(f"Database ping failed: {e!r}") from e

    async def try_insert(self, job: NewJob, now: datetime) -> InsertResult:
        stmt = (
            pg_insert(IngestionJob)
            .values(
                tenant_id=job.tenant_id,
                event_type=job.event_type,
                event_version=job.event_version,
                event_key=job.event_key,
                occurred_at=job.occurred_at,
                payload_json=job.payload,
                status=JobStatus.PENDING,
                attempt_count=0,
                next_attempt_at=now,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(constraint="uq_ingestion_jobs_tenant_event_key")
            .returning(IngestionJob.id)
        )

        async with self._transaction("enqueue job") as session:
            result = await session.execute(stmt)
            job_id = result.scalar_one_or_none()
            if job_id is not None:
                return InsertResult(job_id=job_id, created=True)

            # Conflict: the row exists (possibly committed by a concurrent enqueue)
            existing = await session.execute(
                select(IngestionJob.id).where(
                    IngestionJob.tenant_id == job.tenant_id,
                    IngestionJob.event_key == job.event_key,
                )
            )
            return InsertResult(job_id=existing.scalar_one(), created=False)

    async def claim_batch(
        self,
        limit: int,
        now: datetime,
        worker_id: str | None = None,
    ) -> list[IngestionJobRecord]:
        # Lock candidate rows, skipping rows another worker is claiming,
        # and mark them in the same statement
        due = (
            select(IngestionJob.id)
            .where(
                IngestionJob.status == JobStatus.PENDING,
                IngestionJob.next_attempt_at <= now,
            )
            .order_by(IngestionJob.next_attempt_at, IngestionJob.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(IngestionJob)
            .where(
                IngestionJob.id.in_(due),
                IngestionJob.status == JobStatus.PENDING,
            )
            .values(
                status=JobStatus.PROCESSING,
                attempt_count=IngestionJob.attempt_count + 1,
                claimed_by=worker_id,
                updated_at=now,
            )
            .returning(IngestionJob)
            .execution_options(synchronize_session=False)
        )

        async with self._transaction("claim jobs") as session:
            result = await session.execute(stmt)
            jobs = [_to_record(job) for job in result.scalars().all()]

        jobs.sort(key=lambda job: (job.next_attempt_at, job.created_at))
        return jobs

    async def transition(
        self,
        job_id: uuid.UUID,
        from_statuses: Collection[JobStatus],
        values: Mapping[str, Any],
        now: datetime,
        attempt_count: int | None = None,
    ) -> bool:
        _check_transition_values(values)
        stmt = update(IngestionJob).where(
            IngestionJob.id == job_id,
            IngestionJob.status.in_(list(from_statuses)),
        )
        if attempt_count is not None:
            stmt = stmt.where(IngestionJob.attempt_count == attempt_count)
        stmt = (
            stmt.values(**values, updated_at=now)
            .returning(IngestionJob.id)
            .execution_options(synchronize_session=False)
        )

        async with self._transaction("update job") as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none() is not None

    async def get(self, job_id: uuid.UUID) -> IngestionJobRecord | None:
        async with self._transaction("get job") as session:
            result = await session.execute(select(IngestionJob).where(IngestionJob.id == job_id))
            job = result.scalar_one_or_none()
            return _to_record(job) if job is not None else None

    async def list_dead_letters(
        self,
        tenant_id: str | None,
        limit: int,
        offset: int,
        include_payload: bool,
    ) -> list[IngestionJobRecord]:
        stmt = (
            select(IngestionJob)
            .where(IngestionJob.status == JobStatus.DEAD_LETTER)
            .order_by(
                IngestionJob.dead_lettered_at.desc().nulls_last(),
                IngestionJob.created_at.desc(),
                IngestionJob.id,
            )
            .limit(limit)
            .offset(offset)
        )
        if tenant_id:
            stmt = stmt.where(IngestionJob.tenant_id == tenant_id)
        if not include_payload:
            # Payload blobs can be large; never fetch them for triage listings
            stmt = stmt.options(defer(IngestionJob.payload_json, raiseload=True))

        async with self._transaction("list dead-letter jobs") as session:
            result = await session.execute(stmt)
            return [_to_record(job, include_payload) for job in result.scalars().all()]

    async def heartbeat(
        self,
        claims: Mapping[uuid.UUID, int],
        worker_id: str | None,
        now: datetime,
    ) -> set[uuid.UUID]:
        if not claims:
            return set()
        stmt = (
            update(IngestionJob)
            .where(
                IngestionJob.id.in_(list(claims)),
                IngestionJob.status == JobStatus.PROCESSING,
                IngestionJob.claimed_by.is_not_distinct_from(worker_id),
            )
            .values(updated_at=now)
            .returning(IngestionJob.id, IngestionJob.attempt_count)
            .execution_options(synchronize_session=False)
        )

        async with self._transaction("refresh job claims") as session:
            result = await session.execute(stmt)
            rows = result.all()
        return {job_id for job_id, attempt_count in rows if claims[job_id] == attempt_count}

    async def reclaim_stale(
        self,
        older_than: datetime,
        now: datetime,
        max_attempts: int,
        exhausted_error: str,
    ) -> ReclaimResult:
        stale = (
            IngestionJob.status == JobStatus.PROCESSING,
            IngestionJob.updated_at < older_than,
        )
        exhausted = (
            update(IngestionJob)
            .where(*stale, IngestionJob.attempt_count >= max_attempts)
            .values(
                status=JobStatus.DEAD_LETTER,
                dead_lettered_at=now,
                last_error=exhausted_error,
                claimed_by=None,
                updated_at=now,
            )
            .returning(IngestionJob.id)
            .execution_options(synchronize_session=False)
        )
        requeue = (
            update(IngestionJob)
            .where(*stale)
            .values(
                status=JobStatus.PENDING,
                next_attempt_at=now,
                claimed_by=None,
                updated_at=now,
            )
            .returning(IngestionJob.id)
            .execution_options(synchronize_session=False)
        )

        async with self._transaction("reclaim stale jobs") as session:
            dead_lettered = list((await session.execute(exhausted)).scalars().all())
            requeued = list((await session.execute(requeue)).scalars().all())
        return ReclaimResult(requeued=requeued, dead_lettered=dead_lettered)

    async def count_by_status(self, tenant_id: str | None = None) -> dict[JobStatus, int]:
        stmt = select(IngestionJob.status, func.count()).group_by(IngestionJob.status)
        if tenant_id:
            stmt = stmt.where(IngestionJob.tenant_id == tenant_id)

        async with self._transaction("count jobs") as session:
            result = await session.execute(stmt)
            counts = {status: 0 for status in JobStatus}
            for status, count in result.all():
                counts[status] = count
            return counts

    async def pending_due(
        self,
        now: datetime,
        tenant_id: str | None = None,
    ) -> tuple[int, datetime | None]:
        stmt = select(func.count(), func.min(IngestionJob.next_attempt_at)).where(
            IngestionJob.status == JobStatus.PENDING,
            IngestionJob.next_attempt_at <= now,
        )
        if tenant_id:
            stmt = stmt.where(IngestionJob.tenant_id == tenant_id)

        async with self._transaction("count due jobs") as session:
            result = await session.execute(stmt)
            count, oldest = result.one()
            return int(count or 0), oldest


# =============================================================================
# In-process
# =============================================================================


class MemoryJobStore(JobStore):
    """In-process job store with the same conditional-write semantics.

    All operations take a single asyncio.Lock, which makes claim_batch
    atomic across concurrent callers in the same event loop.
    """

    def __init__(self) -> None:
        self._jobs: dict[uuid.UUID, IngestionJobRecord] = {}
        self._keys: dict[tuple[str, str], uuid.UUID] = {}
        self._lock = asyncio.Lock()
        self.available = True

    def _check_available(self) -> None:
        if not self.available:
            msg = "In-memory store marked unavailable"
            raise StoreUnavailableError(msg)

    @property
    def jobs(self) -> list[IngestionJobRecord]:
        """Snapshot of all rows, in insertion order."""
        return list(self._jobs.values())

    async def ping(self) -> None:
        self._check_available()

    async def try_insert(self, job: NewJob, now: datetime) -> InsertResult:
        async with self._lock:
            self._check_available()
            existing = self._keys.get((job.tenant_id, job.event_key))
            if existing is not None:
                return InsertResult(job_id=existing, created=False)

            record = IngestionJobRecord(
                id=uuid.uuid4(),
                tenant_id=job.tenant_id,
                event_type=job.event_type,
                event_version=job.event_version,
                event_key=job.event_key,
                occurred_at=job.occurred_at,
                payload=job.payload,
                status=JobStatus.PENDING,
                attempt_count=0,
                last_error=None,
                next_attempt_at=now,
                processed_at=None,
                dead_lettered_at=None,
                claimed_by=None,
                created_at=now,
                updated_at=now,
            )
            self._jobs[record.id] = record
            self._keys[(job.tenant_id, job.event_key)] = record.id
            return InsertResult(job_id=record.id, created=True)

    async def claim_batch(
        self,
        limit: int,
        now: datetime,
        worker_id: str | None = None,
    ) -> list[IngestionJobRecord]:
        async with self._lock:
            self._check_available()
            due = sorted(
                (
                    job
                    for job in self._jobs.values()
                    if job.status == JobStatus.PENDING and job.next_attempt_at <= now
                ),
                key=lambda job: (job.next_attempt_at, job.created_at),
            )[:limit]

            claimed = []
            for job in due:
                updated = replace(
                    job,
                    status=JobStatus.PROCESSING,
                    attempt_count=job.attempt_count + 1,
                    claimed_by=worker_id,
                    updated_at=now,
                )
                self._jobs[job.id] = updated
                claimed.append(updated)
            return claimed

    async def transition(
        self,
        job_id: uuid.UUID,
        from_statuses: Collection[JobStatus],
        values: Mapping[str, Any],
        now: datetime,
        attempt_count: int | None = None,
    ) -> bool:
        _check_transition_values(values)
        async with self._lock:
            self._check_available()
            job = self._jobs.get(job_id)
            if job is None or job.status not in from_statuses:
                return False
            if attempt_count is not None and job.attempt_count != attempt_count:
                return False
            self._jobs[job_id] = replace(job, **values, updated_at=now)
            return True

    async def get(self, job_id: uuid.UUID) -> IngestionJobRecord | None:
        async with self._lock:
            self._check_available()
            return self._jobs.get(job_id)

    async def list_dead_letters(
        self,
        tenant_id: str | None,
        limit: int,
        offset: int,
        include_payload: bool,
    ) -> list[IngestionJobRecord]:
        async with self._lock:
            self._check_available()
            matches = [
                job
                for job in self._jobs.values()
                if job.status == JobStatus.DEAD_LETTER
                and (not tenant_id or job.tenant_id == tenant_id)
            ]
        matches.sort(
            key=lambda job: (job.dead_lettered_at or job.updated_at, job.created_at),
            reverse=True,
        )
        page = matches[offset : offset + limit]
        if include_payload:
            return page
        return [replace(job, payload=None) for job in page]

    async def heartbeat(
        self,
        claims: Mapping[uuid.UUID, int],
        worker_id: str | None,
        now: datetime,
    ) -> set[uuid.UUID]:
        async with self._lock:
            self._check_available()
            held = set()
            for job_id, attempt_count in claims.items():
                job = self._jobs.get(job_id)
                if (
                    job is not None
                    and job.status == JobStatus.PROCESSING
                    and job.claimed_by == worker_id
                ):
                    self._jobs[job_id] = replace(job, updated_at=now)
                    if job.attempt_count == attempt_count:
                        held.add(job_id)
            return held

    async def reclaim_stale(
        self,
        older_than: datetime,
        now: datetime,
        max_attempts: int,
        exhausted_error: str,
    ) -> ReclaimResult:
        async with self._lock:
            self._check_available()
            result = ReclaimResult()
            for job in list(self._jobs.values()):
                if job.status != JobStatus.PROCESSING or job.updated_at >= older_than:
                    continue
                if job.attempt_count >= max_attempts:
                    self._jobs[job.id] = replace(
                        job,
                        status=JobStatus.DEAD_LETTER,
                        dead_lettered_at=now,
                        last_error=exhausted_error,
                        claimed_by=None,
                        updated_at=now,
                    )
                    result.dead_lettered.append(job.id)
                else:
                    self._jobs[job.id] = replace(
                        job,
                        status=JobStatus.PENDING,
                        next_attempt_at=now,
                        claimed_by=None,
                        updated_at=now,
                    )
                    result.requeued.append(job.id)
            return result

    async def count_by_status(self, tenant_id: str | None = None) -> dict[JobStatus, int]:
        async with self._lock:
            self._check_available()
            counts = {status: 0 for status in JobStatus}
            for job in self._jobs.values():
                if not tenant_id or job.tenant_id == tenant_id:
                    counts[job.status] += 1
            return counts

    async def pending_due(
        self,
        now: datetime,
        tenant_id: str | None = None,
    ) -> tuple[int, datetime | None]:
        async with self._lock:
            self._check_available()
            due = [
                job.next_attempt_at
                for job in self._jobs.values()
                if job.status == JobStatus.PENDING
                and job.next_attempt_at <= now
                and (not tenant_id or job.tenant_id == tenant_id)
            ]
            return len(due), min(due) if due else None

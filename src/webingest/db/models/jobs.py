"""Ingestion job model for the PostgreSQL-backed event queue.

One row per logical website event:
- (tenant_id, event_key) is unique, so duplicate submissions collapse
- Claiming uses a conditional UPDATE over FOR UPDATE SKIP LOCKED
- Rows are never deleted; processed and dead-lettered jobs stay for audit
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import CheckConstraint, DateTime, Enum, Index, String, Text, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from webingest.db.models.base import (
    Base,
    JobStatus,
    OptionalTimestampTZ,
    TenantId,
    TimestampTZ,
    UUIDPrimaryKey,
)


class IngestionJob(Base):
    """Durable record tracking one website event through ingestion."""

    __tablename__ = "ingestion_jobs"

    id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    tenant_id: Mapped[TenantId]

    # e.g. 'website.lead.submitted'; unknown types are stored as-is
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_version: Mapped[int] = mapped_column(default=1, nullable=False)

    # SHA-256 hex digest, see services.events.derive_event_key
    event_key: Mapped[str] = mapped_column(String(128), nullable=False)

    # Business time reported by the event, not arrival time
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    payload_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="ingestion_job_status",
            create_constraint=True,
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        nullable=False,
        default=JobStatus.PENDING,
    )

    attempt_count: Mapped[int] = mapped_column(default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    next_attempt_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=text("now()"), nullable=False
    )
    processed_at: Mapped[OptionalTimestampTZ]
    dead_lettered_at: Mapped[OptionalTimestampTZ]

    # Worker that made the most recent claim (diagnostics only)
    claimed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "event_key", name="uq_ingestion_jobs_tenant_event_key"),
        CheckConstraint("attempt_count >= 0", name="attempt_count"),
        # Claim query: due pending jobs, oldest first
        Index("ix_ingestion_jobs_status_next_attempt", "status", "next_attempt_at"),
        # Dead-letter feed per tenant, newest first
        Index(
            "ix_ingestion_jobs_tenant_status_dead_lettered",
            "tenant_id",
            "status",
            "dead_lettered_at",
        ),
        # Stale reclaim scans processing jobs by age
        Index("ix_ingestion_jobs_status_updated_at", "status", "updated_at"),
    )

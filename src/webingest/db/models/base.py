"""Base model definitions, mixins, and common types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Common annotated column types for timestamps and UUIDs
- Enum types shared by the queue and CRM models
"""

import enum
import uuid
from datetime import datetime
from typing import Annotated

from sqlalchemy import DateTime, MetaData, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)

type_registry = registry()

# UUID primary key with server-side default generation
UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    ),
]

# Timestamp with timezone, defaults to now
TimestampTZ = Annotated[
    datetime,
    mapped_column(DateTime(timezone=True), server_default=text("now()")),
]

OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(DateTime(timezone=True), nullable=True),
]

TenantId = Annotated[str, mapped_column(String(100), nullable=False)]
ShortString = Annotated[str, mapped_column(String(100))]
MediumString = Annotated[str, mapped_column(String(255))]


class Base(DeclarativeBase):
    """Declarative base for all models."""

    metadata = metadata
    registry = type_registry


class JobStatus(enum.Enum):
    """Status of an ingestion job.

    Values:
        PENDING: Waiting to be claimed once next_attempt_at is due
        PROCESSING: Claimed by a worker, outcome not yet recorded
        PROCESSED: Handler succeeded (terminal)
        FAILED: Reserved; no transition produces it, treated as non-terminal
        DEAD_LETTER: Retry budget exhausted, waiting for an operator
    """

    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"

    @property
    def is_terminal(self) -> bool:
        """Terminal states are never claimed or rescheduled."""
        return self in (JobStatus.PROCESSED, JobStatus.DEAD_LETTER)


class LeadType(enum.Enum):
    """Kind of CRM lead created from a website event."""

    WEBSITE_LEAD = "website_lead"
    VALUATION_REQUEST = "valuation_request"


class LeadStatus(enum.Enum):
    """Pipeline status of a CRM lead. Ingestion only creates NEW leads."""

    NEW = "new"
    QUALIFIED = "qualified"
    NURTURING = "nurturing"
    WON = "won"
    LOST = "lost"

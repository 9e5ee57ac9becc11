"""CRM records written by the ingestion event handlers.

Contacts are deduplicated per tenant by normalized email and phone. Leads and
activities carry the event key of the ingestion job that created them, which
lets a handler that is invoked twice for the same job detect its earlier work.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import DateTime, Enum, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from webingest.db.models.base import (
    Base,
    LeadStatus,
    LeadType,
    MediumString,
    TenantId,
    TimestampTZ,
    UUIDPrimaryKey,
)


class Contact(Base):
    """A person known to a tenant's CRM."""

    __tablename__ = "crm_contacts"

    id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    tenant_id: Mapped[TenantId]

    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    email_normalized: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    phone_normalized: Mapped[str | None] = mapped_column(String(50), nullable=True)
    source: Mapped[str] = mapped_column(String(100), nullable=False, default="website")

    __table_args__ = (
        UniqueConstraint("tenant_id", "email_normalized", name="uq_crm_contacts_tenant_email"),
        UniqueConstraint("tenant_id", "phone_normalized", name="uq_crm_contacts_tenant_phone"),
    )


class Lead(Base):
    """A sales opportunity created from a lead form or valuation request."""

    __tablename__ = "crm_leads"

    id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    tenant_id: Mapped[TenantId]

    contact_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm_contacts.id", ondelete="SET NULL"),
        nullable=True,
    )

    status: Mapped[LeadStatus] = mapped_column(
        Enum(
            LeadStatus,
            name="crm_lead_status",
            create_constraint=True,
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        nullable=False,
        default=LeadStatus.NEW,
    )
    lead_type: Mapped[LeadType] = mapped_column(
        Enum(
            LeadType,
            name="crm_lead_type",
            create_constraint=True,
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        nullable=False,
    )
    source: Mapped[str] = mapped_column(String(100), nullable=False)
    timeframe: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    listing_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    listing_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    listing_address: Mapped[str | None] = mapped_column(String(500), nullable=True)

    property_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    beds: Mapped[int | None] = mapped_column(nullable=True)
    baths: Mapped[float | None] = mapped_column(nullable=True)
    sqft: Mapped[int | None] = mapped_column(nullable=True)

    source_event_key: Mapped[str] = mapped_column(String(128), nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "source_event_key", name="uq_crm_leads_tenant_event_key"),
        Index("ix_crm_leads_tenant_created", "tenant_id", "created_at"),
    )


class Activity(Base):
    """Timeline entry recorded against a contact and/or lead."""

    __tablename__ = "crm_activities"

    id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    tenant_id: Mapped[TenantId]

    contact_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm_contacts.id", ondelete="SET NULL"),
        nullable=True,
    )
    lead_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm_leads.id", ondelete="SET NULL"),
        nullable=True,
    )

    # e.g. 'lead_submitted', 'valuation_requested', 'listing_viewed'
    activity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    summary: Mapped[MediumString]
    metadata_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    source_event_key: Mapped[str] = mapped_column(String(128), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "source_event_key", name="uq_crm_activities_tenant_event_key"
        ),
        Index("ix_crm_activities_tenant_occurred", "tenant_id", "occurred_at"),
    )

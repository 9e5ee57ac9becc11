"""Initial schema: ingestion job queue and CRM tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000+00:00

Creates:
- ingestion_jobs (website event queue, unique per tenant + event key)
- crm_contacts, crm_leads, crm_activities (handler output)
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _id_column(name: str = "id") -> sa.Column:
    return sa.Column(
        name,
        postgresql.UUID(as_uuid=True),
        server_default=sa.text("gen_random_uuid()"),
        nullable=False,
    )


def _timestamp_column(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def upgrade() -> None:
    """Apply migration: Initial schema."""
    job_status = postgresql.ENUM(
        "pending",
        "processing",
        "processed",
        "failed",
        "dead_letter",
        name="ingestion_job_status",
        create_type=False,
    )
    job_status.create(op.get_bind(), checkfirst=True)

    lead_status = postgresql.ENUM(
        "new", "qualified", "nurturing", "won", "lost", name="crm_lead_status", create_type=False
    )
    lead_status.create(op.get_bind(), checkfirst=True)

    lead_type = postgresql.ENUM(
        "website_lead", "valuation_request", name="crm_lead_type", create_type=False
    )
    lead_type.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "ingestion_jobs",
        _id_column(),
        _timestamp_column("created_at"),
        _timestamp_column("updated_at"),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("event_version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("event_key", sa.String(128), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("status", job_status, nullable=False, server_default=sa.text("'pending'")),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column(
            "next_attempt_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dead_lettered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_by", sa.String(255), nullable=True),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_ingestion_jobs")),
        sa.UniqueConstraint("tenant_id", "event_key", name="uq_ingestion_jobs_tenant_event_key"),
        sa.CheckConstraint("attempt_count >= 0", name=op.f("ck_ingestion_jobs_attempt_count")),
    )
    op.create_index(
        "ix_ingestion_jobs_status_next_attempt",
        "ingestion_jobs",
        ["status", "next_attempt_at"],
    )
    op.create_index(
        "ix_ingestion_jobs_tenant_status_dead_lettered",
        "ingestion_jobs",
        ["tenant_id", "status", "dead_lettered_at"],
    )
    op.create_index(
        "ix_ingestion_jobs_status_updated_at",
        "ingestion_jobs",
        ["status", "updated_at"],
    )

    op.create_table(
        "crm_contacts",
        _id_column(),
        _timestamp_column("created_at"),
        _timestamp_column("updated_at"),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("email_normalized", sa.String(320), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("phone_normalized", sa.String(50), nullable=True),
        sa.Column("source", sa.String(100), nullable=False, server_default="website"),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_crm_contacts")),
        sa.UniqueConstraint("tenant_id", "email_normalized", name="uq_crm_contacts_tenant_email"),
        sa.UniqueConstraint("tenant_id", "phone_normalized", name="uq_crm_contacts_tenant_phone"),
    )

    op.create_table(
        "crm_leads",
        _id_column(),
        _timestamp_column("created_at"),
        _timestamp_column("updated_at"),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("contact_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("status", lead_status, nullable=False, server_default=sa.text("'new'")),
        sa.Column("lead_type", lead_type, nullable=False),
        sa.Column("source", sa.String(100), nullable=False),
        sa.Column("timeframe", sa.String(100), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("listing_id", sa.String(100), nullable=True),
        sa.Column("listing_url", sa.String(1000), nullable=True),
        sa.Column("listing_address", sa.String(500), nullable=True),
        sa.Column("property_type", sa.String(50), nullable=True),
        sa.Column("beds", sa.Integer(), nullable=True),
        sa.Column("baths", sa.Float(), nullable=True),
        sa.Column("sqft", sa.Integer(), nullable=True),
        sa.Column("source_event_key", sa.String(128), nullable=False),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_crm_leads")),
        sa.UniqueConstraint("tenant_id", "source_event_key", name="uq_crm_leads_tenant_event_key"),
        sa.ForeignKeyConstraint(
            ["contact_id"],
            ["crm_contacts.id"],
            name=op.f("fk_crm_leads_contact_id_crm_contacts"),
            ondelete="SET NULL",
        ),
    )
    op.create_index("ix_crm_leads_tenant_created", "crm_leads", ["tenant_id", "created_at"])

    op.create_table(
        "crm_activities",
        _id_column(),
        _timestamp_column("created_at"),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("contact_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("activity_type", sa.String(100), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("summary", sa.String(255), nullable=False),
        sa.Column("metadata_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("source_event_key", sa.String(128), nullable=False),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_crm_activities")),
        sa.UniqueConstraint(
            "tenant_id", "source_event_key", name="uq_crm_activities_tenant_event_key"
        ),
        sa.ForeignKeyConstraint(
            ["contact_id"],
            ["crm_contacts.id"],
            name=op.f("fk_crm_activities_contact_id_crm_contacts"),
            ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(
            ["lead_id"],
            ["crm_leads.id"],
            name=op.f("fk_crm_activities_lead_id_crm_leads"),
            ondelete="SET NULL",
        ),
    )
    op.create_index(
        "ix_crm_activities_tenant_occurred", "crm_activities", ["tenant_id", "occurred_at"]
    )


def downgrade() -> None:
    """Revert migration: Initial schema."""
    # Drop tables in reverse order (respecting foreign key dependencies)
    op.drop_table("crm_activities")
    op.drop_table("crm_leads")
    op.drop_table("crm_contacts")
    op.drop_table("ingestion_jobs")

    op.execute("DROP TYPE IF EXISTS crm_lead_type")
    op.execute("DROP TYPE IF EXISTS crm_lead_status")
    op.execute("DROP TYPE IF EXISTS ingestion_job_status")

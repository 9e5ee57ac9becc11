"""SQLAlchemy ORM models.

- base: Common metadata, annotated column types and enums
- jobs: Ingestion job queue
- crm: Contacts, leads and activities written by event handlers
"""

from webingest.db.models.base import Base, JobStatus, LeadStatus, LeadType, metadata
from webingest.db.models.crm import Activity, Contact, Lead
from webingest.db.models.jobs import IngestionJob

__all__ = [
    "Activity",
    "Base",
    "Contact",
    "IngestionJob",
    "JobStatus",
    "Lead",
    "LeadStatus",
    "LeadType",
    "metadata",
]

"""Test data factories for the ingestion queue.

This module provides factory functions for creating test data.
Use these to build consistent, valid test objects without duplicating
data structures across tests.
"""

from datetime import UTC, datetime, timedelta
from uuid import uuid4

from webingest.db.models.base import JobStatus
from webingest.services.store import IngestionJobRecord

TENANT_ID = "tenant_acme"


class FakeClock:
    """Settable UTC clock shared by the services under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 19, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


def lead_payload(email: str | None = "Dana@Example.com", phone: str | None = None) -> dict:
    """Create a lead form payload in its camelCase wire shape."""
    return {
        "source": "contact_form",
        "contact": {"name": "Dana Reyes", "email": email, "phone": phone},
        "timeframe": "0-3 months",
        "message": "Interested in a showing",
        "listing": {"id": "lst_1", "url": None, "address": "12 Elm St"},
    }


def valuation_payload(address: str = "12 Elm St, Springfield") -> dict:
    return {
        "address": address,
        "propertyType": "single-family",
        "beds": 3,
        "baths": 2.5,
        "sqft": 1850,
    }


def listing_payload(listing_id: str = "lst_1", session_id: str = "sess_1") -> dict:
    return {
        "source": "listing_detail",
        "listing": {"id": listing_id, "address": "12 Elm St", "price": 450000},
        "actor": {"sessionId": session_id},
    }


def make_event(
    event_type: str = "website.lead.submitted",
    tenant_id: str = TENANT_ID,
    occurred_at: str = "2026-10-19T08:15:00Z",
    payload: dict | None = None,
) -> dict:
    """Create a raw website event.

    Args:
        event_type: Event discriminator.
        tenant_id: Tenant the event belongs to.
        occurred_at: ISO-8601 occurrence time.
        payload: Event payload. Defaults to a valid lead form payload.

    Returns:
        Dict in the camelCase envelope shape accepted by enqueue.
    """
    return {
        "eventType": event_type,
        "version": 1,
        "occurredAt": occurred_at,
        "tenant": {
            "tenantId": tenant_id,
            "tenantSlug": tenant_id.replace("_", "-"),
            "tenantDomain": f"{tenant_id}.example",
        },
        "payload": lead_payload() if payload is None else payload,
    }


def make_job_record(
    event_type: str = "website.lead.submitted",
    payload: dict | None = None,
    status: JobStatus = JobStatus.PROCESSING,
    attempt_count: int = 1,
    tenant_id: str = TENANT_ID,
) -> IngestionJobRecord:
    """Create a detached job record, as handed to handlers."""
    now = datetime(2026, 10, 19, 9, 0, tzinfo=UTC)
    return IngestionJobRecord(
        id=uuid4(),
        tenant_id=tenant_id,
        event_type=event_type,
        event_version=1,
        event_key=uuid4().hex * 2,
        occurred_at=now - timedelta(minutes=5),
        payload=lead_payload() if payload is None else payload,
        status=status,
        attempt_count=attempt_count,
        last_error=None,
        next_attempt_at=now,
        processed_at=None,
        dead_lettered_at=None,
        claimed_by="worker-test",
        created_at=now,
        updated_at=now,
    )


async def drive_to_dead_letter(queue, clock: FakeClock, job_id) -> None:
    """Expedite and process a job until its retry budget is spent."""
    for _ in range(queue.retry_policy.max_attempts + 1):
        await queue.schedule_now(job_id)
        await queue.process_batch(200)
        job = await queue.get_job_by_id(job_id)
        if job.status == JobStatus.DEAD_LETTER:
            return
        clock.advance(1)
    msg = f"job {job_id} did not reach dead_letter"
    raise AssertionError(msg)

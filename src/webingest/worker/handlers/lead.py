"""Lead form handler.

Resolves the submitting person to a CRM contact (matching on normalized
email first, then phone), then records a website lead and a
lead_submitted activity on the contact's timeline.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from webingest.db.models import Activity, Contact, Lead, LeadStatus, LeadType
from webingest.services.events import (
    LeadSubmittedPayload,
    normalize_email,
    normalize_phone,
)
from webingest.worker.handlers.base import find_by_event_key

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from webingest.worker.handlers.base import HandlerContext

logger = logging.getLogger(__name__)


async def lead_submitted_handler(
    context: HandlerContext,
    payload: LeadSubmittedPayload,
) -> dict[str, Any] | None:
    """Handle website.lead.submitted jobs.

    Args:
        context: Job and session for this invocation.
        payload: Validated lead form payload.

    Returns:
        Ids of the contact, lead and activity.
    """
    session = context.session

    existing = await find_by_event_key(session, Lead, context.tenant_id, context.event_key)
    if existing is not None:
        logger.info(
            "Lead already recorded for event: job_id=%s, lead_id=%s", context.job.id, existing.id
        )
        return {"lead_id": str(existing.id), "duplicate": True}

    contact = await resolve_contact(session, context.tenant_id, payload)

    listing = payload.listing
    details = payload.property_details
    lead = Lead(
        tenant_id=context.tenant_id,
        contact_id=contact.id,
        status=LeadStatus.NEW,
        lead_type=LeadType.WEBSITE_LEAD,
        source=payload.source or "website",
        timeframe=payload.timeframe,
        notes=payload.message,
        listing_id=listing.id,
        listing_url=listing.url,
        listing_address=listing.address,
        property_type=details.property_type if details else None,
        beds=details.beds if details else None,
        baths=details.baths if details else None,
        sqft=details.sqft if details else None,
        source_event_key=context.event_key,
    )
    session.add(lead)
    await session.flush()

    activity = Activity(
        tenant_id=context.tenant_id,
        contact_id=contact.id,
        lead_id=lead.id,
        activity_type="lead_submitted",
        occurred_at=context.occurred_at,
        summary=f"Lead submitted from {payload.source or 'website'}",
        metadata_json=payload.model_dump(mode="json", by_alias=True),
        source_event_key=context.event_key,
    )
    session.add(activity)
    await session.flush()

    logger.info(
        "Lead created: tenant_id=%s, lead_id=%s, contact_id=%s",
        context.tenant_id,
        lead.id,
        contact.id,
    )
    return {
        "contact_id": str(contact.id),
        "lead_id": str(lead.id),
        "activity_id": str(activity.id),
    }


async def resolve_contact(
    session: AsyncSession,
    tenant_id: str,
    payload: LeadSubmittedPayload,
) -> Contact:
    """Find the tenant's contact for this lead or create one.

    An existing contact only has its blank fields filled in; values already
    on the contact are never overwritten by form input. A phone already held
    by another contact of the tenant is left off the matched one.
    """
    person = payload.contact
    email_normalized = normalize_email(person.email)
    phone_normalized = normalize_phone(person.phone)

    contact = None
    if email_normalized:
        contact = await _find_contact(session, tenant_id, Contact.email_normalized, email_normalized)
    if contact is None and phone_normalized:
        contact = await _find_contact(session, tenant_id, Contact.phone_normalized, phone_normalized)

    if contact is not None:
        contact.full_name = contact.full_name or person.name
        contact.email = contact.email or person.email
        contact.email_normalized = contact.email_normalized or email_normalized
        if not contact.phone_normalized and phone_normalized:
            # Matched by email, so the phone may belong to someone else
            owner = await _find_contact(
                session, tenant_id, Contact.phone_normalized, phone_normalized
            )
            if owner is None:
                contact.phone = contact.phone or person.phone
                contact.phone_normalized = phone_normalized
            else:
                logger.info(
                    "Phone kept off contact, held by another: tenant_id=%s, contact_id=%s, "
                    "holder_id=%s",
                    tenant_id,
                    contact.id,
                    owner.id,
                )
        contact.source = contact.source or payload.source or "website"
        await session.flush()
        return contact

    contact = Contact(
        tenant_id=tenant_id,
        full_name=person.name,
        email=person.email,
        email_normalized=email_normalized,
        phone=person.phone,
        phone_normalized=phone_normalized,
        source=payload.source or "website",
    )
    session.add(contact)
    await session.flush()
    logger.debug("Contact created: tenant_id=%s, contact_id=%s", tenant_id, contact.id)
    return contact


async def _find_contact(
    session: AsyncSession,
    tenant_id: str,
    column: Any,
    value: str,
) -> Contact | None:
    result = await session.execute(
        select(Contact).where(Contact.tenant_id == tenant_id).where(column == value)
    )
    return result.scalar_one_or_none()

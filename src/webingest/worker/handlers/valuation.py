"""Home valuation request handler."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from webingest.db.models import Activity, Lead, LeadStatus, LeadType
from webingest.services.events import ValuationRequestedPayload
from webingest.worker.handlers.base import find_by_event_key

if TYPE_CHECKING:
    from webingest.worker.handlers.base import HandlerContext

logger = logging.getLogger(__name__)

VALUATION_SOURCE = "website_valuation"


async def valuation_requested_handler(
    context: HandlerContext,
    payload: ValuationRequestedPayload,
) -> dict[str, Any] | None:
    """Handle website.valuation.requested jobs.

    Valuation forms are anonymous, so the lead has no contact. The property
    details are copied onto the lead for the agent's follow-up.
    """
    session = context.session

    existing = await find_by_event_key(session, Lead, context.tenant_id, context.event_key)
    if existing is not None:
        logger.info(
            "Valuation already recorded for event: job_id=%s, lead_id=%s",
            context.job.id,
            existing.id,
        )
        return {"lead_id": str(existing.id), "duplicate": True}

    lead = Lead(
        tenant_id=context.tenant_id,
        contact_id=None,
        status=LeadStatus.NEW,
        lead_type=LeadType.VALUATION_REQUEST,
        source=VALUATION_SOURCE,
        listing_address=payload.address,
        property_type=payload.property_type,
        beds=payload.beds,
        baths=payload.baths,
        sqft=payload.sqft,
        source_event_key=context.event_key,
    )
    session.add(lead)
    await session.flush()

    activity = Activity(
        tenant_id=context.tenant_id,
        contact_id=None,
        lead_id=lead.id,
        activity_type="valuation_requested",
        occurred_at=context.occurred_at,
        summary="Website valuation request received",
        metadata_json=payload.model_dump(mode="json", by_alias=True),
        source_event_key=context.event_key,
    )
    session.add(activity)
    await session.flush()

    logger.info("Valuation lead created: tenant_id=%s, lead_id=%s", context.tenant_id, lead.id)
    return {"lead_id": str(lead.id), "activity_id": str(activity.id)}

"""Browsing activity handlers.

Listing views, favorites and searches do not create leads; each becomes a
single timeline activity. Visitors are anonymous at this point, so the
activity carries the actor ids in its metadata rather than a contact.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from webingest.db.models import Activity
from webingest.services.events import (
    EventType,
    ListingInteractionPayload,
    SearchPerformedPayload,
)
from webingest.worker.handlers.base import find_by_event_key

if TYPE_CHECKING:
    from webingest.worker.handlers.base import HandlerContext

logger = logging.getLogger(__name__)

LISTING_ACTIVITY_TYPES = {
    EventType.LISTING_VIEWED.value: ("listing_viewed", "Listing viewed"),
    EventType.LISTING_FAVORITED.value: ("listing_favorited", "Listing favorited"),
    EventType.LISTING_UNFAVORITED.value: ("listing_unfavorited", "Listing unfavorited"),
}


async def _record_activity(
    context: HandlerContext,
    activity_type: str,
    summary: str,
    metadata: dict[str, Any],
) -> dict[str, Any]:
    session = context.session

    existing = await find_by_event_key(session, Activity, context.tenant_id, context.event_key)
    if existing is not None:
        return {"activity_id": str(existing.id), "duplicate": True}

    activity = Activity(
        tenant_id=context.tenant_id,
        activity_type=activity_type,
        occurred_at=context.occurred_at,
        summary=summary[:255],
        metadata_json=metadata,
        source_event_key=context.event_key,
    )
    session.add(activity)
    await session.flush()

    logger.info(
        "Activity recorded: tenant_id=%s, activity_type=%s, activity_id=%s",
        context.tenant_id,
        activity_type,
        activity.id,
    )
    return {"activity_id": str(activity.id)}


async def listing_interaction_handler(
    context: HandlerContext,
    payload: ListingInteractionPayload,
) -> dict[str, Any] | None:
    """Handle listing viewed/favorited/unfavorited jobs."""
    activity_type, label = LISTING_ACTIVITY_TYPES[context.job.event_type]
    listing = payload.listing
    return await _record_activity(
        context,
        activity_type,
        f"{label}: {listing.address or listing.id}",
        payload.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


async def search_performed_handler(
    context: HandlerContext,
    payload: SearchPerformedPayload,
) -> dict[str, Any] | None:
    """Handle website.search.performed jobs."""
    query = payload.search_context.query
    summary = f"Search performed: {query}" if query else "Search performed"
    return await _record_activity(
        context,
        "search_performed",
        summary,
        payload.model_dump(mode="json", by_alias=True, exclude_none=True),
    )

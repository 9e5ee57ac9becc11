"""CRM handlers for ingested website events.

Each handler turns one validated event into CRM rows:
- lead: contact + website lead + lead_submitted activity
- valuation: valuation lead + valuation_requested activity
- activity: listing and search timeline activities
"""

from webingest.services.events import EventType
from webingest.worker.handlers.activity import (
    listing_interaction_handler,
    search_performed_handler,
)
from webingest.worker.handlers.base import HandlerContext, HandlerRegistry
from webingest.worker.handlers.lead import lead_submitted_handler
from webingest.worker.handlers.valuation import valuation_requested_handler


def register_default_handlers(registry: HandlerRegistry) -> HandlerRegistry:
    """Register the handler for every known event type."""
    registry.register(EventType.LEAD_SUBMITTED, lead_submitted_handler)
    registry.register(EventType.VALUATION_REQUESTED, valuation_requested_handler)
    registry.register(EventType.SEARCH_PERFORMED, search_performed_handler)
    registry.register(EventType.LISTING_VIEWED, listing_interaction_handler)
    registry.register(EventType.LISTING_FAVORITED, listing_interaction_handler)
    registry.register(EventType.LISTING_UNFAVORITED, listing_interaction_handler)
    return registry


__all__ = [
    "HandlerContext",
    "HandlerRegistry",
    "lead_submitted_handler",
    "listing_interaction_handler",
    "register_default_handlers",
    "search_performed_handler",
    "valuation_requested_handler",
]

"""Website event envelope, payload schemas and idempotency keys.

Events arrive as JSON objects shaped like:

    {
        "eventType": "website.lead.submitted",
        "version": 1,
        "occurredAt": "2026-10-19T08:15:00Z",
        "tenant": {"tenantId": "t_123", "tenantSlug": "acme", "tenantDomain": "acme.example"},
        "payload": {...}
    }

Only the envelope is checked at enqueue time. Payloads are stored verbatim
and validated when the job is processed, so an unknown or malformed event is
still persisted, fails each attempt and ends up in the dead-letter queue
where an operator can see it.
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

DEFAULT_KEY_BUCKET_SECONDS = 300

PropertyType = Literal["single-family", "condo", "multi-family"]


class EventType(str, Enum):
    """Recognized website event discriminators."""

    LEAD_SUBMITTED = "website.lead.submitted"
    VALUATION_REQUESTED = "website.valuation.requested"
    SEARCH_PERFORMED = "website.search.performed"
    LISTING_VIEWED = "website.listing.viewed"
    LISTING_FAVORITED = "website.listing.favorited"
    LISTING_UNFAVORITED = "website.listing.unfavorited"


class EventEnvelopeError(ValueError):
    """Raised when an event envelope cannot be parsed at all."""


class EventValidationError(Exception):
    """Raised when a stored event fails its payload schema.

    Attributes:
        reason: Short machine-readable reason recorded as the job's last_error prefix.
        detail: Human-readable description of the failure.
    """

    def __init__(self, reason: str, detail: str) -> None:
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}")


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        frozen=True,
    )


# =============================================================================
# Envelope
# =============================================================================


class TenantContext(_CamelModel):
    """Tenant the event belongs to, as resolved by the emitting surface."""

    tenant_id: str = Field(min_length=1, max_length=100)
    tenant_slug: str | None = None
    tenant_domain: str | None = None


class WebsiteEvent(_CamelModel):
    """Immutable envelope around a website event payload."""

    event_type: str = Field(min_length=1, max_length=100)
    version: int = Field(default=1, ge=1)
    occurred_at: datetime
    tenant: TenantContext
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("occurred_at")
    @classmethod
    def ensure_timezone(cls, v: datetime) -> datetime:
        """Treat naive timestamps as UTC and normalize to UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v.astimezone(UTC)

    @property
    def tenant_id(self) -> str:
        return self.tenant.tenant_id

    def to_wire(self) -> dict[str, Any]:
        """Serialize back to the camelCase JSON shape."""
        return self.model_dump(mode="json", by_alias=True)


def parse_envelope(raw: WebsiteEvent | Mapping[str, Any]) -> WebsiteEvent:
    """Parse a raw mapping into a WebsiteEvent.

    Raises:
        EventEnvelopeError: If tenant, type or timestamp are missing or malformed.
    """
    if isinstance(raw, WebsiteEvent):
        return raw
    try:
        return WebsiteEvent.model_validate(raw)
    except ValidationError as e:
        raise EventEnvelopeError(_summarize_errors(e)) from e


# =============================================================================
# Payload schemas
# =============================================================================


class LeadContact(_CamelModel):
    name: str | None = None
    email: str | None = None
    phone: str | None = None

    @model_validator(mode="after")
    def require_reachable(self) -> LeadContact:
        """A lead without email or phone cannot be followed up."""
        if not normalize_email(self.email) and not normalize_phone(self.phone):
            msg = "contact requires an email or a phone number"
            raise ValueError(msg)
        return self


class LeadListing(_CamelModel):
    id: str | None = None
    url: str | None = None
    address: str | None = None


class PropertyDetails(_CamelModel):
    property_type: PropertyType
    beds: int = Field(ge=0)
    baths: float = Field(ge=0)
    sqft: int | None = Field(default=None, ge=0)


class LeadSubmittedPayload(_CamelModel):
    source: str = Field(min_length=1)
    contact: LeadContact
    timeframe: str | None = None
    message: str | None = None
    listing: LeadListing = Field(default_factory=LeadListing)
    property_details: PropertyDetails | None = None


class ValuationRequestedPayload(_CamelModel):
    address: str = Field(min_length=1)
    property_type: PropertyType
    beds: int = Field(ge=0)
    baths: float = Field(ge=0)
    sqft: int | None = Field(default=None, ge=0)


class SearchContext(_CamelModel):
    query: str | None = None
    filters_json: str | None = None
    sort_field: str | None = None
    sort_order: str | None = None
    page: int | None = None


class ActorContext(_CamelModel):
    clerk_user_id: str | None = None
    session_id: str | None = None


class InteractionListing(_CamelModel):
    id: str = Field(min_length=1)
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    price: float | None = None
    beds: int | None = None
    baths: float | None = None
    sqft: int | None = None
    property_type: str | None = None


class ListingInteractionPayload(_CamelModel):
    source: str = Field(min_length=1)
    listing: InteractionListing
    search_context: SearchContext | None = None
    actor: ActorContext | None = None


class SearchPerformedPayload(_CamelModel):
    source: str = Field(min_length=1)
    search_context: SearchContext
    result_count: int | None = Field(default=None, ge=0)
    actor: ActorContext | None = None


PAYLOAD_SCHEMAS: dict[str, type[_CamelModel]] = {
    EventType.LEAD_SUBMITTED.value: LeadSubmittedPayload,
    EventType.VALUATION_REQUESTED.value: ValuationRequestedPayload,
    EventType.SEARCH_PERFORMED.value: SearchPerformedPayload,
    EventType.LISTING_VIEWED.value: ListingInteractionPayload,
    EventType.LISTING_FAVORITED.value: ListingInteractionPayload,
    EventType.LISTING_UNFAVORITED.value: ListingInteractionPayload,
}


def is_known_event_type(event_type: str) -> bool:
    return event_type in PAYLOAD_SCHEMAS


def validate_payload(event_type: str, payload: Mapping[str, Any] | None) -> BaseModel:
    """Validate a stored payload against the schema of its event type.

    Args:
        event_type: Event discriminator stored on the job.
        payload: Payload as stored on the job.

    Returns:
        The parsed payload model.

    Raises:
        EventValidationError: If the type is unknown or the payload does not match.
    """
    schema = PAYLOAD_SCHEMAS.get(event_type)
    if schema is None:
        raise EventValidationError("unknown_event_type", event_type)
    if not isinstance(payload, Mapping):
        raise EventValidationError("invalid_payload", "payload must be an object")
    try:
        return schema.model_validate(payload)
    except ValidationError as e:
        raise EventValidationError("invalid_payload", _summarize_errors(e)) from e


def _summarize_errors(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"]) or "<root>"
        parts.append(f"{loc}: {item['msg']}")
    return "; ".join(parts)


# =============================================================================
# Normalization
# =============================================================================

_NON_DIGITS = re.compile(r"\D")
_WHITESPACE = re.compile(r"\s+")


def normalize_email(value: str | None) -> str | None:
    if not value:
        return None
    normalized = value.strip().lower()
    return normalized or None


def normalize_phone(value: str | None) -> str | None:
    if not value:
        return None
    normalized = _NON_DIGITS.sub("", value)
    return normalized or None


def normalize_address(value: str | None) -> str | None:
    if not value:
        return None
    normalized = _WHITESPACE.sub(" ", value).strip().lower()
    return normalized or None


# =============================================================================
# Idempotency keys
# =============================================================================


def time_bucket(occurred_at: datetime, bucket_seconds: int) -> int:
    """Index of the fixed-width time bucket containing occurred_at."""
    return int(occurred_at.timestamp()) // bucket_seconds


def _canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def _event_identity(event: WebsiteEvent, bucket_seconds: int) -> dict[str, Any]:
    """Business fields that identify one occurrence of the event.

    Payloads that do not validate fall back to the whole payload plus the exact
    occurrence time, so malformed events still dedupe on exact resubmission.
    """
    try:
        payload = validate_payload(event.event_type, event.payload)
    except EventValidationError:
        return {"payload": event.payload, "occurredAt": event.occurred_at.isoformat()}

    bucket = time_bucket(event.occurred_at, bucket_seconds)

    if isinstance(payload, LeadSubmittedPayload):
        return {
            "contact": normalize_email(payload.contact.email)
            or normalize_phone(payload.contact.phone),
            "listingId": payload.listing.id,
            "source": payload.source.lower(),
            "bucket": bucket,
        }
    if isinstance(payload, ValuationRequestedPayload):
        return {
            "address": normalize_address(payload.address),
            "propertyType": payload.property_type,
            "beds": payload.beds,
            "baths": payload.baths,
            "sqft": payload.sqft,
            "bucket": bucket,
        }
    if isinstance(payload, ListingInteractionPayload):
        actor = payload.actor
        return {
            "listingId": payload.listing.id,
            "actor": (actor.clerk_user_id or actor.session_id) if actor else None,
            "occurredAt": event.occurred_at.isoformat(),
        }
    if isinstance(payload, SearchPerformedPayload):
        return {
            "actor": payload.actor.model_dump() if payload.actor else None,
            "searchContext": payload.search_context.model_dump(),
            "occurredAt": event.occurred_at.isoformat(),
        }
    return {"payload": event.payload, "occurredAt": event.occurred_at.isoformat()}


def derive_event_key(
    event: WebsiteEvent,
    bucket_seconds: int = DEFAULT_KEY_BUCKET_SECONDS,
) -> str:
    """Derive the idempotency key for an event.

    The key is a SHA-256 hex digest over tenant id, event type and the
    event's natural business identity. Transport-level ids play no part.

    Args:
        event: Parsed event envelope.
        bucket_seconds: Width of the occurrence time bucket for form events.

    Returns:
        64-character lowercase hex string.
    """
    fingerprint = _canonical_json(
        {
            "tenantId": event.tenant_id,
            "eventType": event.event_type,
            "identity": _event_identity(event, bucket_seconds),
        }
    )
    return hashlib.sha256(fingerprint.encode("utf-8")).hexdigest()

"""Tests for the CRM event handlers.

Tests cover:
- Lead handler: contact resolution by email then phone, lead + activity rows
- Lead handler: no phone copied onto a contact when another contact holds it
- Valuation handler: anonymous valuation lead
- Listing and search activity handlers
- Early return when rows for the event key already exist
- HandlerRegistry session handling and binding to the queue
"""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from tests.factories import lead_payload, listing_payload, make_job_record, valuation_payload
from webingest.db.models import Activity, Contact, Lead, LeadType
from webingest.services.events import validate_payload
from webingest.worker.handlers import (
    HandlerContext,
    HandlerRegistry,
    lead_submitted_handler,
    listing_interaction_handler,
    register_default_handlers,
    search_performed_handler,
    valuation_requested_handler,
)


def result_of(value):
    """Mock execute() result answering both scalar access styles."""
    result = MagicMock()
    result.scalars.return_value.first.return_value = value
    result.scalar_one_or_none.return_value = value
    return result


def make_session(*execute_values):
    """Mock AsyncSession whose flush assigns ids to added rows."""
    session = AsyncMock()
    added = []
    session.add = MagicMock(side_effect=added.append)

    async def flush():
        for obj in added:
            if getattr(obj, "id", None) is None:
                obj.id = uuid.uuid4()

    session.flush = AsyncMock(side_effect=flush)
    session.execute = AsyncMock(side_effect=[result_of(v) for v in execute_values])
    return session, added


def context_for(event_type, payload, session):
    job = make_job_record(event_type=event_type, payload=payload)
    return HandlerContext(job=job, session=session), validate_payload(event_type, payload)


class TestLeadSubmittedHandler:
    """Tests for lead_submitted_handler."""

    @pytest.mark.asyncio
    async def test_creates_contact_lead_and_activity(self):
        """Test a new person gets a contact, a website lead and an activity."""
        # event key lookup, email lookup
        session, added = make_session(None, None)
        context, payload = context_for("website.lead.submitted", lead_payload(), session)

        result = await lead_submitted_handler(context, payload)

        contact, lead, activity = added
        assert isinstance(contact, Contact)
        assert contact.email_normalized == "dana@example.com"
        assert contact.tenant_id == "tenant_acme"

        assert isinstance(lead, Lead)
        assert lead.lead_type == LeadType.WEBSITE_LEAD
        assert lead.contact_id == contact.id
        assert lead.source == "contact_form"
        assert lead.listing_id == "lst_1"
        assert lead.notes == "Interested in a showing"
        assert lead.source_event_key == context.event_key

        assert isinstance(activity, Activity)
        assert activity.activity_type == "lead_submitted"
        assert activity.lead_id == lead.id
        assert activity.summary == "Lead submitted from contact_form"
        assert activity.occurred_at == context.occurred_at

        assert result == {
            "contact_id": str(contact.id),
            "lead_id": str(lead.id),
            "activity_id": str(activity.id),
        }

    @pytest.mark.asyncio
    async def test_reuses_contact_and_fills_blanks(self):
        """Test an existing contact is reused and only blank fields are filled."""
        existing = Contact(
            tenant_id="tenant_acme",
            full_name=None,
            email="dana@example.com",
            email_normalized="dana@example.com",
            phone=None,
            phone_normalized=None,
            source="open_house",
        )
        existing.id = uuid.uuid4()
        # event key lookup, email lookup (hit), phone holder lookup (miss)
        session, added = make_session(None, existing, None)
        payload_data = lead_payload(phone="555-123-4567")
        context, payload = context_for("website.lead.submitted", payload_data, session)

        await lead_submitted_handler(context, payload)

        assert existing.full_name == "Dana Reyes"
        assert existing.phone_normalized == "5551234567"
        assert existing.source == "open_house"
        assert existing.email == "dana@example.com"
        lead = next(obj for obj in added if isinstance(obj, Lead))
        assert lead.contact_id == existing.id
        assert not any(isinstance(obj, Contact) for obj in added)

    @pytest.mark.asyncio
    async def test_phone_held_by_other_contact_not_copied(self):
        """Test an email match does not take a phone another contact already has."""
        by_email = Contact(
            tenant_id="tenant_acme",
            email="dana@example.com",
            email_normalized="dana@example.com",
            source="web",
        )
        by_email.id = uuid.uuid4()
        by_phone = Contact(tenant_id="tenant_acme", phone_normalized="5551234567", source="web")
        by_phone.id = uuid.uuid4()
        session, added = make_session(None, by_email, by_phone)
        context, payload = context_for(
            "website.lead.submitted", lead_payload(phone="555-123-4567"), session
        )

        await lead_submitted_handler(context, payload)

        assert by_email.phone is None
        assert by_email.phone_normalized is None
        assert by_phone.email_normalized is None
        lead = next(obj for obj in added if isinstance(obj, Lead))
        assert lead.contact_id == by_email.id
        assert session.execute.await_count == 3

    @pytest.mark.asyncio
    async def test_falls_back_to_phone_match(self):
        """Test a phone match is used when no contact has the email."""
        existing = Contact(tenant_id="tenant_acme", phone_normalized="5551234567", source="web")
        existing.id = uuid.uuid4()
        # event key lookup, email lookup (miss), phone lookup (hit)
        session, added = make_session(None, None, existing)
        context, payload = context_for(
            "website.lead.submitted", lead_payload(phone="(555) 123-4567"), session
        )

        await lead_submitted_handler(context, payload)

        assert existing.email_normalized == "dana@example.com"
        lead = next(obj for obj in added if isinstance(obj, Lead))
        assert lead.contact_id == existing.id

    @pytest.mark.asyncio
    async def test_returns_early_when_already_recorded(self):
        """Test a re-invocation for the same event writes nothing."""
        earlier = Lead(tenant_id="tenant_acme", source="contact_form")
        earlier.id = uuid.uuid4()
        session, added = make_session(earlier)
        context, payload = context_for("website.lead.submitted", lead_payload(), session)

        result = await lead_submitted_handler(context, payload)

        assert result == {"lead_id": str(earlier.id), "duplicate": True}
        assert added == []
        session.flush.assert_not_called()


class TestValuationRequestedHandler:
    """Tests for valuation_requested_handler."""

    @pytest.mark.asyncio
    async def test_creates_valuation_lead(self):
        """Test an anonymous valuation lead and activity are created."""
        session, added = make_session(None)
        context, payload = context_for(
            "website.valuation.requested", valuation_payload(), session
        )

        result = await valuation_requested_handler(context, payload)

        lead, activity = added
        assert lead.lead_type == LeadType.VALUATION_REQUEST
        assert lead.source == "website_valuation"
        assert lead.contact_id is None
        assert lead.listing_address == "12 Elm St, Springfield"
        assert lead.beds == 3
        assert lead.baths == 2.5
        assert activity.activity_type == "valuation_requested"
        assert activity.summary == "Website valuation request received"
        assert result == {"lead_id": str(lead.id), "activity_id": str(activity.id)}


class TestActivityHandlers:
    """Tests for listing and search activity handlers."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("event_type", "activity_type"),
        [
            ("website.listing.viewed", "listing_viewed"),
            ("website.listing.favorited", "listing_favorited"),
            ("website.listing.unfavorited", "listing_unfavorited"),
        ],
    )
    async def test_listing_interactions(self, event_type, activity_type):
        """Test each listing interaction maps to its activity type."""
        session, added = make_session(None)
        context, payload = context_for(event_type, listing_payload(), session)

        await listing_interaction_handler(context, payload)

        (activity,) = added
        assert activity.activity_type == activity_type
        assert activity.summary.endswith("12 Elm St")
        assert activity.metadata_json["listing"]["id"] == "lst_1"
        assert activity.contact_id is None

    @pytest.mark.asyncio
    async def test_search_performed(self):
        """Test searches become search_performed activities."""
        session, added = make_session(None)
        search = {
            "source": "search_page",
            "searchContext": {"query": "3 bed condo", "page": 1},
            "resultCount": 12,
        }
        context, payload = context_for("website.search.performed", search, session)

        await search_performed_handler(context, payload)

        (activity,) = added
        assert activity.activity_type == "search_performed"
        assert activity.summary == "Search performed: 3 bed condo"
        assert activity.metadata_json["resultCount"] == 12

    @pytest.mark.asyncio
    async def test_activity_returns_early_when_recorded(self):
        """Test an existing activity for the event short-circuits."""
        earlier = Activity(tenant_id="tenant_acme", activity_type="listing_viewed")
        earlier.id = uuid.uuid4()
        session, added = make_session(earlier)
        context, payload = context_for("website.listing.viewed", listing_payload(), session)

        result = await listing_interaction_handler(context, payload)

        assert result == {"activity_id": str(earlier.id), "duplicate": True}
        assert added == []


def make_session_factory(session):
    session_ctx = MagicMock()
    session_ctx.__aenter__.return_value = session
    session_ctx.__aexit__.return_value = False
    return MagicMock(return_value=session_ctx)


class TestHandlerRegistry:
    """Tests for HandlerRegistry."""

    @pytest.mark.asyncio
    async def test_dispatch_commits_on_success(self):
        """Test the handler's session is committed after success."""
        session = AsyncMock()
        registry = HandlerRegistry(make_session_factory(session))
        handler = AsyncMock(return_value={"ok": True})
        job = make_job_record()

        result = await registry.dispatch(handler, job, object())

        assert result == {"ok": True}
        context = handler.call_args[0][0]
        assert context.job is job
        assert context.session is session
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_dispatch_rolls_back_and_reraises(self):
        """Test handler errors roll back and propagate to the queue."""
        session = AsyncMock()
        registry = HandlerRegistry(make_session_factory(session))
        handler = AsyncMock(side_effect=RuntimeError("boom"))

        with pytest.raises(RuntimeError):
            await registry.dispatch(handler, make_job_record(), object())

        session.rollback.assert_awaited_once()
        session.commit.assert_not_called()

    def test_default_handlers_cover_every_event_type(self, queue):
        """Test binding registers a queue handler per known event type."""
        registry = register_default_handlers(HandlerRegistry(MagicMock()))
        registry.bind(queue)

        assert queue.handled_event_types == [
            "website.lead.submitted",
            "website.listing.favorited",
            "website.listing.unfavorited",
            "website.listing.viewed",
            "website.search.performed",
            "website.valuation.requested",
        ]
        assert registry.get("website.lead.submitted") is lead_submitted_handler

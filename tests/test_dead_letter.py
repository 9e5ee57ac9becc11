"""Tests for the dead-letter operator service.

Tests cover:
- Filter clamping and validation
- Tenant-scoped and global listings
- Single and batch requeue
- The operator scenario: two invalid events, targeted then batch requeue
"""

import uuid

import pytest

from tests.factories import drive_to_dead_letter, make_event
from webingest.db.models.base import JobStatus
from webingest.services.dead_letter import DeadLetterFilter
from webingest.services.readiness import STORE_UNAVAILABLE


async def enqueue_invalid(queue, marker: str, tenant_id: str = "tenant_acme"):
    result = await queue.enqueue(
        make_event(
            event_type="website.invalid.event",
            tenant_id=tenant_id,
            payload={"marker": marker},
        )
    )
    return result.job_id


class TestDeadLetterFilter:
    """Tests for DeadLetterFilter."""

    def test_defaults(self):
        """Test the default page."""
        page = DeadLetterFilter()
        assert page.tenant_id is None
        assert page.limit == 50
        assert page.offset == 0
        assert page.include_payload is False

    def test_limit_clamped(self):
        """Test limit is clamped into [1, 500]."""
        assert DeadLetterFilter(limit=0).limit == 1
        assert DeadLetterFilter(limit=10_000).limit == 500

    def test_negative_offset_rejected(self):
        """Test a negative offset is invalid."""
        with pytest.raises(ValueError):
            DeadLetterFilter(offset=-1)

    def test_blank_tenant_means_global(self):
        """Test a blank tenant id selects all tenants."""
        assert DeadLetterFilter(tenant_id="  ").tenant_id is None


class TestListDeadLetters:
    """Tests for DeadLetterService.list."""

    @pytest.mark.asyncio
    async def test_tenant_scoped_and_global(self, queue, dead_letters, clock):
        """Test filtering by tenant and the global feed."""
        a = await enqueue_invalid(queue, "a", tenant_id="tenant_a")
        b = await enqueue_invalid(queue, "b", tenant_id="tenant_b")
        await drive_to_dead_letter(queue, clock, a)
        await drive_to_dead_letter(queue, clock, b)

        scoped = await dead_letters.list(DeadLetterFilter(tenant_id="tenant_a"))
        everything = await dead_letters.list(DeadLetterFilter())

        assert [job.id for job in scoped.jobs] == [a]
        assert {job.id for job in everything.jobs} == {a, b}

    @pytest.mark.asyncio
    async def test_newest_first_and_paging(self, queue, dead_letters, clock):
        """Test ordering by dead_lettered_at descending with offset paging."""
        first = await enqueue_invalid(queue, "first")
        second = await enqueue_invalid(queue, "second")
        await drive_to_dead_letter(queue, clock, first)
        clock.advance(60)
        await drive_to_dead_letter(queue, clock, second)

        page_one = await dead_letters.list(DeadLetterFilter(limit=1))
        page_two = await dead_letters.list(DeadLetterFilter(limit=1, offset=1))

        assert [job.id for job in page_one.jobs] == [second]
        assert [job.id for job in page_two.jobs] == [first]

    @pytest.mark.asyncio
    async def test_payload_only_when_requested(self, queue, dead_letters, clock):
        """Test payloads are omitted unless include_payload is set."""
        job_id = await enqueue_invalid(queue, "p")
        await drive_to_dead_letter(queue, clock, job_id)

        without = await dead_letters.list(DeadLetterFilter())
        with_payload = await dead_letters.list(DeadLetterFilter(include_payload=True))

        assert without.jobs[0].payload is None
        assert "payload" not in without.jobs[0].to_dict(include_payload=False)
        assert with_payload.jobs[0].payload == {"marker": "p"}

    @pytest.mark.asyncio
    async def test_no_matches_is_ok(self, dead_letters):
        """Test an empty listing is a successful result."""
        page = await dead_letters.list(DeadLetterFilter(tenant_id="nobody"))
        assert page.ok
        assert page.jobs == []

    @pytest.mark.asyncio
    async def test_store_unavailable(self, dead_letters, store):
        """Test listing reports store_unavailable instead of raising."""
        store.available = False
        page = await dead_letters.list(DeadLetterFilter())
        assert not page.ok
        assert page.reason == STORE_UNAVAILABLE


class TestRequeue:
    """Tests for requeue_one and requeue_batch."""

    @pytest.mark.asyncio
    async def test_requeue_restores_processability(self, queue, dead_letters, clock):
        """Test a requeued job is pending, due now and claimable."""
        job_id = await enqueue_invalid(queue, "r")
        await drive_to_dead_letter(queue, clock, job_id)

        result = await dead_letters.requeue_one(job_id)

        assert result.requeued is True
        assert result.reason is None
        job = await queue.get_job_by_id(job_id)
        assert job.status == JobStatus.PENDING
        assert job.dead_lettered_at is None
        assert job.next_attempt_at <= clock.now
        # Attempt history and the last error are kept
        assert job.attempt_count == 5
        assert job.last_error == "unknown_event_type: website.invalid.event"
        assert (await queue.process_batch(10)).picked_count == 1

    @pytest.mark.asyncio
    async def test_requeued_job_dead_letters_again_after_one_attempt(
        self, queue, dead_letters, clock
    ):
        """Test the attempt count is not reset by requeue."""
        job_id = await enqueue_invalid(queue, "again")
        await drive_to_dead_letter(queue, clock, job_id)
        await dead_letters.requeue_one(job_id)

        result = await queue.process_batch(10)

        assert result.dead_lettered_count == 1
        assert (await queue.get_job_by_id(job_id)).attempt_count == 6

    @pytest.mark.asyncio
    async def test_requeue_non_dead_letter_job(self, queue, dead_letters):
        """Test requeueing a pending job reports requeued=False."""
        job_id = await enqueue_invalid(queue, "pending")
        result = await dead_letters.requeue_one(job_id)
        assert result.requeued is False
        assert result.reason is None

    @pytest.mark.asyncio
    async def test_requeue_unknown_and_malformed_ids(self, dead_letters):
        """Test unknown or malformed ids are not errors."""
        assert (await dead_letters.requeue_one(uuid.uuid4())).requeued is False
        malformed = await dead_letters.requeue_one("not-a-uuid")
        assert malformed.requeued is False
        assert malformed.job_id == "not-a-uuid"

    @pytest.mark.asyncio
    async def test_requeue_store_unavailable(self, dead_letters, store):
        """Test requeue reports store_unavailable instead of raising."""
        store.available = False
        result = await dead_letters.requeue_one(uuid.uuid4())
        assert result.requeued is False
        assert result.reason == STORE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_batch_requeue_skips_jobs_that_left_dead_letter(
        self, queue, dead_letters, store, clock
    ):
        """Test jobs requeued between listing and requeue are skipped."""
        job_id = await enqueue_invalid(queue, "race")
        await drive_to_dead_letter(queue, clock, job_id)

        original_list = store.list_dead_letters

        async def list_then_race(*args, **kwargs):
            page = await original_list(*args, **kwargs)
            await dead_letters.requeue_one(job_id)
            return page

        store.list_dead_letters = list_then_race

        result = await dead_letters.requeue_batch(DeadLetterFilter())

        assert result.requeued_count == 0
        assert result.skipped_count == 1


class TestOperatorScenario:
    """Two invalid events for one tenant, triaged by an operator."""

    @pytest.mark.asyncio
    async def test_targeted_then_batch_requeue(self, queue, dead_letters, clock):
        """Test requeueing A leaves B untouched, then a batch requeue picks up B."""
        tenant = "tenant_scenario"
        job_a = await enqueue_invalid(queue, "A", tenant_id=tenant)
        job_b = await enqueue_invalid(queue, "B", tenant_id=tenant)
        await drive_to_dead_letter(queue, clock, job_a)
        await drive_to_dead_letter(queue, clock, job_b)

        listing = await dead_letters.list(DeadLetterFilter(tenant_id=tenant, limit=20))
        assert {job.id for job in listing.jobs} == {job_a, job_b}

        single = await dead_letters.requeue_one(job_a)
        assert single.requeued is True
        assert (await queue.get_job_by_id(job_a)).status == JobStatus.PENDING
        assert (await queue.get_job_by_id(job_b)).status == JobStatus.DEAD_LETTER

        batch = await dead_letters.requeue_batch(DeadLetterFilter(tenant_id=tenant, limit=20))
        assert batch.requeued_count >= 1
        assert batch.skipped_count == 0
        assert (await queue.get_job_by_id(job_b)).status == JobStatus.PENDING

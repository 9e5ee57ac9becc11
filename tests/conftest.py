"""Pytest configuration and shared fixtures.

Behavioural tests run against MemoryJobStore, which has the same
conditional-write semantics as the PostgreSQL store. SQL store and handler
tests mock the session layer.
"""

import pytest

from tests.factories import FakeClock
from webingest.core.settings import clear_settings_cache
from webingest.services.dead_letter import DeadLetterService
from webingest.services.ingestion_queue import IngestionQueueService
from webingest.services.readiness import ReadinessGate
from webingest.services.retry import RetryPolicy
from webingest.services.store import MemoryJobStore


@pytest.fixture
def clean_settings_cache():
    """Clear settings cache before and after a test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


# ---------------------------------------------------------------------------
# Queue fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryJobStore:
    return MemoryJobStore()


@pytest.fixture
def readiness(store: MemoryJobStore) -> ReadinessGate:
    # No caching, so toggling store.available takes effect immediately
    return ReadinessGate(store, cache_seconds=0)


@pytest.fixture
def queue(
    store: MemoryJobStore, readiness: ReadinessGate, clock: FakeClock
) -> IngestionQueueService:
    """Queue service with the default retry policy and no handlers registered."""
    return IngestionQueueService(
        store,
        retry_policy=RetryPolicy(max_attempts=5, base_backoff_seconds=30, max_backoff_seconds=900),
        readiness=readiness,
        handler_timeout=1.0,
        worker_id="worker-test",
        clock=clock,
    )


@pytest.fixture
def dead_letters(
    store: MemoryJobStore, readiness: ReadinessGate, clock: FakeClock
) -> DeadLetterService:
    return DeadLetterService(store, readiness=readiness, clock=clock)

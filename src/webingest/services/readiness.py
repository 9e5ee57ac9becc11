"""Runtime readiness gate for the ingestion queue.

Every queue operation asks the gate first and degrades to a structured
"unavailable" result instead of raising, so a public lead form never fails
just because the job store is briefly unreachable.

Check results are cached for a short TTL to keep the hot enqueue path from
pinging the database on every call. The cache belongs to the gate instance.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from webingest.services.store import StoreError

if TYPE_CHECKING:
    from webingest.services.store import JobStore

logger = logging.getLogger(__name__)

STORE_UNAVAILABLE = "store_unavailable"


@dataclass(frozen=True)
class ReadinessResult:
    """Outcome of a readiness check.

    Attributes:
        ready: True when the store answered the ping.
        message: Human-readable status line.
        reason: Machine-readable reason when not ready.
    """

    ready: bool
    message: str
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"ready": self.ready, "reason": self.reason, "message": self.message}


class ReadinessGate:
    """Caches job store reachability for a short TTL."""

    def __init__(
        self,
        store: JobStore,
        cache_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._cache_seconds = cache_seconds
        self._clock = clock
        self._cached: ReadinessResult | None = None
        self._checked_at = 0.0

    async def check(self, force: bool = False) -> ReadinessResult:
        """Ping the store, reusing a recent result unless force is set."""
        now = self._clock()
        if (
            not force
            and self._cached is not None
            and now - self._checked_at < self._cache_seconds
        ):
            return self._cached

        try:
            await self._store.ping()
        except StoreError as e:
            result = ReadinessResult(
                ready=False,
                reason=STORE_UNAVAILABLE,
                message=f"Ingestion job store unavailable: {e}",
            )
            logger.warning("Readiness check failed: %s", e)
        else:
            result = ReadinessResult(ready=True, message="Ingestion job store reachable")

        self._cached = result
        self._checked_at = now
        return result

    def invalidate(self) -> None:
        """Drop the cached result so the next check pings the store."""
        self._cached = None

"""Retry backoff and dead-letter threshold for ingestion jobs.

backoff = base * 2^(attempt-1), capped. With the defaults (30s base, 900s
cap, 5 attempts) a persistently failing job is retried after 30s, 60s, 120s
and 240s and dead-lettered on its fifth failure.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from webingest.core.config import QueueSettings

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_BACKOFF_SECONDS = 30
DEFAULT_MAX_BACKOFF_SECONDS = 900


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule and retry budget.

    Attributes:
        max_attempts: Attempts after which a failing job is dead-lettered.
        base_backoff_seconds: Delay after the first failed attempt.
        max_backoff_seconds: Upper bound on any single delay.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_backoff_seconds: int = DEFAULT_BASE_BACKOFF_SECONDS
    max_backoff_seconds: int = DEFAULT_MAX_BACKOFF_SECONDS

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            msg = "max_attempts must be at least 1"
            raise ValueError(msg)
        if self.base_backoff_seconds < 0 or self.max_backoff_seconds < self.base_backoff_seconds:
            msg = "backoff bounds must satisfy 0 <= base <= max"
            raise ValueError(msg)

    @classmethod
    def from_settings(cls, queue_settings: QueueSettings) -> RetryPolicy:
        """Build a policy from QueueSettings."""
        return cls(
            max_attempts=queue_settings.max_attempts,
            base_backoff_seconds=queue_settings.base_backoff_seconds,
            max_backoff_seconds=queue_settings.max_backoff_seconds,
        )

    def backoff(self, attempt_count: int) -> timedelta:
        """Delay before the next attempt after attempt_count failed attempts.

        Non-decreasing in attempt_count; counts below 1 are treated as 1.
        """
        exponent = max(attempt_count, 1) - 1
        # Cap the exponent so huge attempt counts cannot overflow
        seconds = self.base_backoff_seconds * (2 ** min(exponent, 32))
        return timedelta(seconds=min(seconds, self.max_backoff_seconds))

    def should_dead_letter(self, attempt_count: int) -> bool:
        return attempt_count >= self.max_attempts

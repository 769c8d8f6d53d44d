"""Reconnect persistence policy."""

from __future__ import annotations

from dataclasses import dataclass
from collections.abc import Callable

DEFAULT_MAX_RETRY = 1000


@dataclass(frozen=True, slots=True)
class PersistencePolicy:
    """How many reconnects to attempt and what to do once they run out.

    ``max_retry=None`` retries forever. Retries use a flat delay, not backoff.
    """

    max_retry: int | None = DEFAULT_MAX_RETRY
    on_exhausted: Callable[[], None] | None = None
    retry_delay_seconds: float = 1.0

    def __post_init__(self) -> None:
        if self.max_retry is not None and self.max_retry < 0:
            raise ValueError("max_retry must be >= 0 or None")
        if self.retry_delay_seconds < 0:
            raise ValueError("retry_delay_seconds must be >= 0")

    @property
    def unlimited(self) -> bool:
        return self.max_retry is None


class RetryBudget:
    """Remaining reconnect attempts for one client."""

    def __init__(self, policy: PersistencePolicy):
        self.policy = policy
        self.remaining = policy.max_retry

    def take(self) -> bool:
        """Consume one attempt; False when the budget is spent."""
        if self.remaining is None:
            return True
        if self.remaining <= 0:
            return False
        self.remaining -= 1
        return True

    def reset(self) -> None:
        self.remaining = self.policy.max_retry

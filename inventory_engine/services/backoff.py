from __future__ import annotations

from dataclasses import dataclass

from inventory_engine.core.config import (
    ATOMIC_WRITE_MAX_RETRIES,
    SYNC_BACKOFF_BASE_SECONDS,
    SYNC_BACKOFF_MAX_SECONDS,
    SYNC_MAX_RETRIES,
)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = SYNC_MAX_RETRIES
    base_delay_seconds: float = SYNC_BACKOFF_BASE_SECONDS
    max_delay_seconds: float = SYNC_BACKOFF_MAX_SECONDS

    def delay_for(self, attempts: int) -> float:
        """Delay before the next attempt once ``attempts`` attempts have failed."""
        if attempts <= 0:
            return 0.0
        power = attempts - 1
        return float(min(self.base_delay_seconds * (2 ** power), self.max_delay_seconds))

    def exhausted(self, attempts: int, max_retries: int | None = None) -> bool:
        limit = self.max_retries if max_retries is None else max_retries
        return attempts >= limit


SYNC_RETRY_POLICY = RetryPolicy()
ATOMIC_WRITE_RETRY_POLICY = RetryPolicy(
    max_retries=ATOMIC_WRITE_MAX_RETRIES,
    base_delay_seconds=0.05,
    max_delay_seconds=1.0,
)

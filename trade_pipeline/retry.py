"""
Trade Pipeline - Retry Policy.

============================================================
PURPOSE
============================================================
Explicit backoff curve and retry ceiling for transient
failures. A transient failure never changes status; it only
pushes next_run_at forward.

CRITICAL CONSTRAINTS:
- No hidden defaults
- No infinite retries unless max_attempts = 0 is chosen

============================================================
"""

import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .types import utcnow


@dataclass
class RetryPolicy:
    """
    Backoff for rescheduled trades.

    delay(n) = min(base * multiplier ** (n - 1), max_delay)
    """

    base_delay_seconds: float = 300.0
    """Delay after the first transient failure."""

    multiplier: float = 1.0
    """1.0 keeps the curve linear."""

    max_delay_seconds: float = 3600.0
    """Cap on any single delay."""

    max_attempts: int = 48
    """Transient failures tolerated before cancelling. 0 = unlimited."""

    @classmethod
    def from_env(cls) -> "RetryPolicy":
        return cls(
            base_delay_seconds=float(os.environ.get("TRADE_RETRY_DELAY_SECONDS", "300")),
            multiplier=float(os.environ.get("TRADE_RETRY_MULTIPLIER", "1.0")),
            max_attempts=int(os.environ.get("TRADE_MAX_ATTEMPTS", "48")),
        )

    def delay_for(self, attempt: int) -> timedelta:
        """Delay before the next run, given the 1-based attempt number."""
        attempt = max(attempt, 1)
        seconds = self.base_delay_seconds * (self.multiplier ** (attempt - 1))
        return timedelta(seconds=min(seconds, self.max_delay_seconds))

    def is_exhausted(self, attempts: int) -> bool:
        """True once the record has used up its retry budget."""
        return self.max_attempts > 0 and attempts >= self.max_attempts

    def next_run_at(self, attempts: int, now: Optional[datetime] = None) -> datetime:
        """Schedule for the retry that follows failure number attempts + 1."""
        return (now or utcnow()) + self.delay_for(attempts + 1)

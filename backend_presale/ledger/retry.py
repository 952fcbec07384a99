"""
Retry policy for RPC endpoint failover.

Used by LedgerClient only. Disbursement never retries through this policy:
a failed treasury transfer is retried only by a new, explicit client call.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable


@dataclass
class RetryPolicy:
    """
    attempts: total passes over the endpoint pool for one operation (first try
    plus re-selection passes). backoff_sec doubles after each failed pass.
    """

    attempts: int = 2
    backoff_sec: float = 0.5
    max_backoff_sec: float = 5.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def __post_init__(self) -> None:
        if self.attempts < 1:
            self.attempts = 1
        if self.backoff_sec < 0:
            self.backoff_sec = 0.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before pass `attempt + 1` (attempt is 0-based)."""
        return min(self.max_backoff_sec, self.backoff_sec * (2 ** attempt))

    def pause(self, attempt: int) -> None:
        if attempt < self.attempts - 1:
            delay = self.delay_for(attempt)
            if delay > 0:
                self.sleep(delay)

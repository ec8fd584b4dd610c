"""
ratelimit/models.py -- Domain dataclasses for the persisted rate limiter.

Layer rule: no imports from api/, auth/, or audit/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import NamedTuple


@dataclass
class RateLimitCounter:
    """One fixed window of attempts for a single key.

    key format: "<operation>:<scope>:<identifier>", e.g. "login:ip:203.0.113.9".
    """

    key: str
    count: int
    window_start: datetime
    window_seconds: int
    max_requests: int
    failures: int = 0  # consecutive failures, drives exponential backoff
    last_failure_at: datetime | None = None


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of RateLimiter.check()/peek().

    wait_time is None when allowed, otherwise the seconds until reset_at.
    """

    allowed: bool
    remaining: int
    reset_at: datetime
    wait_time: float | None = None

    @property
    def retry_after(self) -> int:
        """wait_time rounded up to whole seconds (Retry-After header value)."""
        if self.wait_time is None:
            return 0
        whole = int(self.wait_time)
        return whole if whole == self.wait_time else whole + 1


class RateLimitPolicy(NamedTuple):
    operation: str
    max_requests: int
    window_seconds: int

"""
Per-client-IP rate limiting for the video routes.

The limiter is passed to the app factory; several app instances can share a
Redis-backed counter. Counting is delegated to the ``limits`` library (the
engine behind slowapi), which increments atomically per window key.
"""

import logging
import time
from dataclasses import dataclass
from typing import Dict, Protocol

from limits import RateLimitItem, parse
from limits.storage import storage_from_string
from limits.strategies import FixedWindowRateLimiter

logger = logging.getLogger(__name__)

DEFAULT_VIDEO_RATE_LIMIT = "100/15 minutes"


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # Unix time at which the current window ends

    def headers(self, now: float = None) -> Dict[str, str]:
        """Standard RateLimit-* response headers (plus Retry-After when blocked)."""
        now = time.time() if now is None else now
        reset_in = max(0, int(round(self.reset_at - now)))
        headers = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(reset_in),
        }
        if not self.allowed:
            headers["Retry-After"] = str(reset_in)
        return headers


class RateLimiter(Protocol):
    def hit(self, key: str) -> RateLimitResult:
        """Count one request for ``key`` and report whether it may proceed."""
        ...


class WindowRateLimiter:
    """Fixed-window counter per key (client IP).

    Args:
        limit: Limit string such as "100/15 minutes"
        storage_uri: "memory://" for per-process counters or a Redis URL
        namespace: Prefix separating these counters from other limiters
    """

    def __init__(
        self,
        limit: str = DEFAULT_VIDEO_RATE_LIMIT,
        storage_uri: str = "memory://",
        namespace: str = "video",
    ):
        self.item: RateLimitItem = parse(limit)
        self.storage = storage_from_string(storage_uri)
        self.strategy = FixedWindowRateLimiter(self.storage)
        self.namespace = namespace

    def hit(self, key: str) -> RateLimitResult:
        allowed = self.strategy.hit(self.item, self.namespace, key)
        reset_at, remaining = self.strategy.get_window_stats(self.item, self.namespace, key)
        return RateLimitResult(
            allowed=allowed,
            limit=self.item.amount,
            remaining=max(0, remaining),
            reset_at=reset_at,
        )

    def increment(self, key: str) -> bool:
        return self.hit(key).allowed

    def reset(self) -> None:
        """Drop all counters (test helper; not supported by every storage)."""
        self.storage.reset()


class UnlimitedRateLimiter:
    """Used when rate limiting is disabled."""

    def hit(self, key: str) -> RateLimitResult:
        return RateLimitResult(allowed=True, limit=0, remaining=0, reset_at=time.time())

    def increment(self, key: str) -> bool:
        return True


def create_rate_limiter(enabled: bool, limit: str, storage_uri: str) -> RateLimiter:
    """Build the limiter described by configuration."""
    if not enabled:
        logger.info("Video rate limiting is disabled")
        return UnlimitedRateLimiter()
    if storage_uri == "memory://":
        logger.warning(
            "Video rate limiting is using in-memory storage. "
            "For deployments with multiple instances, configure Redis: "
            "DRAMATIZE_RATE_LIMIT_STORAGE_URL=redis://localhost:6379"
        )
    return WindowRateLimiter(limit=limit, storage_uri=storage_uri)

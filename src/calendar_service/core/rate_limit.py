"""In-memory sliding-window rate limiting for the public RSVP endpoint.

Single-process only: each worker keeps its own window per client address.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Configuration for rate limiting."""

    # Requests allowed per window per client address
    limit: int = 30
    window_seconds: float = 60.0

    # Drop idle entries after this many checks
    cleanup_every: int = 500


@dataclass
class RateLimitEntry:
    """Request timestamps inside the current window."""

    requests: list[float] = field(default_factory=list)


class RateLimiter:
    """Sliding-window limiter keyed by client address."""

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = asyncio.Lock()
        self._checks = 0

        logger.info(
            "RateLimiter initialized: %d requests / %.0fs",
            self.config.limit,
            self.config.window_seconds,
        )

    async def check(self, key: str) -> tuple[bool, float]:
        """
        Record a request for `key` if it fits in the window.

        Returns:
            (allowed, retry_after_seconds); retry_after is 0 when allowed
        """
        async with self._lock:
            now = self._clock()
            cutoff = now - self.config.window_seconds

            entry = self._entries.setdefault(key, RateLimitEntry())
            entry.requests = [ts for ts in entry.requests if ts > cutoff]

            self._checks += 1
            if self._checks % self.config.cleanup_every == 0:
                self._cleanup(cutoff)

            if len(entry.requests) >= self.config.limit:
                retry_after = entry.requests[0] - cutoff
                logger.warning("Rate limit exceeded for %s", key)
                return False, max(retry_after, 0.0)

            entry.requests.append(now)
            return True, 0.0

    def _cleanup(self, cutoff: float) -> None:
        stale = [
            key
            for key, entry in self._entries.items()
            if not entry.requests or entry.requests[-1] <= cutoff
        ]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug("Rate limiter dropped %d idle entries", len(stale))

"""Client-side token bucket for providers that publish no quota headers."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
import logging
import time
from typing import Any

from llmrelay.errors import RateLimitError

logger = logging.getLogger(__name__)

DEFAULT_REQUESTS_PER_MINUTE = 15
PAID_TIER_REQUESTS_PER_MINUTE = 360
DEFAULT_MAX_WAIT_S = 10.0


@dataclass
class ClientRateLimiter:
    """Token bucket refilled at ``requests_per_minute``, burst of the same size.

    ``acquire`` waits for a permit but never longer than ``max_wait_s``, time
    spent behind concurrent callers included; a longer wait fails at once with
    a client-side RateLimitError.
    """

    requests_per_minute: int = DEFAULT_REQUESTS_PER_MINUTE
    max_wait_s: float = DEFAULT_MAX_WAIT_S
    provider: str = ""
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    _tokens: float = field(init=False)
    _last: float = field(init=False)

    def __post_init__(self) -> None:
        if self.requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        self._tokens = float(self.requests_per_minute)
        self._last = self.clock()

    @property
    def rate_per_s(self) -> float:
        return self.requests_per_minute / 60.0

    def _refill(self, now: float) -> None:
        elapsed = max(now - self._last, 0.0)
        self._tokens = min(
            float(self.requests_per_minute), self._tokens + elapsed * self.rate_per_s
        )
        self._last = now

    async def acquire(self) -> float:
        """Take one permit and return the wait applied.

        The permit is reserved before sleeping, so the balance may go
        negative and concurrent callers queue behind each other's
        reservations. Each caller's wait is therefore known on entry, and one
        that would exceed ``max_wait_s`` fails without reserving.
        """
        # No await between the refill and the reservation.
        self._refill(self.clock())
        wait = max(1.0 - self._tokens, 0.0) / self.rate_per_s
        if wait > self.max_wait_s:
            raise RateLimitError(
                f"client-side rate limit: next request allowed in {wait:.1f}s",
                hint=(
                    f"Configured for {self.requests_per_minute} requests/minute; "
                    "raise it with update_rate_limit_tier() on a paid tier."
                ),
                retry_after_s=wait,
                provider=self.provider or None,
                phase="client_limiter",
            )
        self._tokens -= 1.0
        if wait > 0:
            logger.debug("%s client limiter waiting %.2fs", self.provider, wait)
            await self.sleep(wait)
        return wait

    def update_tier(self, requests_per_minute: int) -> None:
        """Swap to a new rate; the bucket starts full at the new size."""
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        logger.info(
            "%s client rate limit tier %d -> %d requests/minute",
            self.provider,
            self.requests_per_minute,
            requests_per_minute,
        )
        self.requests_per_minute = requests_per_minute
        self._tokens = float(requests_per_minute)
        self._last = self.clock()

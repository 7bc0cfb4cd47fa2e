"""Rate limiting for outbound marketplace calls using a token bucket plus a minimum interval."""

import asyncio
import logging
import time
from typing import Optional

from src.config import settings

logger = logging.getLogger(__name__)


class RateLimiter:
    """Token bucket rate limiter with a fixed minimum delay between calls.

    One instance is shared by every search issued during a run so the
    upstream quota is respected across tiers and listings.
    """

    def __init__(
        self,
        requests_per_second: Optional[float] = None,
        min_interval: Optional[float] = None,
        burst_size: Optional[int] = None,
    ):
        self.requests_per_second = (
            requests_per_second
            if requests_per_second is not None
            else settings.search_requests_per_second
        )
        self.min_interval = (
            min_interval if min_interval is not None else settings.search_min_interval_seconds
        )
        self.burst_size = burst_size or max(int(self.requests_per_second), 1)
        self.tokens = float(self.burst_size)
        self.last_refill = time.monotonic()
        self.last_request: Optional[float] = None
        self.cooldown_until = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a call is allowed, then consume a token."""
        async with self._lock:
            now = time.monotonic()

            if now < self.cooldown_until:
                await asyncio.sleep(self.cooldown_until - now)
                now = time.monotonic()

            # Minimum inter-call delay
            if self.last_request is not None and self.min_interval > 0:
                wait_needed = self.min_interval - (now - self.last_request)
                if wait_needed > 0:
                    await asyncio.sleep(wait_needed)
                    now = time.monotonic()

            # Token bucket refill
            if self.requests_per_second > 0:
                elapsed = now - self.last_refill
                self.tokens = min(
                    self.tokens + elapsed * self.requests_per_second, self.burst_size
                )
                self.last_refill = now

                if self.tokens < 1.0:
                    wait_time = (1.0 - self.tokens) / self.requests_per_second
                    await asyncio.sleep(wait_time)
                    self.tokens = 0.0
                    self.last_refill = time.monotonic()
                else:
                    self.tokens -= 1.0

            self.last_request = time.monotonic()

    def set_cooldown(self, seconds: float) -> None:
        """
        Block calls for a while (e.g. after upstream signals quota exhaustion).

        Args:
            seconds: Cooldown duration in seconds
        """
        self.cooldown_until = time.monotonic() + seconds
        logger.warning(f"Marketplace search cooling down for {seconds:.0f}s")

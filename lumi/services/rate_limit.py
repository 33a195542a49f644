"""Attempt counters for code verification.

The window is fixed rather than truly sliding: while attempts keep arriving
less than `window` apart the counter grows; once the previous attempt is older
than the window the counter restarts at 1. Rejected attempts leave the
counter untouched.
"""
import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Optional

from lumi.config import settings
from lumi.models import RateLimitCounter, utcnow
from lumi.models.base import Clock


class RateLimiter(ABC):
    @abstractmethod
    async def hit(self, key: str) -> bool:
        """Record one attempt for `key`; False when the key is over its limit.

        Check and increment happen as one atomic step.
        """


def apply_attempt(
    counter: Optional[RateLimitCounter],
    key: str,
    now: datetime,
    max_attempts: int,
    window: timedelta,
) -> tuple[bool, RateLimitCounter]:
    if counter is None:
        return True, RateLimitCounter(id=key, attempts=1, last_attempt=now)

    recent = counter.last_attempt > now - window
    if recent and counter.attempts >= max_attempts:
        return False, counter
    if not recent:
        return True, RateLimitCounter(id=key, attempts=1, last_attempt=now)
    return True, counter.model_copy(update={"attempts": counter.attempts + 1, "last_attempt": now})


class InProcessRateLimiter(RateLimiter):
    """Counters held in this process; for single-worker deployments and tests."""

    def __init__(
        self,
        max_attempts: int = settings.verify_max_attempts,
        window_seconds: int = settings.verify_window_seconds,
        clock: Clock = utcnow,
    ):
        self.max_attempts = max_attempts
        self.window = timedelta(seconds=window_seconds)
        self.clock = clock
        self._counters: dict[str, RateLimitCounter] = {}
        self._last_sweep: Optional[datetime] = None
        self._lock = asyncio.Lock()

    def _sweep(self, now: datetime) -> None:
        """Forget counters idle for a whole window; they would restart at 1 anyway."""
        cutoff = now - self.window
        for key in [k for k, c in self._counters.items() if c.last_attempt <= cutoff]:
            del self._counters[key]
        self._last_sweep = now

    async def hit(self, key: str) -> bool:
        async with self._lock:
            now = self.clock()
            if self._last_sweep is None or now - self._last_sweep >= self.window:
                self._sweep(now)
            allowed, counter = apply_attempt(self._counters.get(key), key, now, self.max_attempts, self.window)
            self._counters[key] = counter
            return allowed

import asyncio
import logging
import random
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, Mapping, Optional

logger = logging.getLogger(__name__)

# Float refill math can leave the bucket a hair short of a whole token.
_TOKEN_EPSILON = 1e-9

class RateLimiter:
    """
    Token bucket shared by every caller of one remote service.

    A second gate, ``enforced_wait_until``, is pushed forward by ``backoff``
    after the server rejects a request. While it lies in the future nobody is
    admitted, whatever the bucket holds.
    """

    def __init__(
        self,
        requests_per_minute: int = 60,
        burst_capacity: int = 4,
        acquire_jitter: float = 0.05,
        backoff_jitter: float = 0.25,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.refill_per_second = max(requests_per_minute, 1) / 60.0
        self.capacity = float(max(burst_capacity, 1))
        self.acquire_jitter = max(0.0, acquire_jitter)
        self.backoff_jitter = max(0.0, backoff_jitter)
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

        self._tokens = self.capacity
        self._last_refill_at = clock()
        self._enforced_wait_until = 0.0
        # Admission queue: waiters are served one at a time, in arrival order.
        # Created on first acquire so it binds to the loop that runs the callers.
        self._queue: Optional[asyncio.Lock] = None

    @property
    def tokens(self) -> float:
        self._refill(self._clock())
        return self._tokens

    @property
    def enforced_wait_until(self) -> float:
        return self._enforced_wait_until

    def _refill(self, now: float):
        elapsed = max(0.0, now - self._last_refill_at)
        if elapsed <= 0:
            return
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_per_second)
        self._last_refill_at = now

    async def acquire(self):
        if self._queue is None:
            self._queue = asyncio.Lock()
        async with self._queue:
            while True:
                now = self._clock()
                self._refill(now)

                enforced_wait = self._enforced_wait_until - now
                if enforced_wait > 0:
                    logger.debug(f"Admission held for {enforced_wait:.2f}s by server backoff")
                    await self._sleep(enforced_wait)
                    continue

                if self._tokens + _TOKEN_EPSILON >= 1.0:
                    self._tokens = max(0.0, self._tokens - 1.0)
                    return

                wait_for_token = (1.0 - self._tokens) / self.refill_per_second
                await self._sleep(wait_for_token + self._rng.uniform(0, self.acquire_jitter))

    def extend_backoff(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Push the enforced window forward and return the delay the caller should sit out."""
        base = retry_after if retry_after is not None else 2.0 ** max(0, attempt)
        delay = max(0.05, base + self._rng.uniform(0, self.backoff_jitter))
        target = self._clock() + delay
        # Monotonic: an earlier, longer window is never shortened.
        self._enforced_wait_until = max(self._enforced_wait_until, target)
        return delay

    async def backoff(self, attempt: int, retry_after: Optional[float] = None):
        delay = self.extend_backoff(attempt, retry_after)
        logger.warning(f"Rate limited by server (attempt {attempt + 1}), backing off {delay:.2f}s")
        await self._sleep(delay)

def retry_after_seconds(headers: Mapping[str, str]) -> Optional[float]:
    """Parse a Retry-After header given either as seconds or as an HTTP date."""
    value = (headers.get("Retry-After") or "").strip()
    if not value:
        return None

    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Generic, Hashable, Optional, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

@dataclass
class CacheEntry(Generic[V]):
    value: V
    expires_at: float

class SingleFlightCache(Generic[K, V]):
    """
    Keyed TTL cache where concurrent misses for one key share a single fetch.

    Failures are never cached: every caller attached to a failed fetch gets the
    same exception and the next call starts a new fetch.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[K, CacheEntry[V]] = {}
        self._in_flight: Dict[K, "asyncio.Task[V]"] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: K) -> bool:
        return self.peek(key) is not None

    def peek(self, key: K) -> Optional[V]:
        """Return the live cached value for key, without fetching."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() > entry.expires_at:
            del self._entries[key]
            return None
        return entry.value

    def in_flight(self, key: K) -> bool:
        return key in self._in_flight

    async def get_or_fetch(
        self,
        key: K,
        ttl: float,
        fetch: Callable[[], Awaitable[V]],
        force_refresh: bool = False,
    ) -> V:
        if not force_refresh:
            entry = self._entries.get(key)
            if entry is not None:
                if self._clock() <= entry.expires_at:
                    return entry.value
                del self._entries[key]

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(fetch())
            self._in_flight[key] = task
            task.add_done_callback(lambda t: self._settle(key, ttl, t))
            logger.debug(f"Cache miss for {key!r}, fetching")
        else:
            logger.debug(f"Joining in-flight fetch for {key!r}")

        # A waiter giving up must not cancel the fetch other waiters share.
        return await asyncio.shield(task)

    def _settle(self, key: K, ttl: float, task: "asyncio.Task[V]"):
        if self._in_flight.get(key) is not task:
            # Detached by invalidate/update while running; drop the result.
            if not task.cancelled():
                task.exception()
            return
        del self._in_flight[key]

        if task.cancelled():
            return
        if task.exception() is not None:
            logger.debug(f"Fetch for {key!r} failed: {task.exception()}")
            return
        self._entries[key] = CacheEntry(task.result(), self._clock() + ttl)

    def update(self, key: K, value: V, ttl: float):
        """Store a value written by the application; a running fetch for key is detached."""
        self._in_flight.pop(key, None)
        self._entries[key] = CacheEntry(value, self._clock() + ttl)

    def invalidate(self, key: K):
        self._entries.pop(key, None)
        self._in_flight.pop(key, None)

    def invalidate_all(self, prefix) -> int:
        """Drop every entry whose key starts with prefix (tuple or string keys)."""
        stale = [k for k in self._entries if _has_prefix(k, prefix)]
        for k in stale:
            del self._entries[k]
        for k in [k for k in self._in_flight if _has_prefix(k, prefix)]:
            del self._in_flight[k]
        if stale:
            logger.info(f"Invalidated {len(stale)} cached entries for prefix {prefix!r}")
        return len(stale)

    def clear(self):
        self._entries.clear()
        self._in_flight.clear()

def _has_prefix(key, prefix) -> bool:
    if isinstance(key, tuple) and isinstance(prefix, tuple):
        return key[:len(prefix)] == prefix
    if isinstance(key, str) and isinstance(prefix, str):
        return key.startswith(prefix)
    return key == prefix

"""
CertVerify Backend — In-Process Coordination Store
====================================================

What:  CoordinationStore kept in a dict inside the current process.
Who:   Tests, and single-instance development via REDIS_URL=memory://.
Why:   Lets the full pipeline run without Redis while keeping the exact
       semantics the Redis store provides (TTL, glob deletes, atomic window
       counters, fan-out pub/sub).

Not for multi-instance deployments: two processes would each hold their
own counters and cache, which is exactly what the shared store prevents.
Settings.validate_required_for_production() rejects it in production.
"""

import asyncio
import time
from fnmatch import fnmatchcase
from typing import AsyncIterator, Callable, Dict, List, Optional, Set, Tuple

from certverify.store.base import CoordinationStore, CounterState


class MemoryStore(CoordinationStore):
    """
    Dict-backed store with lazy expiry.

    Args:
        clock: Monotonic seconds; injectable so tests can move time forward.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[str, float]] = {}
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}
        # One lock for counters; dict operations themselves never await
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, float]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            del self._data[key]
            return None
        return entry

    def _purge_expired(self) -> None:
        now = self._clock()
        for key in [k for k, (_, exp) in self._data.items() if exp <= now]:
            del self._data[key]

    async def get(self, key: str) -> Optional[str]:
        entry = self._live(key)
        return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._data[key] = (value, self._clock() + max(int(ttl_seconds), 1))

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self._live(key) is not None:
                del self._data[key]
                deleted += 1
        return deleted

    async def delete_pattern(self, pattern: str) -> int:
        self._purge_expired()
        matched = [key for key in self._data if fnmatchcase(key, pattern)]
        for key in matched:
            del self._data[key]
        return len(matched)

    async def keys(self, pattern: str) -> List[str]:
        self._purge_expired()
        return [key for key in self._data if fnmatchcase(key, pattern)]

    async def count_keys(self, pattern: str) -> int:
        self._purge_expired()
        return sum(1 for key in self._data if fnmatchcase(key, pattern))

    async def increment_window(self, key: str, window_ms: int) -> CounterState:
        async with self._lock:
            now = self._clock()
            entry = self._live(key)
            if entry is None:
                count, expires_at = 1, now + window_ms / 1000
            else:
                count, expires_at = int(entry[0]) + 1, entry[1]
            self._data[key] = (str(count), expires_at)
            return CounterState(count=count, ttl_ms=max(int((expires_at - now) * 1000), 0))

    async def publish(self, channel: str, message: str) -> None:
        for queue in list(self._subscribers.get(channel, ())):
            queue.put_nowait(message)

    async def subscribe(self, channel: str) -> AsyncIterator[str]:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(channel, set()).add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers[channel].discard(queue)

    async def ping(self) -> bool:
        return True
